"""
Kenya STR Pulse — Currency Normalizer

Single parsing boundary for locale-formatted money ("KSH 12 500 000",
"Ksh. 1,250,000") and the KES -> USD conversion.

Exchange-rate selection is an explicit policy:
- LATEST_DATE: the rate on the most recent date per city
- MAX_RATE:    the largest rate ever observed per city ("latest" = MAX(rate)).
               Kept as an opt-in so older reports can be reproduced; it is not
               the most recent rate and should be flagged to stakeholders.
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

import pandas as pd

from issues import ParseError, RunIssues

logger = logging.getLogger(__name__)

# Leading currency code or symbol, e.g. "KSH", "KES", "Ksh.", "USD", "$"
CURRENCY_PREFIX = re.compile(r"^\s*(?:[A-Za-z]{2,4}\.?|[$€£])\s*")
# Thousands separators: spaces, non-breaking spaces, commas, apostrophes
THOUSANDS_SEPARATORS = re.compile(r"[\s\u00a0\u202f,']")
NUMBER = re.compile(r"^-?\d+(?:\.\d+)?$")


class ExchangeRatePolicy(str, Enum):
    LATEST_DATE = "latest_date"
    MAX_RATE = "max_rate"


@dataclass
class ConversionResult:
    values: pd.Series
    excluded: int


def parse_price(text) -> float:
    """
    Parse a locale-formatted price string into a number.

    Args:
        text: Raw price, e.g. "KSH 12 500"

    Returns:
        float, e.g. 12500.0

    Raises:
        ParseError: Empty or malformed price
    """
    if text is None or (not isinstance(text, str) and pd.isna(text)):
        raise ParseError(text, "missing price")

    if isinstance(text, (int, float)):
        return float(text)

    cleaned = CURRENCY_PREFIX.sub("", str(text))
    cleaned = THOUSANDS_SEPARATORS.sub("", cleaned)

    if not NUMBER.match(cleaned):
        raise ParseError(text, "malformed price")
    return float(cleaned)


def parse_price_column(series: pd.Series) -> ConversionResult:
    """Parse every price in a series; failures become NaN and are counted, never zeroed."""
    parsed = []
    excluded = 0
    for value in series:
        try:
            parsed.append(parse_price(value))
        except ParseError as e:
            logger.debug(f"Excluding row: {e}")
            parsed.append(float("nan"))
            excluded += 1
    return ConversionResult(pd.Series(parsed, index=series.index, dtype="float64"), excluded)


def select_exchange_rates(rates: pd.DataFrame, policy: ExchangeRatePolicy,
                          fixed_rate: Optional[float] = None,
                          issues: Optional[RunIssues] = None,
                          cities: Optional[Iterable[str]] = None) -> pd.Series:
    """
    Pick one KES -> USD multiplier per city.

    Args:
        rates: DataFrame with columns city, date, rate
        policy: How "latest" is defined
        fixed_rate: If given, used for every city and the policy is ignored
        issues: Collector for excluded rate rows
        cities: Extra cities that need a rate (only used with fixed_rate)

    Returns:
        Series of rate indexed by city
    """
    if fixed_rate is not None:
        known = list(rates["city"].dropna().unique()) if not rates.empty else []
        cities = sorted(set(known) | set(c for c in (cities if cities is not None else []) if pd.notna(c)))
        logger.info(f"Using fixed exchange rate {fixed_rate} for all cities")
        return pd.Series(fixed_rate, index=pd.Index(cities, name="city"), name="rate", dtype="float64")

    if rates.empty:
        logger.warning("Exchange rate table is empty")
        return pd.Series(dtype="float64", name="rate", index=pd.Index([], name="city"))

    df = rates.copy()
    df["rate"] = pd.to_numeric(df["rate"], errors="coerce")
    valid = df["rate"] > 0
    if policy == ExchangeRatePolicy.LATEST_DATE:
        df["date"] = pd.to_datetime(df["date"], errors="coerce")
        valid &= df["date"].notna()
    if issues is not None:
        issues.exclude("exchange_rates", int((~valid).sum()), "invalid rate or date")
    df = df[valid]

    if df.empty:
        logger.warning("No valid exchange rates available")
        return pd.Series(dtype="float64", name="rate", index=pd.Index([], name="city"))

    if policy == ExchangeRatePolicy.LATEST_DATE:
        # Highest rate breaks ties between rows sharing the latest date
        df = df.sort_values(["city", "date", "rate"], kind="mergesort")
        selected = df.groupby("city")["rate"].last()
    elif policy == ExchangeRatePolicy.MAX_RATE:
        logger.warning("Exchange rate policy MAX_RATE selects the largest rate, not the most recent")
        selected = df.groupby("city")["rate"].max()
    else:
        raise ValueError(f"Unknown exchange rate policy: {policy}")

    selected.name = "rate"
    logger.info(f"Selected exchange rates ({policy.value}): {selected.round(6).to_dict()}")
    return selected


def convert_to_usd(frame: pd.DataFrame, columns: Iterable[str], rates: pd.Series,
                   city_col: str = "city", issues: Optional[RunIssues] = None) -> pd.DataFrame:
    """
    Multiply monetary columns by the city's rate into `<col>_usd` columns.

    Rows whose city has no rate get NaN (and are counted) rather than an
    unconverted KES amount.
    """
    df = frame.copy()
    multiplier = df[city_col].map(rates)

    missing = int(multiplier.isna().sum())
    if issues is not None:
        issues.exclude(f"currency:{city_col}", missing, "no exchange rate for city")

    for col in columns:
        df[f"{col}_usd"] = pd.to_numeric(df[col], errors="coerce") * multiplier
    return df
