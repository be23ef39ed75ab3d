"""
Kenya STR Pulse — Trend Comparator

Aligns historical and forward-looking booking series (occupancy, ADR) by
(city, date) and measures how the outlook moved:

- Dates arrive as free text in mixed formats ("2024-03-01", "01/03/2024",
  "Mar 2024"); each value is tried against the configured formats in order and
  dropped (counted) when none fits
- The join is inner: a city/date missing from any series is left out rather
  than half-filled
- "Improving" means every tracked delta beats its threshold; results are
  ordered by the sum of deltas (desc), then city and date (asc)
"""

import logging
from datetime import datetime
from functools import reduce
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple

import pandas as pd

from issues import ParseError, RunIssues

logger = logging.getLogger(__name__)

SERIES_NAMES = ["historical_occupancy", "historical_adr", "future_occupancy", "future_adr"]

# metric -> (historical series, future series)
DEFAULT_PAIRS = {
    "occupancy": ("historical_occupancy", "future_occupancy"),
    "adr": ("historical_adr", "future_adr"),
}


def parse_date(text, formats: Sequence[str]) -> datetime:
    """Parse one date against `formats` in order, then ISO 8601."""
    if text is None or (not isinstance(text, str) and pd.isna(text)):
        raise ParseError(text, "missing date")
    if isinstance(text, datetime):
        return text

    raw = str(text).strip()
    for fmt in formats:
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise ParseError(text, "unrecognized date format") from None


def normalize_dates(series: pd.Series, formats: Sequence[str], granularity: str = "month") -> pd.Series:
    """Vectorized parse_date; failures become NaT. 'month' floors to the 1st."""
    parsed = []
    for value in series:
        try:
            parsed.append(parse_date(value, formats))
        except ParseError:
            parsed.append(pd.NaT)

    dates = pd.to_datetime(pd.Series(parsed, index=series.index, dtype="object"))
    if granularity == "month":
        dates = dates.dt.to_period("M").dt.to_timestamp()
    else:
        dates = dates.dt.normalize()
    return dates


def parse_metric_values(series: pd.Series) -> pd.Series:
    """Numeric parse tolerating a '%' suffix and thousands commas."""
    cleaned = (
        series.astype("string")
        .str.strip()
        .str.rstrip("%")
        .str.replace(",", "", regex=False)
    )
    return pd.to_numeric(cleaned, errors="coerce").astype("float64")


def load_series(frame: pd.DataFrame, name: str, formats: Sequence[str],
                granularity: str = "month", issues: Optional[RunIssues] = None) -> pd.DataFrame:
    """
    Clean one raw series to columns city, date, <name>.

    Rows whose date or value cannot be parsed are dropped and counted. Several
    rows landing on the same city/date (e.g. daily rows at month granularity)
    are averaged.
    """
    if frame.empty:
        return pd.DataFrame({
            "city": pd.Series(dtype="object"),
            "date": pd.Series(dtype="datetime64[ns]"),
            name: pd.Series(dtype="float64"),
        })

    df = pd.DataFrame({
        "city": frame["city"],
        "date": normalize_dates(frame["date"], formats, granularity),
        name: parse_metric_values(frame["value"]),
    })

    bad_dates = df["date"].isna()
    bad_values = df[name].isna() & ~bad_dates
    if issues is not None:
        issues.exclude(f"{name}.date", int(bad_dates.sum()), "unparseable date")
        issues.exclude(f"{name}.value", int(bad_values.sum()), "unparseable value")

    df = df.dropna(subset=["city", "date", name])
    df = df.groupby(["city", "date"], as_index=False)[name].mean()
    logger.info(f"Loaded {len(df)} {name} points")
    return df


def align_series(series: Mapping[str, pd.DataFrame], keys: Sequence[str] = ("city", "date")) -> pd.DataFrame:
    """Inner join all series on `keys`."""
    keys = list(keys)
    frames = list(series.values())
    if not frames:
        return pd.DataFrame(columns=keys)

    aligned = reduce(lambda left, right: left.merge(right, on=keys, how="inner"), frames)
    return aligned.sort_values(keys, kind="mergesort").reset_index(drop=True)


def compute_deltas(aligned: pd.DataFrame,
                   pairs: Mapping[str, Tuple[str, str]] = None) -> pd.DataFrame:
    """Add '<metric>_delta' = future - historical for each metric pair."""
    pairs = pairs or DEFAULT_PAIRS
    df = aligned.copy()
    for metric, (historical, future) in pairs.items():
        df[f"{metric}_delta"] = df[future] - df[historical]
    return df


def filter_improving(frame: pd.DataFrame, delta_cols: Sequence[str],
                     thresholds: Optional[Dict[str, float]] = None,
                     predicate: Optional[Callable[[pd.DataFrame], pd.Series]] = None) -> pd.DataFrame:
    """
    Keep rows where every delta moved in the improving direction.

    Args:
        frame: Output of compute_deltas
        delta_cols: Delta columns that must all improve
        thresholds: Minimum (exclusive) per delta column; default 0
        predicate: Custom row filter returning a boolean Series; overrides thresholds
    """
    if frame.empty:
        return frame.copy()

    if predicate is not None:
        mask = predicate(frame)
    else:
        thresholds = thresholds or {}
        mask = pd.Series(True, index=frame.index)
        for col in delta_cols:
            mask &= frame[col] > thresholds.get(col, 0.0)

    return frame[mask].copy()


def order_by_delta(frame: pd.DataFrame, delta_cols: Sequence[str],
                   entity_col: str = "city", date_col: str = "date") -> pd.DataFrame:
    """Sort by sum of deltas desc, then entity and date asc."""
    df = frame.copy()
    df["total_delta"] = df[list(delta_cols)].sum(axis=1)
    sort_cols = ["total_delta", entity_col] + ([date_col] if date_col in df.columns else [])
    ascending = [False, True] + ([True] if date_col in df.columns else [])
    return df.sort_values(sort_cols, ascending=ascending, kind="mergesort").reset_index(drop=True)


def compare_trends(series: Mapping[str, pd.DataFrame], pairs: Mapping[str, Tuple[str, str]] = None,
                   thresholds: Optional[Dict[str, float]] = None,
                   predicate: Optional[Callable[[pd.DataFrame], pd.Series]] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Align cleaned series and return (all aligned rows with deltas, improving subset).

    Only the series named in `pairs` take part in the join.
    """
    pairs = pairs or DEFAULT_PAIRS
    needed = [name for pair in pairs.values() for name in pair]
    missing = [name for name in needed if name not in series]
    if missing:
        raise KeyError(f"Missing series for trend comparison: {missing}")

    aligned = align_series({name: series[name] for name in needed})
    with_deltas = compute_deltas(aligned, pairs)

    delta_cols = [f"{metric}_delta" for metric in pairs]
    all_rows = order_by_delta(with_deltas, delta_cols)
    improving = filter_improving(all_rows, delta_cols, thresholds, predicate).reset_index(drop=True)

    logger.info(f"Aligned {len(all_rows)} city/date points; {len(improving)} improving")
    return all_rows, improving
