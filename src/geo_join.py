"""
Neighborhood resolution.

Listings are placed in neighborhoods by exact coordinate match against the
coordinate -> neighborhood table. Free-text property locations are matched by
normalized whole-word containment, most specific (longest) neighborhood name
first, alphabetical on ties. An explicit alias table overrides both.
"""

import re
import logging
import unicodedata
from typing import Dict, Iterable, Optional

import pandas as pd

logger = logging.getLogger(__name__)

COORD_COLS = ["latitude", "longitude"]


def resolve_neighborhoods(listings: pd.DataFrame, coords: pd.DataFrame,
                          precision: Optional[int] = None) -> pd.DataFrame:
    """
    Left-join listings to neighborhoods on (latitude, longitude).

    Args:
        listings: Listing rows with latitude/longitude
        coords: Mapping rows with latitude, longitude, neighborhood
        precision: Round both sides to this many decimals before matching

    Returns:
        Listings with a nullable 'neighborhood' column, same row count as input
    """
    left = listings.copy()
    right = coords[COORD_COLS + ["neighborhood"]].copy()

    for df in (left, right):
        for col in COORD_COLS:
            df[col] = pd.to_numeric(df[col], errors="coerce")
            if precision is not None:
                df[col] = df[col].round(precision)

    # One neighborhood per coordinate pair, otherwise the merge multiplies listings
    right = right.dropna(subset=COORD_COLS).sort_values(COORD_COLS + ["neighborhood"], kind="mergesort")
    dupes = right.duplicated(subset=COORD_COLS, keep="first")
    if dupes.any():
        logger.warning(f"{int(dupes.sum())} duplicate coordinate mappings - keeping first neighborhood alphabetically")
        right = right[~dupes]

    if "neighborhood" in left.columns:
        left = left.drop(columns="neighborhood")

    merged = left.merge(right, on=COORD_COLS, how="left")

    unmatched = int(merged["neighborhood"].isna().sum())
    logger.info(f"Resolved neighborhoods for {len(merged) - unmatched}/{len(merged)} listings ({unmatched} unresolved)")
    return merged


def normalize_place(text) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    if text is None or (not isinstance(text, str) and pd.isna(text)):
        return ""
    text = unicodedata.normalize("NFKD", str(text)).encode("ascii", "ignore").decode()
    text = re.sub(r"[^a-z0-9]+", " ", text.lower())
    return text.strip()


def match_location(location, neighborhoods: Iterable[str],
                   aliases: Optional[Dict[str, str]] = None) -> Optional[str]:
    """
    Pick the neighborhood a free-text location refers to.

    >>> match_location("Apartment in Kilimani, Nairobi", ["Kilimani", "Nairobi West"])
    'Kilimani'
    """
    key = normalize_place(location)
    if not key:
        return None

    if aliases:
        alias = aliases.get(key)
        if alias is not None:
            return alias

    padded = f" {key} "
    candidates = []
    for name in neighborhoods:
        norm = normalize_place(name)
        if norm and f" {norm} " in padded:
            candidates.append((-len(norm), name))

    if not candidates:
        return None
    return sorted(candidates)[0][1]


def match_locations(frame: pd.DataFrame, neighborhoods: Iterable[str],
                    aliases: Optional[pd.DataFrame] = None,
                    location_col: str = "location") -> pd.DataFrame:
    """Add a nullable 'neighborhood' column to a frame of free-text locations."""
    names = sorted({n for n in neighborhoods if isinstance(n, str) and n})

    alias_map = {}
    if aliases is not None and not aliases.empty:
        alias_map = {
            normalize_place(loc): hood
            for loc, hood in zip(aliases["location"], aliases["neighborhood"])
            if normalize_place(loc)
        }

    df = frame.copy()
    df["neighborhood"] = df[location_col].apply(lambda loc: match_location(loc, names, alias_map))

    unmatched = int(df["neighborhood"].isna().sum())
    if unmatched:
        logger.info(f"{unmatched}/{len(df)} locations did not match any neighborhood")
    return df
