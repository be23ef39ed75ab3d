"""
Bucketing and wide/long reshaping.

Buckets are closed on both ends, so with the default occupancy buckets a value
of exactly 30 is "low" and 31 is "moderate". Anything outside every bucket
(negative, above the top boundary, or in a gap between buckets) gets the
default label.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Sequence

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Bucket:
    label: str
    lower: float
    upper: float

    def contains(self, value) -> bool:
        return self.lower <= value <= self.upper


def classify(value, buckets: Sequence[Bucket], default: str = "unclassified") -> str:
    if value is None or pd.isna(value):
        return default
    for bucket in buckets:
        if bucket.contains(value):
            return bucket.label
    return default


def bucketize(series: pd.Series, buckets: Sequence[Bucket], default: str = "unclassified") -> pd.Series:
    """Classify every value of a numeric series."""
    values = pd.to_numeric(series, errors="coerce")
    return values.apply(lambda v: classify(v, buckets, default))


def bucket_labels(buckets: Iterable[Bucket], default: str = "unclassified") -> List[str]:
    """Labels in boundary order with the default label last."""
    labels = [b.label for b in sorted(buckets, key=lambda b: b.lower)]
    return labels + [default]


def pivot_wide(frame: pd.DataFrame, index, columns: str, values: str,
               categories: Sequence, fill_value=0, aggfunc="sum") -> pd.DataFrame:
    """
    Long -> wide: one column per category.

    Every category in `categories` becomes a column, in that order, even when
    no row falls into it; empty cells get `fill_value`. Categories present in
    the data but missing from `categories` are dropped with a warning.
    """
    index = [index] if isinstance(index, str) else list(index)

    unknown = set(frame[columns].dropna().unique()) - set(categories)
    if unknown:
        logger.warning(f"Dropping rows with unknown categories in '{columns}': {sorted(map(str, unknown))}")
        frame = frame[~frame[columns].isin(unknown)]

    if frame.empty:
        wide = pd.DataFrame(columns=index + list(categories))
        return wide

    wide = (
        frame.groupby(index + [columns], dropna=False)[values]
        .agg(aggfunc)
        .unstack(columns, fill_value=fill_value)
    )
    wide = wide.reindex(columns=list(categories), fill_value=fill_value)
    wide.columns.name = None
    return wide.reset_index()


def unpivot_long(frame: pd.DataFrame, id_cols, value_cols: Sequence[str],
                 var_name: str = "category", value_name: str = "value") -> pd.DataFrame:
    """Wide -> long: one row per id x category, sorted by id then category order."""
    id_cols = [id_cols] if isinstance(id_cols, str) else list(id_cols)
    long = frame.melt(id_vars=id_cols, value_vars=list(value_cols), var_name=var_name, value_name=value_name)

    order = {c: i for i, c in enumerate(value_cols)}
    long["_order"] = long[var_name].map(order)
    long = long.sort_values(id_cols + ["_order"], kind="mergesort").drop(columns="_order")
    return long.reset_index(drop=True)
