"""
Grouped aggregation, competition ranking and percent-of-total.
"""

import logging
import warnings
from typing import Dict, Optional, Sequence, Tuple, Union

import pandas as pd

from issues import EmptyPartitionWarning

logger = logging.getLogger(__name__)

Partition = Optional[Union[str, Sequence[str]]]


def _as_list(partition: Partition):
    if partition is None:
        return []
    return [partition] if isinstance(partition, str) else list(partition)


def aggregate(frame: pd.DataFrame, group_cols: Sequence[str],
              measures: Dict[str, Tuple[str, str]]) -> pd.DataFrame:
    """
    Named aggregation keeping null group keys (e.g. unresolved neighborhoods).

    Args:
        frame: Input rows
        group_cols: Grouping key
        measures: {output column: (input column, aggfunc)}
    """
    group_cols = list(group_cols)
    if frame.empty:
        return pd.DataFrame(columns=group_cols + list(measures))
    result = frame.groupby(group_cols, dropna=False).agg(**measures).reset_index()
    return result


def competition_rank(frame: pd.DataFrame, measure: str, partition: Partition = None,
                     rank_col: str = "rank") -> pd.DataFrame:
    """
    Rank descending by `measure` within each partition; ties share a rank and
    the next distinct value skips ([100, 100, 90] -> [1, 1, 3]).
    """
    df = frame.copy()
    keys = _as_list(partition)

    if df.empty:
        warnings.warn(f"Ranking '{measure}' over an empty result set", EmptyPartitionWarning, stacklevel=2)
        df[rank_col] = pd.Series(dtype="Int64")
        return df

    values = pd.to_numeric(df[measure], errors="coerce")
    if keys:
        ranks = values.groupby([df[k] for k in keys], dropna=False).rank(method="min", ascending=False)
    else:
        ranks = values.rank(method="min", ascending=False)

    df[rank_col] = ranks.round().astype("Int64")
    return df


def percent_of_total(frame: pd.DataFrame, measure: str, partition: Partition = None,
                     out_col: str = "pct_of_total") -> pd.DataFrame:
    """
    Share of each row's measure in its partition's window total, in percent.

    A zero or empty total makes the share undefined: the rows get NaN
    ("not applicable") and an EmptyPartitionWarning is issued.
    """
    df = frame.copy()
    keys = _as_list(partition)

    if df.empty:
        warnings.warn(f"Percent of total for '{measure}' over an empty result set",
                      EmptyPartitionWarning, stacklevel=2)
        df[out_col] = pd.Series(dtype="float64")
        return df

    values = pd.to_numeric(df[measure], errors="coerce")
    if keys:
        totals = values.groupby([df[k] for k in keys], dropna=False).transform("sum")
    else:
        totals = pd.Series(values.sum(), index=df.index)

    zero = totals == 0
    if zero.any():
        if keys:
            empty_parts = df.loc[zero, keys].drop_duplicates().to_dict("records")
        else:
            empty_parts = ["<all rows>"]
        warnings.warn(f"Zero total for '{measure}' in partitions {empty_parts}; share not applicable",
                      EmptyPartitionWarning, stacklevel=2)

    df[out_col] = (values / totals.where(~zero)) * 100
    return df
