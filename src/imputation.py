"""
Group-mean imputation for sparse numeric fields (e.g. cleaning fees).

1. Average the field per group over rows where it is present and non-zero
2. Keep each row's own value when present and non-zero, else use the group average
3. A group with no valid observation has no average: its rows stay NaN with
   status 'unresolvable' instead of becoming zero
"""

import logging
from typing import List, Optional, Sequence

import pandas as pd

from issues import RunIssues, UnresolvedGroupError

logger = logging.getLogger(__name__)

OBSERVED = "observed"
IMPUTED = "imputed"
UNRESOLVABLE = "unresolvable"


def impute_group_mean(frame: pd.DataFrame, value_col: str, group_cols: Sequence[str],
                      out_col: Optional[str] = None,
                      issues: Optional[RunIssues] = None) -> pd.DataFrame:
    """
    Fill missing/zero values of `value_col` with the group's non-zero mean.

    Args:
        frame: Input rows
        value_col: Sparse numeric column
        group_cols: Grouping key; null keys form their own group
        out_col: Output column (defaults to '<value_col>_imputed')
        issues: Collector for unresolvable groups

    Returns:
        Copy of frame with `out_col` and `<out_col>_status`
    """
    group_cols: List[str] = list(group_cols)
    out_col = out_col or f"{value_col}_imputed"
    status_col = f"{out_col}_status"

    df = frame.copy()
    values = pd.to_numeric(df[value_col], errors="coerce")
    valid = values.notna() & (values != 0)

    group_mean = (
        values.where(valid)
        .groupby([df[c] for c in group_cols], dropna=False)
        .transform("mean")
    )

    df[out_col] = values.where(valid, group_mean)
    df[status_col] = OBSERVED
    df.loc[~valid & group_mean.notna(), status_col] = IMPUTED
    df.loc[~valid & group_mean.isna(), status_col] = UNRESOLVABLE

    unresolved = df[df[status_col] == UNRESOLVABLE]
    if not unresolved.empty:
        for key, rows in unresolved.groupby(group_cols, dropna=False):
            key = key if isinstance(key, tuple) else (key,)
            error = UnresolvedGroupError(value_col, key, len(rows))
            if issues is not None:
                issues.soft(error)
            else:
                logger.warning(str(error))

    counts = df[status_col].value_counts().to_dict()
    logger.info(f"Imputed '{value_col}' by {group_cols}: {counts}")
    return df
