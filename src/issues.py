"""
Kenya STR Pulse — Pipeline Errors & Run Issues

Row-level problems never abort a run. Parsers raise ParseError for a single
value; the vectorized stages catch it, drop the row from aggregates and record
how many rows were excluded on a RunIssues collector so the count reaches the
report and the run manifest.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import pandas as pd

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ParseError(PipelineError, ValueError):
    """A monetary, numeric or date field could not be converted."""

    def __init__(self, value, reason: str = "unparseable value"):
        self.value = value
        self.reason = reason
        super().__init__(f"{reason}: {value!r}")


class UnresolvedGroupError(PipelineError):
    """
    Soft error: an imputation group has no valid observations.

    Recorded on RunIssues rather than raised; the affected rows carry an
    'unresolvable' marker instead of a fabricated zero.
    """

    def __init__(self, field_name: str, group: tuple, rows: int):
        self.field_name = field_name
        self.group = group
        self.rows = rows
        super().__init__(
            f"No valid '{field_name}' observations in group {group} ({rows} rows unresolvable)"
        )


class ConfigError(PipelineError):
    """Invalid pipeline configuration."""


class MetricError(PipelineError):
    """A metric raised; its table comes back empty and the run continues."""

    def __init__(self, metric: str, cause: Exception):
        self.metric = metric
        self.cause = cause
        super().__init__(f"Metric {metric} failed: {type(cause).__name__}: {cause}")


class EmptyPartitionWarning(UserWarning):
    """Ranking or percent-of-total over an empty or zero-sum partition."""


@dataclass
class Exclusion:
    stage: str
    reason: str
    count: int


@dataclass
class RunIssues:
    """Collects excluded-row counts and soft errors for one run."""

    exclusions: List[Exclusion] = field(default_factory=list)
    coercions: List[Exclusion] = field(default_factory=list)
    soft_errors: List[PipelineError] = field(default_factory=list)

    def exclude(self, stage: str, count: int, reason: str = "unparseable") -> None:
        if count <= 0:
            return
        logger.warning(f"Excluded {count} rows at {stage} ({reason})")
        self.exclusions.append(Exclusion(stage, reason, int(count)))

    def coerce(self, stage: str, count: int, reason: str = "unparseable") -> None:
        """Values set to missing while their rows stay in the aggregates."""
        if count <= 0:
            return
        logger.warning(f"Set {count} values to missing at {stage} ({reason})")
        self.coercions.append(Exclusion(stage, reason, int(count)))

    def soft(self, error: PipelineError) -> None:
        logger.warning(str(error))
        self.soft_errors.append(error)

    def excluded_count(self, stage: Optional[str] = None) -> int:
        return sum(e.count for e in self.exclusions if stage is None or e.stage == stage)

    def coerced_count(self, stage: Optional[str] = None) -> int:
        return sum(c.count for c in self.coercions if stage is None or c.stage == stage)

    @property
    def failed_metrics(self) -> List[str]:
        return [e.metric for e in self.soft_errors if isinstance(e, MetricError)]

    def as_frame(self) -> pd.DataFrame:
        if not self.exclusions:
            return pd.DataFrame(columns=["stage", "reason", "count"])
        return pd.DataFrame([vars(e) for e in self.exclusions])

    def summary(self) -> dict:
        return {
            "excluded_rows": self.excluded_count(),
            "exclusions": [vars(e) for e in self.exclusions],
            "coerced_values": [vars(c) for c in self.coercions],
            "failed_metrics": self.failed_metrics,
            "soft_errors": [str(e) for e in self.soft_errors],
        }
