"""
Kenya STR Pulse — Pipeline Configuration

Every market-specific knob (exchange-rate policy, bucket boundaries, grouping
keys, the "improving" filter) lives here so the same pipeline runs for any
market. Values come from, in increasing priority:

1. Defaults below
2. A JSON config file (--config / PIPELINE_CONFIG)
3. Environment variables (optionally from a .env file)
"""

import os
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional

from currency import ExchangeRatePolicy
from issues import ConfigError
from reshape import Bucket
from trends import DEFAULT_PAIRS

logger = logging.getLogger(__name__)

DEFAULT_OCCUPANCY_BUCKETS = [
    Bucket("low", 0, 30),
    Bucket("moderate", 31, 60),
    Bucket("high", 61, 90),
]

# Tried in order; day-first wins for ambiguous dd/mm vs mm/dd values
DEFAULT_DATE_FORMATS = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%d %b %Y",
    "%d-%b-%Y",
    "%b %Y",
    "%B %Y",
    "%b-%y",
    "%Y-%m",
]


@dataclass
class PipelineConfig:
    data_dir: Path = Path("data/snapshot")
    output_dir: Path = Path("data/output")
    snapshot_base_url: Optional[str] = None

    exchange_rate_policy: ExchangeRatePolicy = ExchangeRatePolicy.LATEST_DATE
    fixed_exchange_rate: Optional[float] = None

    occupancy_buckets: List[Bucket] = field(default_factory=lambda: list(DEFAULT_OCCUPANCY_BUCKETS))
    bucket_default_label: str = "unclassified"
    pivot_fill_value: float = 0

    ranking_partition: List[str] = field(default_factory=lambda: ["city"])
    imputation_group: List[str] = field(default_factory=lambda: ["city", "neighborhood"])
    include_unresolved_neighborhoods: bool = True
    coordinate_precision: Optional[int] = None

    date_formats: List[str] = field(default_factory=lambda: list(DEFAULT_DATE_FORMATS))
    trend_granularity: str = "month"
    improving_thresholds: Dict[str, float] = field(
        default_factory=lambda: {"occupancy_delta": 0.0, "adr_delta": 0.0}
    )

    def validate(self) -> "PipelineConfig":
        if self.fixed_exchange_rate is not None and self.fixed_exchange_rate <= 0:
            raise ConfigError(f"fixed_exchange_rate must be > 0, got {self.fixed_exchange_rate}")
        if not self.occupancy_buckets:
            raise ConfigError("occupancy_buckets must not be empty")
        for bucket in self.occupancy_buckets:
            if bucket.lower > bucket.upper:
                raise ConfigError(f"Bucket '{bucket.label}' has lower > upper")
        ordered = sorted(self.occupancy_buckets, key=lambda b: b.lower)
        for prev, curr in zip(ordered, ordered[1:]):
            if curr.lower <= prev.upper:
                raise ConfigError(f"Buckets '{prev.label}' and '{curr.label}' overlap")
        if self.trend_granularity not in ("day", "month"):
            raise ConfigError(f"trend_granularity must be 'day' or 'month', got {self.trend_granularity!r}")
        if not self.improving_thresholds:
            raise ConfigError("improving_thresholds must name at least one delta column")
        known_deltas = {f"{metric}_delta" for metric in DEFAULT_PAIRS}
        unknown = sorted(set(self.improving_thresholds) - known_deltas)
        if unknown:
            raise ConfigError(f"Unknown improving_thresholds keys {unknown}; expected {sorted(known_deltas)}")
        return self


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce(name: str, value):
    """Convert a raw JSON/env value into the type PipelineConfig expects."""
    try:
        if name in ("data_dir", "output_dir"):
            return Path(value)
        if name == "exchange_rate_policy":
            return value if isinstance(value, ExchangeRatePolicy) else ExchangeRatePolicy(str(value).lower())
        if name == "fixed_exchange_rate":
            return None if value in (None, "") else float(value)
        if name == "occupancy_buckets":
            return [b if isinstance(b, Bucket) else Bucket(b["label"], float(b["lower"]), float(b["upper"]))
                    for b in value]
        if name == "include_unresolved_neighborhoods":
            return value if isinstance(value, bool) else _parse_bool(value)
        if name == "coordinate_precision":
            return None if value in (None, "") else int(value)
        if name == "pivot_fill_value":
            return float(value)
        if name in ("ranking_partition", "imputation_group", "date_formats"):
            return [value] if isinstance(value, str) else list(value)
        if name == "improving_thresholds":
            return {str(k): float(v) for k, v in dict(value).items()}
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r} ({e})") from e
    return value


ENV_VARS = {
    "DATA_DIR": "data_dir",
    "OUTPUT_DIR": "output_dir",
    "SNAPSHOT_BASE_URL": "snapshot_base_url",
    "EXCHANGE_RATE_POLICY": "exchange_rate_policy",
    "KES_USD_RATE": "fixed_exchange_rate",
    "INCLUDE_UNRESOLVED_NEIGHBORHOODS": "include_unresolved_neighborhoods",
    "COORDINATE_PRECISION": "coordinate_precision",
    "TREND_GRANULARITY": "trend_granularity",
}


def load_config(config_path: Optional[Path] = None, **overrides) -> PipelineConfig:
    """
    Build the run configuration.

    Args:
        config_path: Optional JSON file; falls back to $PIPELINE_CONFIG
        **overrides: Highest-priority values (e.g. from CLI flags); None is ignored

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigError: Unknown keys, unreadable file or invalid values
    """
    known = {f.name for f in fields(PipelineConfig)}
    values = {}

    config_path = config_path or os.environ.get("PIPELINE_CONFIG")
    if config_path:
        config_path = Path(config_path)
        try:
            with open(config_path) as f:
                file_values = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read config file {config_path}: {e}") from e

        unknown = set(file_values) - known
        if unknown:
            raise ConfigError(f"Unknown config keys in {config_path}: {sorted(unknown)}")
        values.update(file_values)
        logger.info(f"Loaded config file {config_path}")

    for env_name, attr in ENV_VARS.items():
        if os.environ.get(env_name):
            values[attr] = os.environ[env_name]

    values.update({k: v for k, v in overrides.items() if v is not None})

    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"Unknown config keys: {sorted(unknown)}")

    config = PipelineConfig(**{k: _coerce(k, v) for k, v in values.items()})
    return config.validate()
