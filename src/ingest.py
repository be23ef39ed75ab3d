"""
Kenya STR Pulse — Snapshot Ingestion

This module handles:
1. Optional download of the CSV exports (SNAPSHOT_BASE_URL) into the snapshot directory
2. Loading the seven snapshot tables into DataFrames with the expected columns
3. Normalizing the wide bedroom-revenue export (one column per bedroom count)
   into long form so every downstream aggregation sees one shape

A missing or unreadable table never stops the run: it is logged to errors.log,
replaced by an empty frame, and the metrics depending on it come back empty.
"""

import io
import re
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import requests

from reshape import unpivot_long

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# table name -> required columns
TABLES = {
    "listings": [
        "listing_id", "latitude", "longitude", "city",
        "ttm_revenue", "ttm_avg_rate", "cleaning_fee", "l90d_reserved_days",
    ],
    "coordinate_neighborhoods": ["latitude", "longitude", "neighborhood"],
    "exchange_rates": ["city", "date", "rate"],
    "property_prices": ["location", "price"],
    "historical_occupancy": ["city", "date", "value"],
    "historical_adr": ["city", "date", "value"],
    "future_occupancy": ["city", "date", "value"],
    "future_adr": ["city", "date", "value"],
    "bedroom_revenue": ["city"],
}

# Tables that may be absent without marking the snapshot degraded
OPTIONAL_TABLES = {
    "location_aliases": ["location", "neighborhood"],
}

BEDROOM_COLUMN = re.compile(r"^(?:bedrooms?_?)?(\d+|studio)(?:_?bedrooms?|_?br)?$", re.IGNORECASE)


@dataclass
class Snapshot:
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)

    def __getitem__(self, name: str) -> pd.DataFrame:
        return self.tables[name]

    def get(self, name: str) -> pd.DataFrame:
        return self.tables.get(name, pd.DataFrame())

    @property
    def records_ingested(self) -> int:
        return sum(len(df) for df in self.tables.values())

    @property
    def is_empty(self) -> bool:
        return all(name in self.failed for name in TABLES)


def log_error(message: str, output_dir: Path = Path("data/output")):
    """Log errors to <output_dir>/errors.log for the degraded report."""
    output_dir.mkdir(parents=True, exist_ok=True)
    error_log_path = output_dir / "errors.log"

    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    with open(error_log_path, "a") as f:
        f.write(f"[{timestamp}] {message}\n")

    logger.error(message)


def fetch_snapshot(base_url: str, data_dir: Path, output_dir: Path = Path("data/output")) -> bool:
    """
    Download every snapshot CSV from `base_url` into `data_dir`.

    Returns:
        bool: True if all required tables downloaded
    """
    data_dir.mkdir(parents=True, exist_ok=True)
    base_url = base_url.rstrip("/")
    ok = True

    for name in list(TABLES) + list(OPTIONAL_TABLES):
        url = f"{base_url}/{name}.csv"
        try:
            logger.info(f"Downloading {url}...")
            response = requests.get(url, timeout=120)
            response.raise_for_status()

            # Validate before overwriting the local copy
            pd.read_csv(io.StringIO(response.text), nrows=5)
            (data_dir / f"{name}.csv").write_text(response.text, encoding="utf-8")
            logger.info(f"✅ Saved {name}.csv ({len(response.content) / 1024:.1f} KB)")
        except (requests.RequestException, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            if name in OPTIONAL_TABLES:
                logger.info(f"Optional table {name} not downloaded: {e}")
                continue
            log_error(f"Download of {name} failed: {type(e).__name__}: {str(e)}", output_dir)
            ok = False

    return ok


def empty_table(name: str) -> pd.DataFrame:
    columns = TABLES.get(name) or OPTIONAL_TABLES.get(name, [])
    if name == "bedroom_revenue":
        columns = ["city", "bedrooms", "revenue"]
    return pd.DataFrame(columns=columns)


def load_table(path: Path, required: List[str]) -> pd.DataFrame:
    """
    Read one CSV export keeping text columns as text.

    Raises:
        FileNotFoundError: Export missing
        ValueError: Required columns missing
    """
    df = pd.read_csv(path, dtype=str, keep_default_na=True, encoding_errors="replace")
    df.columns = [c.strip().lower().replace(" ", "_") for c in df.columns]

    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"{path.name} is missing columns {missing}")

    for col in df.columns:
        df[col] = df[col].str.strip()
    return df


def normalize_bedroom_revenue(wide: pd.DataFrame) -> pd.DataFrame:
    """
    Wide bedroom export -> long rows (city, bedrooms, revenue).

    Bedroom columns are named like 'bedrooms_1', '2_bedrooms', '3br' or
    'studio'; the bucket label is the bedroom count ('0' for studio).
    """
    value_cols = [c for c in wide.columns if c != "city" and BEDROOM_COLUMN.match(c)]
    ignored = [c for c in wide.columns if c != "city" and c not in value_cols]
    if ignored:
        logger.warning(f"Ignoring non-bedroom columns in bedroom_revenue: {ignored}")

    if not value_cols:
        return empty_table("bedroom_revenue")

    long = unpivot_long(wide, "city", value_cols, var_name="bedrooms", value_name="revenue")

    def bucket(col: str) -> str:
        label = BEDROOM_COLUMN.match(col).group(1).lower()
        return "0" if label == "studio" else str(int(label))

    long["bedrooms"] = long["bedrooms"].map(bucket)
    logger.info(f"Normalized bedroom revenue: {len(wide)} cities x {len(value_cols)} bedroom columns -> {len(long)} rows")
    return long


def load_snapshot(data_dir: Path, output_dir: Path = Path("data/output")) -> Snapshot:
    """
    Load every snapshot table from `data_dir`.

    Returns:
        Snapshot with one DataFrame per table (empty frames for failed tables)
    """
    logger.info("=" * 60)
    logger.info(f"STARTING SNAPSHOT INGESTION ({data_dir})")
    logger.info("=" * 60)

    snapshot = Snapshot()

    for name, required in TABLES.items():
        path = data_dir / f"{name}.csv"
        try:
            df = load_table(path, required)
            if name == "bedroom_revenue":
                df = normalize_bedroom_revenue(df)
            snapshot.tables[name] = df
            logger.info(f"✅ Loaded {len(df)} {name} rows")
        except (OSError, ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            log_error(f"Snapshot table {name} failed to load: {type(e).__name__}: {str(e)}", output_dir)
            snapshot.tables[name] = empty_table(name)
            snapshot.failed.append(name)

    for name, required in OPTIONAL_TABLES.items():
        path = data_dir / f"{name}.csv"
        if not path.exists():
            snapshot.tables[name] = empty_table(name)
            continue
        try:
            snapshot.tables[name] = load_table(path, required)
        except (OSError, ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            logger.warning(f"Optional table {name} ignored: {e}")
            snapshot.tables[name] = empty_table(name)

    if snapshot.failed:
        logger.warning(f"⚠️  Partial snapshot: {len(snapshot.failed)}/{len(TABLES)} tables missing {snapshot.failed}")
    else:
        logger.info("✅ All snapshot tables loaded")

    return snapshot


def run_ingestion(data_dir: Path, output_dir: Path = Path("data/output"),
                  base_url: Optional[str] = None) -> Snapshot:
    """
    Optionally fetch, then load the snapshot.

    Returns:
        Snapshot (check .failed / .is_empty for degraded runs)
    """
    if base_url:
        if not fetch_snapshot(base_url, data_dir, output_dir):
            logger.warning("Some snapshot downloads failed - falling back to local copies")

    return load_snapshot(data_dir, output_dir)


if __name__ == "__main__":
    snapshot = run_ingestion(Path("data/snapshot"))
    exit(0 if not snapshot.is_empty else 1)
