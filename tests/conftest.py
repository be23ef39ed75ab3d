import sys
from pathlib import Path

import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT / "src"))
sys.path.insert(0, str(ROOT))

from settings import ENV_VARS  # noqa: E402


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(ENV_VARS) + ["PIPELINE_CONFIG"]:
        monkeypatch.delenv(name, raising=False)


def _listings():
    return pd.DataFrame([
        {"listing_id": "L1", "latitude": "-1.29", "longitude": "36.78", "city": "Nairobi",
         "ttm_revenue": "1000000", "ttm_avg_rate": "8000", "cleaning_fee": "1500", "l90d_reserved_days": "30"},
        {"listing_id": "L2", "latitude": "-1.29", "longitude": "36.78", "city": "Nairobi",
         "ttm_revenue": "500000", "ttm_avg_rate": "6000", "cleaning_fee": "0", "l90d_reserved_days": "31"},
        {"listing_id": "L3", "latitude": "-1.30", "longitude": "36.80", "city": "Nairobi",
         "ttm_revenue": "1500000", "ttm_avg_rate": "10000", "cleaning_fee": None, "l90d_reserved_days": "75"},
        {"listing_id": "L4", "latitude": "-4.05", "longitude": "39.66", "city": "Mombasa",
         "ttm_revenue": "800000", "ttm_avg_rate": "7000", "cleaning_fee": "2000", "l90d_reserved_days": "10"},
        {"listing_id": "L5", "latitude": "-9.99", "longitude": "9.99", "city": "Nairobi",
         "ttm_revenue": "200000", "ttm_avg_rate": "5000", "cleaning_fee": "1000", "l90d_reserved_days": "95"},
        {"listing_id": "L6", "latitude": "-1.30", "longitude": "36.80", "city": "Nairobi",
         "ttm_revenue": "abc", "ttm_avg_rate": "5000", "cleaning_fee": "1000", "l90d_reserved_days": "20"},
    ])


def _series(rows):
    return pd.DataFrame(rows, columns=["city", "date", "value"])


@pytest.fixture
def snapshot_tables():
    """Raw snapshot tables as ingestion hands them over (text columns, long bedroom revenue)."""
    return {
        "listings": _listings(),
        "coordinate_neighborhoods": pd.DataFrame({
            "latitude": ["-1.29", "-1.30", "-4.05"],
            "longitude": ["36.78", "36.80", "39.66"],
            "neighborhood": ["Kilimani", "Westlands", "Nyali"],
        }),
        "exchange_rates": pd.DataFrame({
            "city": ["Nairobi", "Mombasa"],
            "date": ["2024-01-01", "2024-01-01"],
            "rate": ["0.01", "0.01"],
        }),
        "property_prices": pd.DataFrame({
            "location": [
                "Apartment in Kilimani, Nairobi",
                "Kilimani townhouse",
                "Nyali beachfront",
                "Somewhere else",
                "Westlands",
            ],
            "price": ["KSH 10 000 000", "KSH 20 000 000", "KES 8,000,000", "KSH 5 000 000", "price on request"],
        }),
        "historical_occupancy": _series([["Nairobi", "2024-03-01", "50%"], ["Mombasa", "2024-03-01", "40%"]]),
        "future_occupancy": _series([["Nairobi", "01/03/2024", "55"], ["Mombasa", "Mar 2024", "38"]]),
        "historical_adr": _series([["Nairobi", "2024-03-15", "100"], ["Mombasa", "2024-03-01", "90"]]),
        "future_adr": _series([["Nairobi", "2024-03", "110"], ["Mombasa", "2024-03-01", "95"]]),
        "bedroom_revenue": pd.DataFrame({
            "city": ["Mombasa", "Mombasa", "Nairobi", "Nairobi"],
            "bedrooms": ["1", "2", "1", "2"],
            "revenue": ["100000", None, "KSH 100 000", "300000"],
        }),
        "location_aliases": pd.DataFrame(columns=["location", "neighborhood"]),
    }


@pytest.fixture
def write_snapshot(snapshot_tables):
    """Write the snapshot as CSV exports (bedroom revenue back in wide form)."""

    def _write(data_dir: Path, skip=()):
        data_dir.mkdir(parents=True, exist_ok=True)
        for name, df in snapshot_tables.items():
            if name in skip:
                continue
            if name == "bedroom_revenue":
                df = pd.DataFrame({
                    "city": ["Mombasa", "Nairobi"],
                    "bedrooms_1": ["100000", "KSH 100 000"],
                    "bedrooms_2": [None, "300000"],
                })
            df.to_csv(data_dir / f"{name}.csv", index=False)
        return data_dir

    return _write
