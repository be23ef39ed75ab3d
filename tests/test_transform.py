import math

import pandas as pd
import pytest

from imputation import UNRESOLVABLE
from ingest import Snapshot
from issues import MetricError, RunIssues
from settings import PipelineConfig
from transform import (
    metric_cleaning_fees,
    metric_neighborhood_revenue,
    prepare_listings,
    run_transformation,
)


@pytest.fixture
def results(snapshot_tables):
    return run_transformation(Snapshot(tables=snapshot_tables), PipelineConfig())


def _row(frame, **keys):
    mask = pd.Series(True, index=frame.index)
    for col, value in keys.items():
        mask &= frame[col].isna() if value is None else frame[col] == value
    rows = frame[mask]
    assert len(rows) == 1, rows
    return rows.iloc[0]


def test_neighborhood_revenue_ranked_within_city(results):
    table = results["neighborhood_revenue"]

    assert table["city"].tolist() == ["Mombasa", "Nairobi", "Nairobi", "Nairobi"]
    assert table["rank"].tolist() == [1, 1, 1, 3]

    kilimani = _row(table, city="Nairobi", neighborhood="Kilimani")
    assert kilimani["ttm_revenue_usd"] == pytest.approx(15000)
    assert kilimani["listings"] == 2
    assert kilimani["pct_of_city_revenue"] == pytest.approx(46.875)

    unresolved = _row(table, city="Nairobi", neighborhood=None)
    assert unresolved["ttm_revenue_usd"] == pytest.approx(2000)

    nyali = _row(table, city="Mombasa", neighborhood="Nyali")
    assert nyali["pct_of_city_revenue"] == pytest.approx(100.0)


def test_cleaning_fees_imputed_per_neighborhood(results):
    summary = results["cleaning_fees"]

    kilimani = _row(summary, city="Nairobi", neighborhood="Kilimani")
    assert kilimani["observed"] == 1
    assert kilimani["imputed"] == 1
    assert kilimani["avg_cleaning_fee_usd"] == pytest.approx(15.0)

    westlands = _row(summary, city="Nairobi", neighborhood="Westlands")
    assert westlands["unresolvable"] == 1
    assert math.isnan(westlands["avg_cleaning_fee_usd"])

    detail = results["cleaning_fee_listings"]
    assert _row(detail, listing_id="L3")["cleaning_fee_imputed_status"] == UNRESOLVABLE
    assert _row(detail, listing_id="L2")["cleaning_fee_imputed_usd"] == pytest.approx(15.0)

    assert len(results["issues"].soft_errors) == 1


def test_occupancy_buckets_pivot(results):
    table = results["occupancy_buckets"]

    assert table.columns.tolist() == ["city", "low", "moderate", "high", "unclassified", "total_listings"]
    nairobi = _row(table, city="Nairobi")
    assert [nairobi[c] for c in ["low", "moderate", "high", "unclassified"]] == [1, 1, 1, 1]
    assert nairobi["total_listings"] == 4

    mombasa = _row(table, city="Mombasa")
    assert [mombasa[c] for c in ["low", "moderate", "high", "unclassified"]] == [1, 0, 0, 0]


def test_property_yield(results):
    table = results["property_yield"]

    assert set(table["neighborhood"]) == {"Kilimani", "Nyali"}

    kilimani = _row(table, neighborhood="Kilimani")
    assert kilimani["properties"] == 2
    assert kilimani["avg_price_usd"] == pytest.approx(150000)
    assert kilimani["avg_ttm_revenue_usd"] == pytest.approx(7500)
    assert kilimani["gross_yield_pct"] == pytest.approx(5.0)
    assert kilimani["payback_years"] == pytest.approx(20.0)

    nyali = _row(table, neighborhood="Nyali")
    assert nyali["city"] == "Mombasa"
    assert nyali["gross_yield_pct"] == pytest.approx(10.0)
    assert nyali["payback_years"] == pytest.approx(10.0)


def test_bedroom_revenue_share_and_rank(results):
    table = results["bedroom_revenue"]

    assert table[["city", "bedrooms"]].values.tolist() == [["Mombasa", "1"], ["Nairobi", "1"], ["Nairobi", "2"]]

    one = _row(table, city="Nairobi", bedrooms="1")
    two = _row(table, city="Nairobi", bedrooms="2")
    assert one["revenue_usd"] == pytest.approx(1000)
    assert one["pct_of_city_revenue"] == pytest.approx(25.0)
    assert one["rank"] == 2
    assert two["pct_of_city_revenue"] == pytest.approx(75.0)
    assert two["rank"] == 1

    assert _row(table, city="Mombasa")["pct_of_city_revenue"] == pytest.approx(100.0)


def test_market_trends(results):
    trends = results["market_trends"]
    improving = results["improving_markets"]

    assert trends["city"].tolist() == ["Nairobi", "Mombasa"]
    assert improving["city"].tolist() == ["Nairobi"]
    assert improving["total_delta"].iloc[0] == pytest.approx(15.0)
    assert improving["date"].iloc[0] == pd.Timestamp("2024-03-01")
    assert results["trend_summary"] == "1 cities improving across 1 months"


def test_city_summary_includes_unresolved_by_default(results):
    table = results["city_summary"]

    assert table["city"].tolist() == ["Nairobi", "Mombasa"]
    nairobi = _row(table, city="Nairobi")
    assert nairobi["listings"] == 4
    assert nairobi["unresolved_listings"] == 1
    assert nairobi["ttm_revenue_usd"] == pytest.approx(32000)
    assert nairobi["pct_of_total_revenue"] == pytest.approx(80.0)


def test_city_summary_can_drop_unresolved(snapshot_tables):
    config = PipelineConfig(include_unresolved_neighborhoods=False)

    table = run_transformation(Snapshot(tables=snapshot_tables), config)["city_summary"]

    nairobi = _row(table, city="Nairobi")
    assert nairobi["listings"] == 3
    assert nairobi["ttm_revenue_usd"] == pytest.approx(30000)


def test_exclusions_are_reported(results):
    issues = results["issues"]

    assert issues.excluded_count("listings.ttm_revenue") == 1
    assert issues.excluded_count("property_prices.price") == 1

    exclusions = results["exclusions"]
    assert set(exclusions["stage"]) == {"listings.ttm_revenue", "property_prices.price"}


def test_fixed_rate_overrides_table(snapshot_tables):
    config = PipelineConfig(fixed_exchange_rate=0.02)

    table = run_transformation(Snapshot(tables=snapshot_tables), config)["city_summary"]

    assert _row(table, city="Mombasa")["ttm_revenue_usd"] == pytest.approx(16000)


def test_missing_tables_give_empty_results():
    results = run_transformation(Snapshot(), PipelineConfig())

    for name in ["city_summary", "neighborhood_revenue", "cleaning_fees", "occupancy_buckets",
                 "property_yield", "bedroom_revenue", "market_trends", "improving_markets"]:
        assert results[name].empty, name
    assert results["trend_summary"] == "No improving markets detected"


def test_prepare_listings_counts_missing_revenue(snapshot_tables):
    listings = snapshot_tables["listings"].copy()
    listings.loc[0, "ttm_revenue"] = None
    issues = RunIssues()
    rates = pd.Series({"Nairobi": 0.01, "Mombasa": 0.01})

    prepared = prepare_listings(listings, snapshot_tables["coordinate_neighborhoods"], rates,
                                PipelineConfig(), issues)

    assert "L1" not in prepared["listing_id"].tolist()
    assert issues.excluded_count("listings.ttm_revenue") == 2


def test_metric_failure_returns_empty_table_and_is_recorded():
    broken = pd.DataFrame({"listing_id": ["a"], "city": ["Nairobi"]})
    issues = RunIssues()

    assert metric_neighborhood_revenue(broken, PipelineConfig(), issues).empty
    summary, detail = metric_cleaning_fees(broken, pd.Series(dtype="float64"), PipelineConfig(), issues)
    assert summary.empty and detail.empty

    assert issues.failed_metrics == ["neighborhood_revenue", "cleaning_fees"]
    assert all(isinstance(e, MetricError) for e in issues.soft_errors)
    assert issues.summary()["failed_metrics"] == ["neighborhood_revenue", "cleaning_fees"]


def test_city_without_exchange_rate_is_not_zeroed(snapshot_tables):
    rates = snapshot_tables["exchange_rates"]
    snapshot_tables["exchange_rates"] = rates[rates["city"] != "Mombasa"]

    results = run_transformation(Snapshot(tables=snapshot_tables), PipelineConfig())
    table = results["city_summary"]

    mombasa = _row(table, city="Mombasa")
    assert mombasa["listings"] == 1
    assert math.isnan(mombasa["ttm_revenue_usd"])
    assert math.isnan(mombasa["pct_of_total_revenue"])
    assert _row(table, city="Nairobi")["pct_of_total_revenue"] == pytest.approx(100.0)
    assert table["city"].tolist() == ["Nairobi", "Mombasa"]
    # one listing, one property price and one bedroom row without a rate
    assert results["issues"].excluded_count("currency:city") == 3


def test_malformed_optional_fields_are_coerced_not_excluded(snapshot_tables):
    listings = snapshot_tables["listings"].copy()
    listings.loc[0, "cleaning_fee"] = "n/a-ish"
    listings.loc[0, "ttm_avg_rate"] = "oops"
    issues = RunIssues()
    rates = pd.Series({"Nairobi": 0.01, "Mombasa": 0.01})

    prepared = prepare_listings(listings, snapshot_tables["coordinate_neighborhoods"], rates,
                                PipelineConfig(), issues)

    assert "L1" in prepared["listing_id"].tolist()
    assert issues.excluded_count() == 1
    assert issues.excluded_count("listings.cleaning_fee") == 0
    assert issues.coerced_count("listings.cleaning_fee") == 1
    assert issues.coerced_count("listings.ttm_avg_rate") == 1
    assert set(issues.as_frame()["stage"]) == {"listings.ttm_revenue"}
