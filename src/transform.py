"""
Kenya STR Pulse — Transformation Logic

One function per analytical question, each returning a result table:
- Neighborhood Revenue: TTM revenue by neighborhood, ranked within city, share of city revenue
- Cleaning Fees: missing/zero fees imputed with the neighborhood average
- Occupancy Buckets: listings per L90D reserved-days bucket, one column per bucket
- Property Yield: property prices vs. rental revenue per neighborhood (gross yield, payback)
- Bedroom Revenue: revenue by bedroom count, share of city revenue
- Market Trends: historical vs. forward occupancy/ADR, improving markets first
- City Summary: city-level totals

All money is converted KES -> USD with one exchange-rate policy per run.
"""

import logging
from typing import Dict, Optional, Tuple

import pandas as pd

from currency import convert_to_usd, parse_price_column, select_exchange_rates
from geo_join import match_locations, resolve_neighborhoods
from imputation import IMPUTED, OBSERVED, UNRESOLVABLE, impute_group_mean
from ingest import Snapshot
from issues import MetricError, RunIssues
from ranking import aggregate, competition_rank, percent_of_total
from reshape import bucket_labels, bucketize, pivot_wide
from settings import PipelineConfig
from trends import DEFAULT_PAIRS, SERIES_NAMES, compare_trends, load_series

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

LISTING_NUMERIC = ["latitude", "longitude", "ttm_revenue", "ttm_avg_rate", "cleaning_fee", "l90d_reserved_days"]
LISTING_MONEY = ["ttm_revenue", "ttm_avg_rate", "cleaning_fee"]


def record_failure(issues: Optional[RunIssues], metric: str, error: Exception) -> None:
    """Log a failed metric and put it on the run's issues for the footer and manifest."""
    logger.error(f"Error calculating {metric}: {type(error).__name__}: {error}")
    if issues is not None:
        issues.soft(MetricError(metric, error))


def prepare_listings(listings: pd.DataFrame, coords: pd.DataFrame, rates: pd.Series,
                     config: PipelineConfig, issues: RunIssues) -> pd.DataFrame:
    """
    Parse, geo-join and convert the listing snapshot.

    Returns:
        Listings with numeric fields, nullable 'neighborhood' and '<money>_usd' columns.
        Rows with an unparseable revenue are dropped (counted); a blank
        cleaning fee is kept as missing for imputation.
        Other non-numeric fields become missing and are counted as coerced
        values; their rows stay in the aggregates.
    """
    if listings.empty:
        return pd.DataFrame(columns=list(listings.columns) + ["neighborhood"] + [f"{c}_usd" for c in LISTING_MONEY])

    df = listings.copy()
    for col in LISTING_NUMERIC:
        raw = df[col]
        df[col] = pd.to_numeric(raw, errors="coerce")
        bad = int((raw.notna() & df[col].isna()).sum())
        if col == "ttm_revenue":
            issues.exclude(f"listings.{col}", bad, "non-numeric value")
        else:
            issues.coerce(f"listings.{col}", bad, "non-numeric value")

    issues.exclude("listings.ttm_revenue", int(listings["ttm_revenue"].isna().sum()), "missing revenue")
    df = df.dropna(subset=["ttm_revenue"])

    df = resolve_neighborhoods(df, coords, precision=config.coordinate_precision)
    df = convert_to_usd(df, LISTING_MONEY, rates, issues=issues)
    return df


def metric_neighborhood_revenue(listings: pd.DataFrame, config: PipelineConfig,
                                issues: Optional[RunIssues] = None) -> pd.DataFrame:
    """
    TTM revenue per neighborhood, ranked within city.

    Returns:
        DataFrame with columns: city, neighborhood, listings, ttm_revenue_usd,
        avg_adr_usd, rank, pct_of_city_revenue
    """
    logger.info("Calculating Neighborhood Revenue Ranking...")

    try:
        if listings.empty:
            logger.warning("No listings - skipping neighborhood revenue")
            return pd.DataFrame()

        valid = listings.dropna(subset=["ttm_revenue_usd"])
        result = aggregate(valid, ["city", "neighborhood"], {
            "listings": ("listing_id", "count"),
            "ttm_revenue_usd": ("ttm_revenue_usd", "sum"),
            "avg_adr_usd": ("ttm_avg_rate_usd", "mean"),
        })

        result = competition_rank(result, "ttm_revenue_usd", config.ranking_partition)
        result = percent_of_total(result, "ttm_revenue_usd", config.ranking_partition,
                                  out_col="pct_of_city_revenue")
        result = result.sort_values(config.ranking_partition + ["rank", "neighborhood"],
                                    kind="mergesort", na_position="last").reset_index(drop=True)

        logger.info(f"Ranked {len(result)} neighborhoods by TTM revenue")
        return result

    except Exception as e:
        record_failure(issues, "neighborhood_revenue", e)
        return pd.DataFrame()


def metric_cleaning_fees(listings: pd.DataFrame, rates: pd.Series, config: PipelineConfig,
                         issues: RunIssues) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Impute missing/zero cleaning fees with the group's non-zero average.

    Imputation runs in KES (one city per group, so one rate) and is converted
    afterwards, so a listing's own fee is never replaced because of a missing rate.

    Returns:
        (per-group summary, per-listing detail)
        Summary columns: <group>, listings, observed, imputed, unresolvable, avg_cleaning_fee_usd
    """
    logger.info("Calculating Cleaning Fee Imputation...")

    try:
        if listings.empty:
            logger.warning("No listings - skipping cleaning fee imputation")
            return pd.DataFrame(), pd.DataFrame()

        group = list(config.imputation_group)
        detail = impute_group_mean(listings, "cleaning_fee", group, issues=issues)
        detail = convert_to_usd(detail, ["cleaning_fee_imputed"], rates)

        status = detail["cleaning_fee_imputed_status"]
        detail["_observed"] = status == OBSERVED
        detail["_imputed"] = status == IMPUTED
        detail["_unresolvable"] = status == UNRESOLVABLE

        summary = aggregate(detail, group, {
            "listings": ("listing_id", "count"),
            "observed": ("_observed", "sum"),
            "imputed": ("_imputed", "sum"),
            "unresolvable": ("_unresolvable", "sum"),
            "avg_cleaning_fee_usd": ("cleaning_fee_imputed_usd", "mean"),
        })
        summary = summary.sort_values(group, kind="mergesort", na_position="last").reset_index(drop=True)

        detail = detail[["listing_id"] + group + [
            "cleaning_fee", "cleaning_fee_imputed", "cleaning_fee_imputed_usd", "cleaning_fee_imputed_status",
        ]]

        logger.info(f"Imputed cleaning fees for {int(detail['cleaning_fee_imputed_status'].eq(IMPUTED).sum())} listings")
        return summary, detail

    except Exception as e:
        record_failure(issues, "cleaning_fees", e)
        return pd.DataFrame(), pd.DataFrame()


def metric_occupancy_buckets(listings: pd.DataFrame, config: PipelineConfig,
                             issues: Optional[RunIssues] = None) -> pd.DataFrame:
    """
    Listings per city in each L90D reserved-days bucket (wide).

    Returns:
        DataFrame with columns: city, <bucket labels...>, unclassified, total_listings
    """
    logger.info("Calculating Occupancy Buckets...")

    try:
        if listings.empty:
            logger.warning("No listings - skipping occupancy buckets")
            return pd.DataFrame()

        df = listings.copy()
        df["occupancy_bucket"] = bucketize(df["l90d_reserved_days"], config.occupancy_buckets,
                                           config.bucket_default_label)

        categories = bucket_labels(config.occupancy_buckets, config.bucket_default_label)
        result = pivot_wide(df, "city", "occupancy_bucket", "listing_id", categories,
                            fill_value=config.pivot_fill_value, aggfunc="count")
        result["total_listings"] = result[categories].sum(axis=1)

        logger.info(f"Bucketed {len(df)} listings into {len(categories)} occupancy buckets")
        return result

    except Exception as e:
        record_failure(issues, "occupancy_buckets", e)
        return pd.DataFrame()


def neighborhood_cities(listings: pd.DataFrame) -> pd.Series:
    """neighborhood -> city, alphabetically first city when a name spans several."""
    pairs = listings[["neighborhood", "city"]].dropna().drop_duplicates()
    shared = pairs["neighborhood"].duplicated(keep=False)
    if shared.any():
        logger.warning(f"Neighborhood names in several cities: {sorted(pairs.loc[shared, 'neighborhood'].unique())}")
    return pairs.sort_values(["neighborhood", "city"]).groupby("neighborhood")["city"].first()


def metric_property_yield(prices: pd.DataFrame, listings: pd.DataFrame, aliases: pd.DataFrame,
                          rates: pd.Series, config: PipelineConfig, issues: RunIssues) -> pd.DataFrame:
    """
    Real-estate cost vs. rental revenue per neighborhood.

    Signal:
    - gross_yield_pct = avg listing TTM revenue / avg property price
    - payback_years  = avg property price / avg listing TTM revenue

    Returns:
        DataFrame with columns: city, neighborhood, properties, avg_price_usd,
        avg_ttm_revenue_usd, gross_yield_pct, payback_years, rank
    """
    logger.info("Calculating Property Yield...")

    try:
        if prices.empty or listings.empty:
            logger.warning("No property prices or listings - skipping property yield")
            return pd.DataFrame()

        parsed = parse_price_column(prices["price"])
        issues.exclude("property_prices.price", parsed.excluded, "malformed price")

        props = prices.copy()
        props["price"] = parsed.values
        props = props.dropna(subset=["price"])

        hood_city = neighborhood_cities(listings)
        props = match_locations(props, hood_city.index, aliases)
        props = props.dropna(subset=["neighborhood"])
        props["city"] = props["neighborhood"].map(hood_city)
        props = convert_to_usd(props, ["price"], rates, issues=issues)

        price_by_hood = aggregate(props.dropna(subset=["price_usd"]), ["city", "neighborhood"], {
            "properties": ("price_usd", "count"),
            "avg_price_usd": ("price_usd", "mean"),
        })
        revenue_by_hood = aggregate(listings.dropna(subset=["neighborhood", "ttm_revenue_usd"]),
                                    ["city", "neighborhood"], {
            "avg_ttm_revenue_usd": ("ttm_revenue_usd", "mean"),
        })

        result = price_by_hood.merge(revenue_by_hood, on=["city", "neighborhood"], how="inner")
        price = result["avg_price_usd"].where(result["avg_price_usd"] > 0)
        revenue = result["avg_ttm_revenue_usd"].where(result["avg_ttm_revenue_usd"] > 0)
        result["gross_yield_pct"] = result["avg_ttm_revenue_usd"] / price * 100
        result["payback_years"] = price / revenue

        result = competition_rank(result, "gross_yield_pct", config.ranking_partition)
        result = result.sort_values(config.ranking_partition + ["rank", "neighborhood"],
                                    kind="mergesort", na_position="last").reset_index(drop=True)

        logger.info(f"Compared property prices and revenue for {len(result)} neighborhoods")
        return result

    except Exception as e:
        record_failure(issues, "property_yield", e)
        return pd.DataFrame()


def metric_bedroom_revenue(bedroom_revenue: pd.DataFrame, rates: pd.Series, config: PipelineConfig,
                           issues: RunIssues) -> pd.DataFrame:
    """
    Revenue by bedroom count per city (long form).

    Returns:
        DataFrame with columns: city, bedrooms, revenue_usd, pct_of_city_revenue, rank
    """
    logger.info("Calculating Bedroom Revenue...")

    try:
        if bedroom_revenue.empty:
            logger.warning("No bedroom revenue data - skipping")
            return pd.DataFrame()

        df = bedroom_revenue.dropna(subset=["revenue"]).copy()
        parsed = parse_price_column(df["revenue"])
        issues.exclude("bedroom_revenue.revenue", parsed.excluded, "malformed revenue")
        df["revenue"] = parsed.values
        df = df.dropna(subset=["revenue"])

        df = convert_to_usd(df, ["revenue"], rates, issues=issues)
        result = aggregate(df.dropna(subset=["revenue_usd"]), ["city", "bedrooms"], {
            "revenue_usd": ("revenue_usd", "sum"),
        })
        result = percent_of_total(result, "revenue_usd", "city", out_col="pct_of_city_revenue")
        result = competition_rank(result, "revenue_usd", "city")

        result["_order"] = pd.to_numeric(result["bedrooms"], errors="coerce")
        result = result.sort_values(["city", "_order"], kind="mergesort").drop(columns="_order")
        return result.reset_index(drop=True)

    except Exception as e:
        record_failure(issues, "bedroom_revenue", e)
        return pd.DataFrame()


def metric_market_trends(snapshot: Snapshot, config: PipelineConfig,
                         issues: RunIssues) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Historical vs. forward-looking occupancy and ADR by city and month.

    Returns:
        (all aligned points, improving points)
        Columns: city, date, <four series>, occupancy_delta, adr_delta, total_delta
    """
    logger.info("Calculating Market Trends...")

    try:
        series = {
            name: load_series(snapshot.get(name), name, config.date_formats, config.trend_granularity, issues)
            for name in SERIES_NAMES
        }
        if any(df.empty for df in series.values()):
            empty = [name for name, df in series.items() if df.empty]
            logger.warning(f"No usable points in {empty} - skipping market trends")
            return pd.DataFrame(), pd.DataFrame()

        return compare_trends(series, DEFAULT_PAIRS, thresholds=config.improving_thresholds)

    except Exception as e:
        record_failure(issues, "market_trends", e)
        return pd.DataFrame(), pd.DataFrame()


def metric_city_summary(listings: pd.DataFrame, config: PipelineConfig,
                        issues: Optional[RunIssues] = None) -> pd.DataFrame:
    """
    City-level totals.

    Listings with no resolved neighborhood count toward city totals unless
    include_unresolved_neighborhoods is off.

    Returns:
        DataFrame with columns: city, listings, unresolved_listings,
        ttm_revenue_usd, avg_adr_usd, avg_l90d_reserved_days, pct_of_total_revenue
    """
    logger.info("Calculating City Summary...")

    try:
        if listings.empty:
            return pd.DataFrame()

        df = listings.copy()
        df["_unresolved"] = df["neighborhood"].isna()
        if not config.include_unresolved_neighborhoods:
            logger.info(f"Excluding {int(df['_unresolved'].sum())} unresolved listings from city totals")
            df = df[~df["_unresolved"]]

        result = aggregate(df, ["city"], {
            "listings": ("listing_id", "count"),
            "unresolved_listings": ("_unresolved", "sum"),
            # NaN when no listing in the city could be converted
            "ttm_revenue_usd": ("ttm_revenue_usd", lambda s: s.sum(min_count=1)),
            "avg_adr_usd": ("ttm_avg_rate_usd", "mean"),
            "avg_l90d_reserved_days": ("l90d_reserved_days", "mean"),
        })
        result = percent_of_total(result, "ttm_revenue_usd", out_col="pct_of_total_revenue")
        return result.sort_values("ttm_revenue_usd", ascending=False, kind="mergesort").reset_index(drop=True)

    except Exception as e:
        record_failure(issues, "city_summary", e)
        return pd.DataFrame()


def run_transformation(snapshot: Snapshot, config: PipelineConfig,
                       issues: Optional[RunIssues] = None) -> Dict[str, object]:
    """
    Execute all analytical questions over one snapshot.

    Returns:
        dict: Result tables keyed by name, plus 'exclusions' (DataFrame),
        'issues' (RunIssues) and 'trend_summary' (str)
    """
    logger.info("=" * 60)
    logger.info("STARTING TRANSFORMATION")
    logger.info("=" * 60)

    issues = issues or RunIssues()
    results = {}

    listings_raw = snapshot.get("listings")
    cities = pd.concat([
        listings_raw.get("city", pd.Series(dtype="object")),
        snapshot.get("bedroom_revenue").get("city", pd.Series(dtype="object")),
    ])
    rates = select_exchange_rates(snapshot.get("exchange_rates"), config.exchange_rate_policy,
                                  config.fixed_exchange_rate, issues, cities=cities)

    listings = prepare_listings(listings_raw, snapshot.get("coordinate_neighborhoods"), rates, config, issues)
    logger.info(f"Prepared {len(listings)} listings")

    results['city_summary'] = metric_city_summary(listings, config, issues)
    results['neighborhood_revenue'] = metric_neighborhood_revenue(listings, config, issues)
    results['cleaning_fees'], results['cleaning_fee_listings'] = metric_cleaning_fees(
        listings, rates, config, issues)
    results['occupancy_buckets'] = metric_occupancy_buckets(listings, config, issues)
    results['property_yield'] = metric_property_yield(
        snapshot.get("property_prices"), listings, snapshot.get("location_aliases"), rates, config, issues)
    results['bedroom_revenue'] = metric_bedroom_revenue(snapshot.get("bedroom_revenue"), rates, config, issues)
    results['market_trends'], results['improving_markets'] = metric_market_trends(snapshot, config, issues)

    improving = results['improving_markets']
    if not improving.empty:
        cities_up = improving["city"].nunique()
        results['trend_summary'] = f"{cities_up} cities improving across {len(improving)} months"
    else:
        results['trend_summary'] = "No improving markets detected"

    results['exclusions'] = issues.as_frame()
    results['issues'] = issues

    logger.info(f"✅ Transformation complete ({issues.excluded_count()} rows excluded)")
    return results


if __name__ == "__main__":
    from ingest import load_snapshot
    from settings import load_config

    config = load_config()
    results = run_transformation(load_snapshot(config.data_dir, config.output_dir), config)

    # Print summary
    print("\n" + "=" * 60)
    print("TRANSFORMATION RESULTS SUMMARY")
    print("=" * 60)
    for name, table in results.items():
        if isinstance(table, pd.DataFrame):
            print(f"{name}: {len(table)} records")
