"""
Kenya STR Pulse — Report Delivery

Writes the run's result tables in two forms:
- One unformatted CSV per table (the dashboard feed, numbers stay numbers)
- An HTML report rendered with Jinja2, money as USD and shares as percentages

Includes both normal mode (full market report) and degraded mode (error notification).
"""

import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
from jinja2 import Environment

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

NOT_APPLICABLE = "N/A"

# HTML Report Template
REPORT_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Oxygen, Ubuntu, Cantarell, sans-serif;
            line-height: 1.6;
            color: #333;
            max-width: 960px;
            margin: 0 auto;
            padding: 20px;
            background-color: #f5f5f5;
        }
        .header {
            background: linear-gradient(135deg, #1b7f5b 0%, #0d3b66 100%);
            color: white;
            padding: 30px;
            border-radius: 8px 8px 0 0;
            text-align: center;
        }
        .header h1 {
            margin: 0;
            font-size: 28px;
        }
        .header p {
            margin: 10px 0 0 0;
            opacity: 0.9;
        }
        .content {
            background: white;
            padding: 30px;
            border-radius: 0 0 8px 8px;
            box-shadow: 0 2px 4px rgba(0,0,0,0.1);
        }
        .metric-section {
            margin: 30px 0;
            border-left: 4px solid #1b7f5b;
            padding-left: 20px;
        }
        .metric-section h2 {
            margin-top: 0;
            color: #1b7f5b;
            font-size: 20px;
        }
        table {
            width: 100%;
            border-collapse: collapse;
            margin: 15px 0;
            font-size: 14px;
        }
        th {
            background-color: #f8f9fa;
            padding: 12px;
            text-align: left;
            font-weight: 600;
            border-bottom: 2px solid #dee2e6;
        }
        td {
            padding: 10px 12px;
            border-bottom: 1px solid #dee2e6;
        }
        .footer {
            margin-top: 30px;
            padding: 20px;
            background-color: #f8f9fa;
            border-radius: 8px;
            font-size: 13px;
            color: #666;
        }
        .no-data {
            color: #999;
            font-style: italic;
            padding: 20px;
            text-align: center;
            background-color: #f8f9fa;
            border-radius: 4px;
        }
    </style>
</head>
<body>
    <div class="header">
        <h1>🇰🇪 Kenya STR Pulse</h1>
        <p>{{ date }}</p>
    </div>

    <div class="content">
        {% if is_degraded %}
        <div style="background-color: #fff3cd; border-left: 4px solid #ffc107; padding: 20px; margin: 20px 0; border-radius: 4px;">
            <h2 style="margin-top: 0; color: #856404;">⚠️ Pipeline Degraded</h2>
            <p>The snapshot could not be loaded. Some or all tables are unavailable for this report.</p>
            <div style="background-color: #fff; padding: 15px; border-radius: 4px; margin-top: 15px; font-family: monospace; font-size: 12px; white-space: pre-wrap;">{{ error_log }}</div>
        </div>
        {% else %}

        <p><strong>Trend outlook:</strong> {{ trend_summary }}</p>

        {% for section in sections %}
        <div class="metric-section">
            <h2>{{ section.title }}</h2>
            <p>{{ section.description }}</p>
            {% if section.rows|length > 0 %}
            <table>
                <thead>
                    <tr>
                        {% for header in section.headers %}<th>{{ header }}</th>{% endfor %}
                    </tr>
                </thead>
                <tbody>
                    {% for row in section.rows %}
                    <tr>
                        {% for cell in row %}<td>{{ cell }}</td>{% endfor %}
                    </tr>
                    {% endfor %}
                </tbody>
            </table>
            {% if section.total > section.rows|length %}
            <p style="color: #666; font-size: 13px; margin-top: 10px;">
                Showing top {{ section.rows|length }} of {{ section.total }} rows. Full table in {{ section.key }}.csv.
            </p>
            {% endif %}
            {% else %}
            <div class="no-data">{{ section.empty_text }}</div>
            {% endif %}
        </div>
        {% endfor %}

        {% endif %}

        <div class="footer">
            <strong>Pipeline Health:</strong><br>
            Records Ingested: {{ stats.records_ingested }}<br>
            Tables Missing: {{ stats.failed_tables|join(", ") if stats.failed_tables else "None" }}<br>
            Rows Excluded: {{ stats.excluded_rows }}<br>
            Values Set to Missing: {{ stats.coerced_values or 0 }}<br>
            Failed Metrics: {{ stats.failed_metrics|join(", ") if stats.failed_metrics else "None" }}<br>
            Exchange Rate Policy: {{ stats.exchange_rate_policy }}<br>
            Execution Time: {{ stats.execution_time }}<br>
            <br>
            <em>Generated automatically from the Airbnb performance snapshot. Money in USD; shares in percent.</em>
        </div>
    </div>
</body>
</html>
"""

# (result key, title, description, [(column, header, kind)], empty text)
SECTIONS = [
    ("city_summary", "🏙️ City Summary", "Trailing-twelve-month totals per city.", [
        ("city", "City", "text"),
        ("listings", "Listings", "int"),
        ("ttm_revenue_usd", "TTM Revenue", "currency"),
        ("avg_adr_usd", "Avg ADR", "currency"),
        ("avg_l90d_reserved_days", "Avg L90D Reserved", "number"),
        ("pct_of_total_revenue", "Share", "percent"),
    ], "No listings in this snapshot."),
    ("neighborhood_revenue", "🏆 Top Neighborhoods by Revenue",
     "Neighborhoods ranked within each city by TTM revenue; ties share a rank.", [
        ("city", "City", "text"),
        ("rank", "Rank", "int"),
        ("neighborhood", "Neighborhood", "text"),
        ("listings", "Listings", "int"),
        ("ttm_revenue_usd", "TTM Revenue", "currency"),
        ("avg_adr_usd", "Avg ADR", "currency"),
        ("pct_of_city_revenue", "Share of City", "percent"),
    ], "No neighborhood revenue available."),
    ("cleaning_fees", "🧹 Cleaning Fees",
     "Missing or zero fees filled with the neighborhood average; unresolvable groups had no fee data.", [
        ("city", "City", "text"),
        ("neighborhood", "Neighborhood", "text"),
        ("observed", "Observed", "int"),
        ("imputed", "Imputed", "int"),
        ("unresolvable", "Unresolvable", "int"),
        ("avg_cleaning_fee_usd", "Avg Fee", "currency"),
    ], "No cleaning fee data available."),
    ("property_yield", "🏠 Property Price vs. Rental Yield",
     "Average property price against average listing TTM revenue per neighborhood.", [
        ("city", "City", "text"),
        ("rank", "Rank", "int"),
        ("neighborhood", "Neighborhood", "text"),
        ("avg_price_usd", "Avg Price", "currency"),
        ("avg_ttm_revenue_usd", "Avg TTM Revenue", "currency"),
        ("gross_yield_pct", "Gross Yield", "percent"),
        ("payback_years", "Payback (yrs)", "number"),
    ], "No property prices matched a neighborhood."),
    ("bedroom_revenue", "🛏️ Revenue by Bedroom Count", "Share of city revenue by bedroom count.", [
        ("city", "City", "text"),
        ("bedrooms", "Bedrooms", "text"),
        ("revenue_usd", "Revenue", "currency"),
        ("pct_of_city_revenue", "Share of City", "percent"),
        ("rank", "Rank", "int"),
    ], "No bedroom revenue data available."),
    ("improving_markets", "📈 Improving Markets",
     "Months where forward occupancy and ADR both beat the historical figure.", [
        ("city", "City", "text"),
        ("date", "Month", "month"),
        ("historical_occupancy", "Hist. Occupancy", "percent"),
        ("future_occupancy", "Future Occupancy", "percent"),
        ("occupancy_delta", "Occ. Δ (pts)", "number"),
        ("historical_adr", "Hist. ADR", "number"),
        ("future_adr", "Future ADR", "number"),
        ("adr_delta", "ADR Δ", "number"),
    ], "No improving markets in this snapshot."),
    ("exclusions", "🚫 Excluded Rows", "Rows left out of the aggregates because a field could not be parsed.", [
        ("stage", "Stage", "text"),
        ("reason", "Reason", "text"),
        ("count", "Rows", "int"),
    ], "No rows excluded."),
]

MAX_ROWS = 15


def _missing(value) -> bool:
    if value is None or value is pd.NA or value is pd.NaT:
        return True
    return isinstance(value, float) and math.isnan(value)


def format_currency(value, symbol: str = "$", decimals: int = 0) -> str:
    """12500.4 -> '$12,500'; NaN -> 'N/A'."""
    if _missing(value):
        return NOT_APPLICABLE
    value = float(value)
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.{decimals}f}"


def format_percent(value, decimals: int = 1, scale: float = 1) -> str:
    """12.345 -> '12.3%' (use scale=100 for fractions); NaN -> 'N/A'."""
    if _missing(value):
        return NOT_APPLICABLE
    return f"{float(value) * scale:.{decimals}f}%"


def format_number(value, decimals: int = 1) -> str:
    if _missing(value):
        return NOT_APPLICABLE
    return f"{float(value):,.{decimals}f}"


def format_cell(value, kind: str) -> str:
    if kind == "currency":
        return format_currency(value)
    if kind == "percent":
        return format_percent(value)
    if kind == "number":
        return format_number(value)
    if kind == "int":
        return NOT_APPLICABLE if _missing(value) else f"{int(value):,}"
    if kind == "month":
        return NOT_APPLICABLE if _missing(value) else pd.Timestamp(value).strftime("%b %Y")
    return "Unresolved" if _missing(value) else str(value)


def build_sections(results: Dict[str, object], bucket_columns: Optional[List[str]] = None) -> List[dict]:
    """Turn result tables into formatted rows for the template."""
    specs = list(SECTIONS)
    if bucket_columns:
        specs.insert(3, ("occupancy_buckets", "📊 Occupancy Buckets",
                         "Listings per city by reserved days in the last 90 days.",
                         [("city", "City", "text")] + [(c, c.title(), "int") for c in bucket_columns]
                         + [("total_listings", "Total", "int")],
                         "No occupancy data available."))

    sections = []
    for key, title, description, columns, empty_text in specs:
        table = results.get(key)
        if not isinstance(table, pd.DataFrame):
            table = pd.DataFrame()

        present = [(col, header, kind) for col, header, kind in columns if col in table.columns]
        rows = [
            [format_cell(record[col], kind) for col, _, kind in present]
            for record in table.head(MAX_ROWS).to_dict("records")
        ]
        sections.append({
            "key": key,
            "title": title,
            "description": description,
            "headers": [header for _, header, _ in present],
            "rows": rows,
            "total": len(table),
            "empty_text": empty_text,
        })
    return sections


def render_report(results: dict, stats: dict, is_degraded: bool = False, error_log: str = "") -> str:
    """
    Render the HTML report from transformation results.

    Args:
        results: Dict of result tables from transform.py
        stats: Pipeline execution statistics
        is_degraded: Whether pipeline is in degraded mode
        error_log: Error messages if degraded

    Returns:
        Rendered HTML string
    """
    template = Environment(autoescape=True).from_string(REPORT_TEMPLATE)

    buckets = results.get("occupancy_buckets")
    bucket_columns = None
    if isinstance(buckets, pd.DataFrame) and not buckets.empty:
        bucket_columns = [c for c in buckets.columns if c not in ("city", "total_listings")]

    return template.render(
        date=datetime.now().strftime("%B %d, %Y"),
        is_degraded=is_degraded,
        error_log=error_log,
        trend_summary=results.get("trend_summary", "No trend data"),
        sections=[] if is_degraded else build_sections(results, bucket_columns),
        stats=stats,
    )


def export_results(results: dict, output_dir: Path) -> List[Path]:
    """Write each result table as an unformatted CSV for the dashboard."""
    tables_dir = output_dir / "tables"
    tables_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for name, table in results.items():
        if not isinstance(table, pd.DataFrame):
            continue
        path = tables_dir / f"{name}.csv"
        table.to_csv(path, index=False)
        written.append(path)
        logger.info(f"  Exported {name} ({len(table)} rows) -> {path}")
    return written


def deliver_report(results: dict, stats: dict, output_dir: Path, is_degraded: bool = False) -> bool:
    """
    Export the tables and write the HTML report.

    Args:
        results: Transformation results
        stats: Pipeline statistics
        output_dir: Where tables/ and report.html go
        is_degraded: Whether pipeline is in degraded mode
    """
    logger.info("=" * 60)
    logger.info("STARTING REPORT DELIVERY")
    logger.info("=" * 60)

    output_dir.mkdir(parents=True, exist_ok=True)

    # Load error log if degraded
    error_log = ""
    if is_degraded:
        error_log_path = output_dir / "errors.log"
        if error_log_path.exists():
            error_log = error_log_path.read_text()

    try:
        if not is_degraded:
            export_results(results, output_dir)

        html_content = render_report(results, stats, is_degraded, error_log)
        report_path = output_dir / "report.html"
        report_path.write_text(html_content, encoding="utf-8")
    except OSError as e:
        logger.error(f"Failed to write report: {type(e).__name__}: {str(e)}")
        return False

    logger.info(f"✅ Report written to {report_path}")
    return True
