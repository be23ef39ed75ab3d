"""
Kenya STR Pulse — Main Orchestrator

Master conductor for the reporting pipeline:
1. Ingestion (snapshot CSV exports, optionally downloaded first)
2. Transformation (neighborhood rankings, fee imputation, buckets, yield, trends)
3. Run manifest (row counts + exclusions, with a sanity check)
4. Delivery (dashboard CSVs + HTML report)
"""

import sys
import json
import time
import logging
import argparse
from pathlib import Path
from datetime import datetime

import pandas as pd
from dotenv import load_dotenv

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / "src"))

from ingest import run_ingestion
from issues import ConfigError, RunIssues
from settings import PipelineConfig, load_config
from transform import run_transformation
from deliver import deliver_report

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.captureWarnings(True)
logger = logging.getLogger(__name__)


def write_run_manifest(results: dict, output_dir: Path) -> bool:
    """
    Write a JSON summary of the run next to the exported tables.

    Sanity check: a run that produced no non-empty table is not committed.

    Returns:
        bool: True if the manifest was written and the sanity check passed
    """
    logger.info("Writing run manifest...")

    output_dir.mkdir(parents=True, exist_ok=True)

    tables = {k: len(v) for k, v in results.items() if isinstance(v, pd.DataFrame) and k != "exclusions"}
    issues = results.get("issues")

    # Sanity check: at least one result table has rows
    if not any(tables.values()):
        logger.error("⚠️  SANITY CHECK FAILED: No result tables produced. Aborting.")
        return False

    manifest = {
        "run_at": datetime.now().isoformat(timespec="seconds"),
        "table_rows": tables,
        "issues": issues.summary() if isinstance(issues, RunIssues) else {},
    }

    run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
    manifest_path = output_dir / f"manifest_{run_id}.json"
    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2)
    with open(output_dir / "manifest.json", "w") as f:
        json.dump(manifest, f, indent=2)

    logger.info(f"✅ Sanity check passed: {sum(1 for n in tables.values() if n)} non-empty tables")
    logger.info(f"Saved run manifest to {manifest_path}")
    return True


def calculate_stats(snapshot, results: dict, config: PipelineConfig, start_time: float) -> dict:
    """
    Calculate pipeline execution statistics for the report footer.

    Returns:
        dict: Stats for report footer
    """
    execution_time = time.time() - start_time
    issues = results.get("issues")

    stats = {
        'records_ingested': snapshot.records_ingested,
        'failed_tables': list(snapshot.failed),
        'excluded_rows': issues.excluded_count() if isinstance(issues, RunIssues) else 0,
        'coerced_values': issues.coerced_count() if isinstance(issues, RunIssues) else 0,
        'failed_metrics': issues.failed_metrics if isinstance(issues, RunIssues) else [],
        'exchange_rate_policy': (f"fixed ({config.fixed_exchange_rate})" if config.fixed_exchange_rate
                                 else config.exchange_rate_policy.value),
        'execution_time': f"{execution_time:.1f}s"
    }

    return stats


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Kenya STR Pulse reporting pipeline")
    parser.add_argument("--config", type=Path, help="JSON config file")
    parser.add_argument("--data-dir", type=Path, help="Snapshot directory (default data/snapshot)")
    parser.add_argument("--output-dir", type=Path, help="Output directory (default data/output)")
    parser.add_argument("--fetch", metavar="BASE_URL", help="Download the snapshot CSVs from BASE_URL first")
    return parser.parse_args(argv)


def main(argv=None):
    """
    Main pipeline orchestrator.
    """
    load_dotenv()
    args = parse_args(argv)

    logger.info("=" * 80)
    logger.info("KENYA STR PULSE — REPORTING PIPELINE")
    logger.info("=" * 80)

    start_time = time.time()

    try:
        config = load_config(args.config, data_dir=args.data_dir, output_dir=args.output_dir,
                             snapshot_base_url=args.fetch)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    # Phase 1: Ingestion
    logger.info("\n📥 PHASE 1: INGESTION")
    snapshot = run_ingestion(config.data_dir, config.output_dir, config.snapshot_base_url)

    # If every table failed, write a degraded report and exit
    if snapshot.is_empty:
        logger.warning("All snapshot tables failed - entering degraded mode")
        stats = calculate_stats(snapshot, {}, config, start_time)
        deliver_report({}, stats, config.output_dir, is_degraded=True)
        return 1
    elif snapshot.failed:
        logger.warning("Partial snapshot - some result tables will be empty")

    # Phase 2: Transformation
    logger.info("\n🧮 PHASE 2: TRANSFORMATION")
    try:
        results = run_transformation(snapshot, config)
    except Exception as e:
        logger.error(f"Transformation failed: {type(e).__name__}: {str(e)}")
        stats = calculate_stats(snapshot, {}, config, start_time)
        deliver_report({}, stats, config.output_dir, is_degraded=True)
        return 1

    # Phase 3: Run manifest
    logger.info("\n💾 PHASE 3: RUN MANIFEST")
    try:
        if not write_run_manifest(results, config.output_dir):
            logger.error("Run manifest sanity check failed - aborting")
            return 1
    except OSError as e:
        logger.error(f"Run manifest failed: {type(e).__name__}: {str(e)}")
        return 1

    # Phase 4: Delivery
    logger.info("\n📊 PHASE 4: DELIVERY")
    stats = calculate_stats(snapshot, results, config, start_time)

    if not deliver_report(results, stats, config.output_dir):
        return 1

    # Success
    logger.info("\n" + "=" * 80)
    logger.info("✅ PIPELINE COMPLETED SUCCESSFULLY")
    logger.info(f"Total execution time: {stats['execution_time']}")
    logger.info("=" * 80)

    return 0


if __name__ == "__main__":
    exit_code = main()
    sys.exit(exit_code)
