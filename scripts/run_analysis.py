"""
Script to run a rate-savings analysis over a shipment CSV
"""

import argparse
import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from analysis.orchestrator import AnalysisOrchestrator
from analysis.registry import JobRegistry
from core.config import settings
from core.exceptions import AnalysisException
from core.logging import setup_logging
from ingestion.extractors.csv_extractor import CSVExtractor
from ingestion.transformers.normalizer import ShipmentNormalizer
from persistence import build_store
from quotes.http_provider import HttpQuoteProvider
from schemas.analysis import ServiceCorrection

logger = logging.getLogger(__name__)


def _pairs(values, option):
    pairs = {}
    for value in values or []:
        key, sep, target = value.partition("=")
        if not sep or not key.strip() or not target.strip():
            raise SystemExit(f"{option} expects KEY=VALUE, got '{value}'")
        pairs[key.strip()] = target.strip()
    return pairs


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run a shipment rate analysis from a CSV file")
    parser.add_argument("csv_path", help="Shipment CSV file")
    parser.add_argument("--account", action="append", required=True, dest="accounts",
                        help="Carrier account id to quote against (repeatable)")
    parser.add_argument("--service-map", action="append", default=[],
                        help="Service correction FROM=TO (repeatable)")
    parser.add_argument("--column", action="append", default=[],
                        help="Column mapping canonical_field=csv_column (repeatable)")
    parser.add_argument("--store", choices=["memory", "sql"], default=settings.STORE_BACKEND)
    parser.add_argument("--report-name", default=None)
    return parser.parse_args(argv)


async def run_analysis(args) -> int:
    """Run one analysis and print its summary; returns a process exit code"""
    column_mapping = _pairs(args.column, "--column")
    corrections = [
        ServiceCorrection(from_service=src, to_service=dst)
        for src, dst in _pairs(args.service_map, "--service-map").items()
    ]

    store = build_store(args.store)
    provider = HttpQuoteProvider(timeout=settings.QUOTE_TIMEOUT_SECONDS or 30.0)
    orchestrator = AnalysisOrchestrator(store, provider, JobRegistry())

    try:
        rows = CSVExtractor(args.csv_path).fetch_rows()
        shipments = ShipmentNormalizer(column_mapping=column_mapping).normalize_all(rows)
        job = await orchestrator.run_analysis(
            shipments,
            args.accounts,
            corrections,
            file_name=os.path.basename(args.csv_path),
            report_name=args.report_name,
            original_data={"csvData": rows, "fieldMappings": column_mapping},
        )
    except AnalysisException as e:
        logger.error(f"Analysis failed: {e}", extra={"error_context": e.to_dict()})
        return 1
    finally:
        await provider.close()
        await store.close()

    summary = job.savings_analysis.model_dump() if job.savings_analysis else {}
    logger.info(
        f"Analysis {job.id} {job.status.value}: "
        f"{len(job.processed_shipments)} processed, {len(job.orphaned_shipments)} orphaned, "
        f"total savings {job.total_savings:.2f}"
    )
    print(json.dumps({"job_id": job.id, "status": job.status.value, "summary": summary}, indent=2))
    return 0


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_analysis(parse_args())))
