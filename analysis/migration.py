"""
Migrate legacy analyses to the processed/orphaned collection schema
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from analysis.chunk_workers import parse_rate
from analysis.rating import compute_savings, select_best_rate, summarize
from analysis.registry import JobRegistry
from core.exceptions import AnalysisException, MigrationError
from ingestion.transformers.normalizer import ShipmentNormalizer
from models.base import ErrorType, OrphanStage
from persistence.base import AnalysisStore
from schemas.analysis import MigrationResult, OrphanedShipment, ProcessedShipment
import logging

logger = logging.getLogger(__name__)

CURRENT_COST_KEYS = ("currentCost", "current_rate", "published_rate")
NEW_COST_KEYS = ("recommendedCost", "recommended_cost", "negotiated_rate", "newRate")
SAVINGS_KEYS = ("savings", "savings_amount")


def _first_number(rec: Dict[str, Any], keys) -> Optional[float]:
    for key in keys:
        value = ShipmentNormalizer.parse_currency(rec.get(key))
        if value is not None:
            return value
    return None


class LegacyMigrator:
    """
    Rebuild processed/orphaned collections from ``recommendations`` (or
    ``original_data``) of jobs that predate them.

    Completeness uses the same rule as ingestion. A job whose collections
    both exist is left untouched, so migrating twice changes nothing.
    """

    def __init__(
        self,
        store: AnalysisStore,
        registry: Optional[JobRegistry] = None,
        normalizer: Optional[ShipmentNormalizer] = None,
        delay_between_jobs: float = 0.1,
    ):
        self.store = store
        self.registry = registry
        self.normalizer = normalizer or ShipmentNormalizer()
        self.delay_between_jobs = delay_between_jobs

    def convert_record(self, rec: Dict[str, Any], shipment_id: int) -> Tuple[Optional[ProcessedShipment], Optional[OrphanedShipment]]:
        source = rec.get("shipment") or rec.get("shipment_data") or rec
        row = dict(source) if isinstance(source, dict) else {}
        for key in CURRENT_COST_KEYS:
            if rec.get(key) not in (None, "") and key not in row:
                row[key] = rec[key]
        if rec.get("originalService") and not row.get("service"):
            row["service"] = rec["originalService"]

        shipment = self.normalizer.normalize(row, shipment_id)

        if rec.get("error") or rec.get("status") == "error":
            try:
                error_type = ErrorType(rec.get("errorType"))
            except ValueError:
                error_type = ErrorType.PROCESSING_ERROR
            return None, OrphanedShipment.from_shipment(
                shipment,
                error_type=error_type,
                error=str(rec.get("error") or "Processing failed"),
                stage=OrphanStage.LEGACY,
                missing_fields=shipment.missing_fields(),
            )

        missing = shipment.missing_fields()
        if missing:
            return None, OrphanedShipment.from_shipment(
                shipment,
                error_type=ErrorType.MISSING_DATA,
                error=f"Missing required fields: {', '.join(missing)}",
                stage=OrphanStage.LEGACY,
                missing_fields=missing,
            )

        rates = [r for r in (parse_rate(raw) for raw in rec.get("allRates") or [] if isinstance(raw, dict)) if r]
        best = select_best_rate(rates)

        new_rate = _first_number(rec, NEW_COST_KEYS)
        if new_rate is None and best is not None:
            new_rate = best.total_charges
        if new_rate is None:
            new_rate = 0.0

        savings = _first_number(rec, SAVINGS_KEYS)
        if savings is None:
            savings, savings_percent = compute_savings(shipment.current_rate, new_rate) if new_rate else (0.0, 0.0)
        else:
            savings_percent = (savings / shipment.current_rate * 100) if shipment.current_rate > 0 else 0.0

        service_name = rec.get("recommendedService") or (best.service_name if best else None)
        return ProcessedShipment(
            id=shipment.id,
            tracking_id=shipment.tracking_id,
            origin_zip=shipment.origin_zip,
            destination_zip=shipment.destination_zip,
            weight=shipment.weight,
            length=shipment.length,
            width=shipment.width,
            height=shipment.height,
            is_residential=shipment.is_residential,
            carrier=shipment.carrier or rec.get("carrier") or "UPS",
            original_service=shipment.original_service,
            intended_service=shipment.intended_service,
            new_service=service_name or shipment.original_service or "Unknown",
            current_rate=shipment.current_rate,
            new_rate=new_rate,
            savings=savings,
            savings_percent=savings_percent,
            account_id=(best.carrier_id or None) if best else None,
            account_name=(best.carrier_name or None) if best else None,
            rates=rates,
            raw_data=shipment.raw_data,
        ), None

    async def migrate(self, job_id: str) -> MigrationResult:
        """
        Migrate one job.

        Raises:
            MigrationError: The job has no legacy data to rebuild from
        """
        if self.registry is None:
            return await self._migrate(job_id)
        async with self.registry.claim(job_id, "migration"):
            return await self._migrate(job_id)

    async def _migrate(self, job_id: str) -> MigrationResult:
        job = await self.store.read(job_id)
        if job.processed_shipments is not None and job.orphaned_shipments is not None:
            logger.debug(f"Job {job_id} already migrated")
            return MigrationResult(
                job_id=job_id, migrated=False, skipped=True,
                processed_count=len(job.processed_shipments),
                orphaned_count=len(job.orphaned_shipments),
            )

        source_name = "recommendations" if job.recommendations else "original_data"
        records = job.recommendations or job.original_data or []
        if isinstance(records, dict):
            records = records.get("csvData") or []
        if not isinstance(records, list) or not records:
            raise MigrationError(
                f"No legacy data found for job {job_id}",
                context={"job_id": job_id}
            )

        processed: List[ProcessedShipment] = []
        orphaned: List[OrphanedShipment] = []
        for index, rec in enumerate(records, start=1):
            if not isinstance(rec, dict):
                rec = {}
            ok, orphan = self.convert_record(rec, index)
            if ok is not None:
                processed.append(ok)
            else:
                orphaned.append(orphan)

        metadata = dict(job.processing_metadata)
        metadata.update({
            "migrated_at": datetime.now(timezone.utc).isoformat(),
            "original_data_count": len(records),
            "processed_count": len(processed),
            "orphaned_count": len(orphaned),
            "migration_source": source_name,
        })

        total = job.total_shipments or len(records)
        fields: Dict[str, Any] = {
            "processed_shipments": processed,
            "orphaned_shipments": orphaned,
            "processing_metadata": metadata,
            "total_shipments": total,
        }
        if job.savings_analysis is None:
            summary = summarize(processed, len(orphaned), total)
            fields["savings_analysis"] = summary
            # Stored totals win; only fill one that was never written
            if not job.total_savings:
                fields["total_savings"] = summary.total_savings

        await self.store.update(job_id, fields)
        logger.info(
            f"Migrated job {job_id} from {source_name}: "
            f"{len(processed)} processed, {len(orphaned)} orphaned"
        )
        return MigrationResult(
            job_id=job_id, migrated=True,
            processed_count=len(processed), orphaned_count=len(orphaned),
        )

    async def migrate_all(self) -> Dict[str, int]:
        """Migrate every job that still needs it; never raises per job"""
        job_ids = await self.store.list_job_ids(needs_migration=True)
        counts = {"success": 0, "failed": 0, "skipped": 0}
        if not job_ids:
            logger.info("No analyses need migration")
            return counts

        logger.info(f"Migrating {len(job_ids)} legacy analyses")
        for position, job_id in enumerate(job_ids):
            try:
                result = await self.migrate(job_id)
                counts["skipped" if result.skipped else "success"] += 1
            except AnalysisException as e:
                counts["failed"] += 1
                logger.error(f"Migration of job {job_id} failed: {e}", extra={"error_context": e.to_dict()})

            if self.delay_between_jobs and position < len(job_ids) - 1:
                await asyncio.sleep(self.delay_between_jobs)

        logger.info(f"Migration complete: {counts}")
        return counts
