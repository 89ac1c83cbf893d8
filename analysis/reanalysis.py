"""
Selective re-analysis of persisted jobs.

Re-runs the orchestrator's per-shipment step on a subset of a job and merges
the outcome back by shipment id. Unaffected shipments are never touched, the
merge is written in one update, and a job with an active run is rejected.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from analysis.batch_processor import BatchProcessor
from analysis.orchestrator import AnalysisOrchestrator
from analysis.rating import summarize
from core.exceptions import ReanalysisError, ValidationError
from ingestion.transformers.service_mapping import apply_corrections
from models.base import AnalysisStatus, OrphanStage
from schemas.analysis import (
    AnalysisJob,
    OrphanedShipment,
    ProcessedShipment,
    ReanalysisOutcome,
    ServiceCorrection,
)
from schemas.shipment import Shipment
import logging

logger = logging.getLogger(__name__)

CORRECTABLE_FIELDS = {
    "tracking_id", "origin_zip", "destination_zip", "weight",
    "length", "width", "height", "carrier", "intended_service",
    "is_residential", "current_rate",
}

FIELD_ALIASES = {
    "trackingId": "tracking_id",
    "originZip": "origin_zip",
    "destinationZip": "destination_zip",
    "destZip": "destination_zip",
    "service": "intended_service",
    "intendedService": "intended_service",
    "isResidential": "is_residential",
    "currentRate": "current_rate",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SelectiveReanalyzer:
    """
    Service-correction re-analysis and orphan fix-and-promote.

    Per-shipment failures are returned in ``ReanalysisOutcome.failed``; only
    persistence failures raise.
    """

    def __init__(self, orchestrator: AnalysisOrchestrator):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.registry = orchestrator.registry

    async def apply_service_corrections(
        self,
        job_id: str,
        corrections: List[ServiceCorrection],
        selected_ids: Optional[Iterable[int]] = None,
    ) -> ReanalysisOutcome:
        """
        Re-quote shipments whose original service matches a correction.

        The correction replaces the intended service only; the original
        service stays as recorded. With ``selected_ids`` only those shipments
        are considered.
        """
        if not corrections:
            raise ValidationError("At least one service correction is required", context={"job_id": job_id})

        async with self.registry.claim(job_id, "reanalysis"):
            job = await self._read_centralized(job_id)
            selected = set(selected_ids) if selected_ids is not None else None

            subset: List[Shipment] = []
            affected: Dict[str, int] = {}
            for entry in self._all_entries(job):
                if selected is not None and entry.id not in selected:
                    continue
                shipment = entry.to_shipment()
                corrected = apply_corrections(shipment.original_service, corrections)
                if corrected is None:
                    continue
                subset.append(shipment.model_copy(update={"intended_service": corrected}))
                key = shipment.original_service.strip().lower()
                affected[key] = affected.get(key, 0) + 1

            logger.info(f"Job {job_id}: re-analyzing {len(subset)} shipments after service corrections")
            if not subset:
                return ReanalysisOutcome()

            outcome = await self._reanalyze(job, subset, corrections)

            mappings = {m.from_service.strip().lower(): m for m in job.service_mappings}
            for correction in corrections:
                key = correction.from_service.strip().lower()
                mappings[key] = correction.model_copy(update={"affected_count": affected.get(key, 0)})

            await self._merge(job, outcome, extra_fields={"service_mappings": list(mappings.values())})
            return outcome

    async def reanalyze_shipments(
        self,
        job_id: str,
        shipment_ids: Iterable[int],
        service_mappings: Optional[List[ServiceCorrection]] = None,
    ) -> ReanalysisOutcome:
        """Re-quote the given shipments as they are currently recorded"""
        async with self.registry.claim(job_id, "reanalysis"):
            job = await self._read_centralized(job_id)
            wanted = set(shipment_ids)
            subset = [e.to_shipment() for e in self._all_entries(job) if e.id in wanted]

            unknown = wanted - {s.id for s in subset}
            if unknown:
                raise ReanalysisError(
                    f"Shipments not found in job: {sorted(unknown)}",
                    context={"job_id": job_id}
                )
            if not subset:
                return ReanalysisOutcome()

            outcome = await self._reanalyze(job, subset, service_mappings or job.service_mappings)
            await self._merge(job, outcome)
            return outcome

    async def fix_orphaned_shipment(
        self,
        job_id: str,
        shipment_id: int,
        corrected_fields: Dict[str, Any],
    ) -> ReanalysisOutcome:
        """
        Apply field corrections to one orphan and try to promote it.

        On success the shipment moves from orphaned to processed and
        ``total_shipments`` becomes the sum of both collections. Otherwise the
        orphan is updated in place with the new error.
        """
        async with self.registry.claim(job_id, "reanalysis"):
            job = await self._read_centralized(job_id)
            orphan = next((o for o in job.orphaned_shipments if o.id == shipment_id), None)
            if orphan is None:
                raise ReanalysisError(
                    f"Shipment {shipment_id} is not orphaned in job {job_id}",
                    context={"job_id": job_id, "shipment_id": shipment_id}
                )

            shipment = self._apply_fields(orphan.to_shipment(), corrected_fields)
            result = await self.orchestrator.analyze_shipment(
                shipment, job.carrier_account_ids, job.service_mappings
            )

            outcome = ReanalysisOutcome()
            if result.status == AnalysisStatus.COMPLETED:
                outcome.success.append(
                    ProcessedShipment.from_result(result).model_copy(update={"corrected": True, "fixed_at": _utcnow()})
                )
            else:
                outcome.failed.append(
                    OrphanedShipment.from_result(result, stage=OrphanStage.REANALYSIS).model_copy(
                        update={"attempt_count": orphan.attempt_count + 1}
                    )
                )

            await self._merge(job, outcome, recompute_total=True)
            logger.info(
                f"Job {job_id}: orphan {shipment_id} "
                f"{'promoted to processed' if outcome.success else 'still orphaned'}"
            )
            return outcome

    # ------------------------------------------------------------------

    async def _read_centralized(self, job_id: str) -> AnalysisJob:
        job = await self.store.read(job_id)
        if job.needs_migration:
            raise ReanalysisError(
                f"Job {job_id} uses the legacy format; migrate it first",
                context={"job_id": job_id}
            )
        return job

    @staticmethod
    def _all_entries(job: AnalysisJob):
        return list(job.processed_shipments) + list(job.orphaned_shipments)

    @staticmethod
    def _apply_fields(shipment: Shipment, corrected_fields: Dict[str, Any]) -> Shipment:
        updates = {}
        for key, value in corrected_fields.items():
            name = FIELD_ALIASES.get(key, key)
            if name not in CORRECTABLE_FIELDS:
                raise ValidationError(
                    f"Field '{key}' cannot be corrected",
                    context={"shipment_id": shipment.id, "field": key}
                )
            updates[name] = value
        try:
            return Shipment.model_validate({**shipment.model_dump(), **updates})
        except ValueError as e:
            raise ValidationError(
                "Corrected shipment is invalid",
                context={"shipment_id": shipment.id, "fields": sorted(updates)},
                original_exception=e
            )

    async def _reanalyze(
        self,
        job: AnalysisJob,
        subset: List[Shipment],
        service_mappings: Optional[List[ServiceCorrection]],
    ) -> ReanalysisOutcome:
        processor = BatchProcessor(self.orchestrator.batch_config)
        results = await processor.process_batches(
            subset,
            lambda batch: self.orchestrator.analyze_batch(batch, job.carrier_account_ids, service_mappings),
        )

        previous_attempts = {o.id: o.attempt_count for o in job.orphaned_shipments}
        now = _utcnow()
        outcome = ReanalysisOutcome()
        for result in results:
            if result.status == AnalysisStatus.COMPLETED:
                outcome.success.append(
                    ProcessedShipment.from_result(result).model_copy(update={"corrected": True, "reanalyzed_at": now})
                )
            else:
                orphan = OrphanedShipment.from_result(result, stage=OrphanStage.REANALYSIS)
                outcome.failed.append(orphan.model_copy(
                    update={"attempt_count": previous_attempts.get(orphan.id, 0) + 1}
                ))
        return outcome

    async def _merge(
        self,
        job: AnalysisJob,
        outcome: ReanalysisOutcome,
        recompute_total: bool = False,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        """
        Write the merged collections in one update.

        Successes replace processed entries by id (or are appended) and leave
        the orphan list. Failures update an existing orphan in place; a
        previously processed shipment that fails keeps its processed entry.
        """
        success_ids = {p.id for p in outcome.success}
        failed_by_id = {o.id: o for o in outcome.failed}

        processed_by_id = {p.id: p for p in job.processed_shipments}
        for entry in outcome.success:
            processed_by_id[entry.id] = entry
        processed = sorted(processed_by_id.values(), key=lambda p: p.id)

        orphaned = [
            failed_by_id.get(o.id, o)
            for o in job.orphaned_shipments
            if o.id not in success_ids
        ]

        total = len(processed) + len(orphaned) if recompute_total else job.total_shipments
        summary = summarize(processed, len(orphaned), total)
        metadata = dict(job.processing_metadata)
        metadata["last_reanalysis"] = _utcnow().isoformat()
        metadata["reanalyzed_shipments"] = metadata.get("reanalyzed_shipments", 0) + len(outcome.success) + len(outcome.failed)

        fields: Dict[str, Any] = {
            "processed_shipments": processed,
            "orphaned_shipments": orphaned,
            "total_savings": summary.total_savings,
            "savings_analysis": summary,
            "processing_metadata": metadata,
        }
        if recompute_total:
            fields["total_shipments"] = total
        if extra_fields:
            fields.update(extra_fields)

        await self.store.update(job.id, fields)
        logger.info(
            f"Job {job.id}: merged re-analysis ({len(outcome.success)} succeeded, {len(outcome.failed)} failed)"
        )
