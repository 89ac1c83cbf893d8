"""
Analysis orchestrator: quote every shipment, pick the best rate, separate
priced shipments from orphans and checkpoint progress after every batch.

Run lifecycle:
    1. Create the job (status=processing, empty collections)
    2. Quote shipments through the batch processor, one checkpoint per batch
    3. Finalize exactly once: completed, or failed on abort / fatal error

Per-shipment failures never fail the job; they become orphans classified by
the closed ErrorType taxonomy. Checkpoint failures halt the run.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from analysis.batch_processor import BatchConfig, BatchProcessor, BatchProgress
from analysis.integrity import validate_job_integrity
from analysis.progress import ProgressChannel, ProgressEvent, ProgressEventType
from analysis.rating import classify_exception, compute_savings, select_best_rate, summarize
from analysis.registry import JobRegistry
from core.config import settings
from core.exceptions import (
    AnalysisException,
    CheckpointError,
    MissingDataError,
    NoRatesError,
    QuoteNetworkError,
    QuoteProviderError,
)
from ingestion.transformers.normalizer import ensure_complete
from ingestion.transformers.service_mapping import resolve_intended_service
from models.base import AnalysisStatus, ErrorType, JobStatus, OrphanStage
from persistence.base import AnalysisStore
from quotes.base import QuoteProvider
from schemas.analysis import (
    AnalysisJob,
    AnalysisResult,
    OrphanedShipment,
    ProcessedShipment,
    ServiceCorrection,
)
from schemas.shipment import QuoteResponse, Rate, Shipment
import logging

logger = logging.getLogger(__name__)

MarkupFn = Callable[[Shipment, Rate], float]

_DEFAULT_TIMEOUT = object()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunState:
    """In-memory state of one primary run; owned by the task running it"""

    job_id: str
    total_batches: int
    slots: List[Optional[List[AnalysisResult]]] = field(default_factory=list)
    aborted: bool = False
    started: float = field(default_factory=time.monotonic)

    def ordered_results(self) -> List[AnalysisResult]:
        return [r for slot in self.slots if slot is not None for r in slot]


class AnalysisOrchestrator:
    """
    Drive shipment-by-shipment quoting for analysis jobs.

    Attributes:
        store: Persistence gateway for job state
        quote_provider: Adapter returning candidate rates per shipment
        registry: Process-wide record of active runs
        batch_config: Batch size, wave width and inter-wave delay
        quote_timeout: Seconds per quote call; None disables the timeout
        progress: Optional channel receiving progress events
        markup_fn: Optional pure function (shipment, best_rate) -> marked-up price
    """

    def __init__(
        self,
        store: AnalysisStore,
        quote_provider: QuoteProvider,
        registry: Optional[JobRegistry] = None,
        batch_config: Optional[BatchConfig] = None,
        quote_timeout: Any = _DEFAULT_TIMEOUT,
        progress: Optional[ProgressChannel] = None,
        markup_fn: Optional[MarkupFn] = None,
    ):
        self.store = store
        self.quote_provider = quote_provider
        self.registry = registry or JobRegistry()
        self.batch_config = batch_config or BatchConfig()
        self.quote_timeout = settings.QUOTE_TIMEOUT_SECONDS if quote_timeout is _DEFAULT_TIMEOUT else quote_timeout
        self.progress = progress
        self.markup_fn = markup_fn

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start_analysis(
        self,
        shipments: Sequence[Shipment],
        carrier_account_ids: List[str],
        service_mappings: Optional[List[ServiceCorrection]] = None,
        **job_fields,
    ) -> str:
        """
        Create a job and run it in a background task.

        Returns:
            The new job id; poll ``get_job`` for progress
        """
        job = await self.create_job(shipments, carrier_account_ids, service_mappings, **job_fields)
        processor = BatchProcessor(self.batch_config)
        state = self._new_state(job.id, len(shipments))

        self.registry.register(job.id, "analysis", abort=lambda: self._abort_run(state, processor))
        task = asyncio.create_task(
            self._run_in_background(job.id, shipments, carrier_account_ids, service_mappings, processor, state),
            name=f"analysis-{job.id}",
        )
        self.registry.attach_task(job.id, task)
        return job.id

    async def run_analysis(
        self,
        shipments: Sequence[Shipment],
        carrier_account_ids: List[str],
        service_mappings: Optional[List[ServiceCorrection]] = None,
        **job_fields,
    ) -> AnalysisJob:
        """Create a job and run it to completion in the current task"""
        job = await self.create_job(shipments, carrier_account_ids, service_mappings, **job_fields)
        processor = BatchProcessor(self.batch_config)
        state = self._new_state(job.id, len(shipments))

        run = self.registry.register(job.id, "analysis", abort=lambda: self._abort_run(state, processor))
        try:
            return await self._run(job.id, shipments, carrier_account_ids, service_mappings, processor, state)
        finally:
            self.registry.unregister(job.id, run)

    async def get_job(self, job_id: str) -> AnalysisJob:
        return await self.store.read(job_id)

    def abort(self, job_id: str) -> bool:
        """Stop dispatching new batches for an active run"""
        return self.registry.abort(job_id)

    async def create_job(
        self,
        shipments: Sequence[Shipment],
        carrier_account_ids: List[str],
        service_mappings: Optional[List[ServiceCorrection]] = None,
        file_name: Optional[str] = None,
        report_name: Optional[str] = None,
        client_id: Optional[str] = None,
        original_data: Any = None,
        job_id: Optional[str] = None,
    ) -> AnalysisJob:
        total_batches = -(-len(shipments) // self.batch_config.batch_size)
        job = AnalysisJob(
            id=job_id or str(uuid.uuid4()),
            file_name=file_name,
            report_name=report_name,
            client_id=client_id,
            status=JobStatus.PROCESSING,
            total_shipments=len(shipments),
            processed_shipments=[],
            orphaned_shipments=[],
            original_data=original_data if original_data is not None else [
                s.model_dump(mode="json", exclude={"raw_data"}) for s in shipments
            ],
            carrier_account_ids=list(carrier_account_ids),
            service_mappings=list(service_mappings or []),
            processing_metadata={
                "processing_type": "batch",
                "batch_size": self.batch_config.batch_size,
                "total_batches": total_batches,
                "completed_batches": 0,
                "started_at": _now_iso(),
            },
        )
        created = await self.store.create(job)
        logger.info(f"Created analysis job {created.id} for {len(shipments)} shipments")
        return created

    async def analyze_shipment(
        self,
        shipment: Shipment,
        carrier_account_ids: List[str],
        service_mappings: Optional[List[ServiceCorrection]] = None,
    ) -> AnalysisResult:
        """
        Quote one shipment. Never raises for per-shipment problems: the
        returned result is either completed or error.
        """
        result = AnalysisResult(shipment=shipment)

        try:
            ensure_complete(shipment)
        except MissingDataError as e:
            result.fail(ErrorType.MISSING_DATA, e.message, missing_fields=e.missing_fields)
            logger.debug(f"Shipment {shipment.id} orphaned: missing {e.missing_fields}")
            return result

        result.begin()
        try:
            intended = resolve_intended_service(shipment, service_mappings)
            quoted = shipment.model_copy(update={"intended_service": intended})
            result.shipment = quoted

            response = await self._quote(quoted, carrier_account_ids)
            if response.success is not True:
                raise QuoteProviderError(
                    response.error or "Quote provider did not report success",
                    context={"shipment_id": shipment.id}
                )
            if not response.rates:
                raise NoRatesError(
                    "Quote provider returned no rates",
                    context={"shipment_id": shipment.id, "carrier_account_ids": carrier_account_ids}
                )

            best = select_best_rate(response.rates)
            savings, savings_percent = compute_savings(shipment.current_rate, best.total_charges)
            if self.markup_fn is not None:
                result.marked_up_rate = self.markup_fn(quoted, best)
            result.complete(best, response.rates, savings, savings_percent)

        except Exception as e:
            error_type = classify_exception(e)
            message = e.message if isinstance(e, AnalysisException) else (str(e) or type(e).__name__)
            logger.warning(f"Shipment {shipment.id} orphaned ({error_type.value}): {message}")
            result.fail(error_type, message)

        return result

    async def analyze_batch(
        self,
        shipments: List[Shipment],
        carrier_account_ids: List[str],
        service_mappings: Optional[List[ServiceCorrection]] = None,
    ) -> List[AnalysisResult]:
        return list(await asyncio.gather(*(
            self.analyze_shipment(s, carrier_account_ids, service_mappings) for s in shipments
        )))

    # ------------------------------------------------------------------
    # Run internals
    # ------------------------------------------------------------------

    def _new_state(self, job_id: str, total_items: int) -> RunState:
        total_batches = -(-total_items // self.batch_config.batch_size)
        return RunState(job_id=job_id, total_batches=total_batches, slots=[None] * total_batches)

    @staticmethod
    def _abort_run(state: RunState, processor: BatchProcessor):
        state.aborted = True
        processor.abort()

    async def _quote(self, shipment: Shipment, carrier_account_ids: List[str]) -> QuoteResponse:
        call = self.quote_provider.quote(shipment, carrier_account_ids)
        if self.quote_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.quote_timeout)
        except asyncio.TimeoutError as e:
            raise QuoteNetworkError(
                f"Quote timed out after {self.quote_timeout} seconds",
                context={"shipment_id": shipment.id},
                original_exception=e
            )

    async def _run_in_background(self, job_id, shipments, carrier_account_ids, service_mappings, processor, state):
        try:
            await self._run(job_id, shipments, carrier_account_ids, service_mappings, processor, state)
        except AnalysisException as e:
            logger.error(f"Analysis job {job_id} failed: {e}", extra={"error_context": e.to_dict()})
        except Exception as e:
            logger.exception(f"Analysis job {job_id} failed unexpectedly: {e}")

    async def _run(
        self,
        job_id: str,
        shipments: Sequence[Shipment],
        carrier_account_ids: List[str],
        service_mappings: Optional[List[ServiceCorrection]],
        processor: BatchProcessor,
        state: RunState,
    ) -> AnalysisJob:
        checkpoint_lock = asyncio.Lock()
        await self._publish(job_id, ProgressEventType.STARTED, 0, len(shipments))

        async def process_fn(batch: List[Shipment]) -> List[AnalysisResult]:
            return await self.analyze_batch(batch, carrier_account_ids, service_mappings)

        async def on_batch_complete(results: List[AnalysisResult], batch_index: int):
            state.slots[batch_index] = results
            async with checkpoint_lock:
                await self._checkpoint(state, len(shipments))

        async def on_progress(progress: BatchProgress):
            processed, orphaned = self._collections(state)
            await self._publish(
                job_id, ProgressEventType.BATCH_COMPLETED, progress.processed, progress.total,
                completed=len(processed), orphaned=len(orphaned),
                savings=sum(p.savings for p in processed),
            )

        try:
            await processor.process_batches(
                list(shipments), process_fn,
                on_batch_complete=on_batch_complete,
                on_progress=on_progress,
            )
        except asyncio.CancelledError:
            await self._fail(state, AnalysisException("Analysis cancelled", context={"job_id": job_id}))
            raise
        except Exception as e:
            await self._fail(state, e)
            raise

        # An abort during the last wave skips nothing
        if state.aborted and any(slot is None for slot in state.slots):
            return await self._finalize_aborted(state, len(shipments))
        return await self._finalize_completed(state, len(shipments))

    def _collections(self, state: RunState):
        processed: List[ProcessedShipment] = []
        orphaned: List[OrphanedShipment] = []
        for result in state.ordered_results():
            if result.status == AnalysisStatus.COMPLETED:
                processed.append(ProcessedShipment.from_result(result))
            else:
                stage = OrphanStage.INGESTION if result.error_type == ErrorType.MISSING_DATA else OrphanStage.ANALYSIS
                orphaned.append(OrphanedShipment.from_result(result, stage=stage))
        return processed, orphaned

    def _result_fields(self, state: RunState, total: int) -> Dict[str, Any]:
        processed, orphaned = self._collections(state)
        summary = summarize(processed, len(orphaned), total)
        return {
            "processed_shipments": processed,
            "orphaned_shipments": orphaned,
            "total_savings": summary.total_savings,
            "savings_analysis": summary,
        }

    async def _checkpoint(self, state: RunState, total: int):
        fields = self._result_fields(state, total)
        completed_batches = sum(1 for slot in state.slots if slot is not None)
        try:
            job = await self.store.read(state.job_id)
            metadata = dict(job.processing_metadata)
            metadata.update({
                "completed_batches": completed_batches,
                "current_index": sum(len(slot) for slot in state.slots if slot is not None),
                "last_checkpoint_at": _now_iso(),
            })
            fields["processing_metadata"] = metadata
            await self.store.update(state.job_id, fields)
        except Exception as e:
            raise CheckpointError(
                f"Failed to checkpoint job {state.job_id}",
                context={"job_id": state.job_id, "completed_batches": completed_batches},
                original_exception=e
            )
        logger.info(
            f"Job {state.job_id}: checkpointed {completed_batches}/{state.total_batches} batches "
            f"({len(fields['processed_shipments'])} processed, {len(fields['orphaned_shipments'])} orphaned)"
        )

    async def _finalize_completed(self, state: RunState, total: int) -> AnalysisJob:
        fields = self._result_fields(state, total)
        job = await self.store.read(state.job_id)
        metadata = dict(job.processing_metadata)
        metadata.update({
            "completed_at": _now_iso(),
            "total_processing_time": round(time.monotonic() - state.started, 3),
            "completed_batches": state.total_batches,
        })
        fields["processing_metadata"] = metadata
        fields["status"] = JobStatus.COMPLETED
        job = await self.store.update(state.job_id, fields)

        report = validate_job_integrity(job)
        if not report.passed:
            logger.warning(f"Job {job.id} completed with integrity issues: {report.data_consistency_issues}")
            metadata = dict(job.processing_metadata)
            metadata["integrity_issues"] = report.data_consistency_issues
            job = await self.store.update(job.id, {"processing_metadata": metadata})

        logger.info(
            f"Job {job.id} completed: {len(job.processed_shipments)} processed, "
            f"{len(job.orphaned_shipments)} orphaned, total savings {job.total_savings:.2f}"
        )
        await self._publish(
            job.id, ProgressEventType.COMPLETED, total, total,
            completed=len(job.processed_shipments), orphaned=len(job.orphaned_shipments),
            savings=job.total_savings,
        )
        return job

    async def _finalize_aborted(self, state: RunState, total: int) -> AnalysisJob:
        fields = self._result_fields(state, total)
        job = await self.store.read(state.job_id)
        metadata = dict(job.processing_metadata)
        metadata.update({
            "aborted": True,
            "error": "Analysis aborted",
            "aborted_at": _now_iso(),
            "total_processing_time": round(time.monotonic() - state.started, 3),
        })
        fields["processing_metadata"] = metadata
        fields["status"] = JobStatus.FAILED
        job = await self.store.update(state.job_id, fields)

        logger.info(
            f"Job {job.id} aborted after {len(job.processed_shipments) + len(job.orphaned_shipments)}"
            f"/{total} shipments"
        )
        await self._publish(
            job.id, ProgressEventType.ABORTED,
            len(job.processed_shipments) + len(job.orphaned_shipments), total,
            completed=len(job.processed_shipments), orphaned=len(job.orphaned_shipments),
            savings=job.total_savings, message="Analysis aborted",
        )
        return job

    async def _fail(self, state: RunState, error: Exception):
        """Mark the job failed; committed checkpoints stay as they are"""
        message = str(error)
        context = error.to_dict() if isinstance(error, AnalysisException) else {"error": message}
        logger.error(f"Job {state.job_id} failed: {message}", extra={"error_context": context})
        try:
            job = await self.store.read(state.job_id)
            metadata = dict(job.processing_metadata)
            metadata.update({"error": message, "failed_at": _now_iso()})
            await self.store.update(state.job_id, {"status": JobStatus.FAILED, "processing_metadata": metadata})
        except Exception as e:
            logger.error(f"Could not mark job {state.job_id} as failed: {e}")
        await self._publish(state.job_id, ProgressEventType.FAILED, 0, 0, message=message)

    async def _publish(
        self,
        job_id: str,
        event: str,
        processed: int,
        total: int,
        completed: int = 0,
        orphaned: int = 0,
        savings: float = 0.0,
        message: Optional[str] = None,
    ):
        if self.progress is None:
            return
        await self.progress.publish(ProgressEvent(
            job_id=job_id,
            event=event,
            processed=processed,
            total=total,
            completed_shipments=completed,
            orphaned_shipments=orphaned,
            total_savings=savings,
            message=message,
        ))
