"""
Streaming chunk processor for datasets too large for one request cycle.

The job record is written before any chunk runs and is the durable anchor of
the stream: its ``processing_metadata.processed_chunks`` counter tells how
far a crashed stream got. Chunks run under a semaphore, each retried with
exponential backoff. A chunk that exhausts its retries fails the whole job,
because an unknown subset of its shipments was never attempted; chunks that
already succeeded stay persisted.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from analysis.chunk_workers import ChunkPayload, ChunkWorker
from analysis.integrity import validate_job_integrity
from analysis.progress import ProgressChannel, ProgressEvent, ProgressEventType
from analysis.rating import summarize
from analysis.registry import JobRegistry
from analysis.retry import RetryPolicy
from core.config import settings
from core.exceptions import AnalysisException, ChunkRetryExhaustedError
from models.base import JobStatus
from persistence.base import AnalysisStore
from schemas.analysis import AnalysisJob, OrphanedShipment, ServiceCorrection
import logging

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StreamingConfig:
    chunk_size: int = field(default_factory=lambda: settings.CHUNK_SIZE)
    max_concurrent_chunks: int = field(default_factory=lambda: settings.MAX_CONCURRENT_CHUNKS)
    retry_attempts: int = field(default_factory=lambda: settings.CHUNK_RETRY_ATTEMPTS)
    backoff_base: float = field(default_factory=lambda: settings.CHUNK_BACKOFF_BASE_SECONDS)

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        if self.max_concurrent_chunks < 1:
            raise ValueError("max_concurrent_chunks must be at least 1")


@dataclass
class StreamingProgress:
    processed_chunks: int
    total_chunks: int
    processed_items: int
    total_items: int
    estimated_time_remaining: float


@dataclass
class _StreamState:
    job_id: str
    total_chunks: int
    total_items: int
    processed_chunks: int = 0
    failed: Optional[BaseException] = None
    aborted: bool = False
    started: float = field(default_factory=time.monotonic)


class StreamingChunkProcessor:
    """
    Push pre-quoted recommendations through a chunk worker.

    Attributes:
        store: Persistence gateway holding the job record
        worker: Processes one chunk (in-process or remote)
        config: Chunk size, concurrency and retry settings
    """

    def __init__(
        self,
        store: AnalysisStore,
        worker: ChunkWorker,
        config: Optional[StreamingConfig] = None,
        registry: Optional[JobRegistry] = None,
        progress: Optional[ProgressChannel] = None,
    ):
        self.store = store
        self.worker = worker
        self.config = config or StreamingConfig()
        self.registry = registry or JobRegistry()
        self.progress = progress
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.retry_attempts,
            backoff_base=self.config.backoff_base,
            retry_on=(Exception,),
        )

    @staticmethod
    def number_orphans(
        recommendations: List[Dict[str, Any]],
        orphaned_shipments: Optional[List[OrphanedShipment]],
    ) -> List[OrphanedShipment]:
        """Chunk items own ids 1..len(recommendations); orphans are numbered after them"""
        offset = len(recommendations)
        return [
            orphan.model_copy(update={"id": offset + position})
            for position, orphan in enumerate(orphaned_shipments or [], start=1)
        ]

    def create_chunks(self, recommendations: List[Dict[str, Any]], analysis_id: str) -> List[ChunkPayload]:
        size = self.config.chunk_size
        total_chunks = -(-len(recommendations) // size)
        return [
            ChunkPayload(
                chunk_index=i,
                total_chunks=total_chunks,
                analysis_id=analysis_id,
                data=recommendations[i * size:(i + 1) * size],
                chunk_size=size,
            )
            for i in range(total_chunks)
        ]

    async def create_streaming_job(
        self,
        recommendations: List[Dict[str, Any]],
        orphaned_shipments: Optional[List[OrphanedShipment]] = None,
        file_name: Optional[str] = None,
        client_id: Optional[str] = None,
        carrier_account_ids: Optional[List[str]] = None,
        service_mappings: Optional[List[ServiceCorrection]] = None,
        job_id: Optional[str] = None,
    ) -> AnalysisJob:
        total_chunks = -(-len(recommendations) // self.config.chunk_size)
        job = AnalysisJob(
            id=job_id or str(uuid.uuid4()),
            file_name=file_name,
            client_id=client_id,
            status=JobStatus.PROCESSING,
            total_shipments=len(recommendations) + len(orphaned_shipments or []),
            processed_shipments=[],
            orphaned_shipments=[],
            original_data=[],
            carrier_account_ids=list(carrier_account_ids or []),
            service_mappings=list(service_mappings or []),
            processing_metadata={
                "processing_type": "streaming",
                "total_chunks": total_chunks,
                "processed_chunks": 0,
                "chunk_size": self.config.chunk_size,
                "start_time": _now_iso(),
            },
        )
        created = await self.store.create(job)
        logger.info(
            f"Created streaming job {created.id}: {len(recommendations)} items in {total_chunks} chunks"
        )
        return created

    async def stream_analysis(
        self,
        recommendations: List[Dict[str, Any]],
        orphaned_shipments: Optional[List[OrphanedShipment]] = None,
        **job_fields,
    ) -> AnalysisJob:
        """
        Create the job, process every chunk and finalize.

        Raises:
            ChunkRetryExhaustedError: A chunk failed every attempt; the job
                has already been marked failed
        """
        job = await self.create_streaming_job(recommendations, orphaned_shipments, **job_fields)
        state = _StreamState(job_id=job.id, total_chunks=job.processing_metadata["total_chunks"],
                             total_items=len(recommendations))
        run = self.registry.register(job.id, "streaming", abort=lambda: setattr(state, "aborted", True))
        try:
            return await self._run(recommendations, self.number_orphans(recommendations, orphaned_shipments), state)
        finally:
            self.registry.unregister(job.id, run)

    async def start_streaming(
        self,
        recommendations: List[Dict[str, Any]],
        orphaned_shipments: Optional[List[OrphanedShipment]] = None,
        **job_fields,
    ) -> str:
        """Create the job and stream it in a background task"""
        job = await self.create_streaming_job(recommendations, orphaned_shipments, **job_fields)
        state = _StreamState(job_id=job.id, total_chunks=job.processing_metadata["total_chunks"],
                             total_items=len(recommendations))
        self.registry.register(job.id, "streaming", abort=lambda: setattr(state, "aborted", True))

        async def runner():
            try:
                await self._run(recommendations, self.number_orphans(recommendations, orphaned_shipments), state)
            except AnalysisException as e:
                logger.error(f"Streaming job {job.id} failed: {e}", extra={"error_context": e.to_dict()})

        self.registry.attach_task(job.id, asyncio.create_task(runner(), name=f"streaming-{job.id}"))
        return job.id

    async def _run(
        self,
        recommendations: List[Dict[str, Any]],
        orphaned_shipments: List[OrphanedShipment],
        state: _StreamState,
    ) -> AnalysisJob:
        chunks = self.create_chunks(recommendations, state.job_id)
        semaphore = asyncio.Semaphore(self.config.max_concurrent_chunks)
        counter_lock = asyncio.Lock()

        async def run_chunk(chunk: ChunkPayload):
            async with semaphore:
                if state.failed is not None or state.aborted:
                    return
                try:
                    await self.retry_policy.run(
                        lambda: self.worker.process(chunk),
                        description=f"Chunk {chunk.chunk_index + 1}/{chunk.total_chunks} of job {state.job_id}",
                    )
                except Exception as e:
                    error = ChunkRetryExhaustedError(
                        f"Chunk {chunk.chunk_index} failed after {self.config.retry_attempts} attempts: {e}",
                        context={"analysis_id": state.job_id, "chunk_index": chunk.chunk_index},
                        original_exception=e
                    )
                    if state.failed is None:
                        state.failed = error
                    return

                async with counter_lock:
                    state.processed_chunks += 1
                    try:
                        await self._record_chunk(state)
                    except AnalysisException as e:
                        if state.failed is None:
                            state.failed = e

        await asyncio.gather(*(run_chunk(c) for c in chunks))

        if state.failed is not None:
            await self._fail(state, state.failed)
            raise state.failed
        if state.aborted:
            return await self._fail(state, None, aborted=True)
        return await self.finalize(state, orphaned_shipments)

    async def _record_chunk(self, state: _StreamState):
        job = await self.store.read(state.job_id)
        metadata = dict(job.processing_metadata)
        metadata["processed_chunks"] = state.processed_chunks
        metadata["last_chunk_at"] = _now_iso()
        await self.store.update(state.job_id, {"processing_metadata": metadata})

        progress = self.compute_progress(state)
        logger.info(
            f"Job {state.job_id}: {progress.processed_chunks}/{progress.total_chunks} chunks "
            f"(~{progress.processed_items} items, ETA {progress.estimated_time_remaining:.1f}s)"
        )
        if self.progress is not None:
            await self.progress.publish(ProgressEvent(
                job_id=state.job_id,
                event=ProgressEventType.CHUNK_COMPLETED,
                processed=progress.processed_items,
                total=progress.total_items,
                eta_seconds=progress.estimated_time_remaining,
            ))

    def compute_progress(self, state: _StreamState) -> StreamingProgress:
        """processed_items is an estimate: the last chunk may be smaller"""
        elapsed = time.monotonic() - state.started
        average = elapsed / state.processed_chunks if state.processed_chunks else 0.0
        return StreamingProgress(
            processed_chunks=state.processed_chunks,
            total_chunks=state.total_chunks,
            processed_items=state.processed_chunks * self.config.chunk_size,
            total_items=state.total_items,
            estimated_time_remaining=(state.total_chunks - state.processed_chunks) * average,
        )

    async def finalize(self, state: _StreamState, orphaned_shipments: List[OrphanedShipment]) -> AnalysisJob:
        """Append ingestion orphans, recompute totals and mark the job completed"""
        job = await self.store.read(state.job_id)
        processed = job.processed_shipments or []
        orphaned = sorted(list(job.orphaned_shipments or []) + list(orphaned_shipments), key=lambda o: o.id)
        summary = summarize(processed, len(orphaned), job.total_shipments)

        metadata = dict(job.processing_metadata)
        metadata.update({
            "processing_type": "streaming",
            "processed_chunks": state.processed_chunks,
            "completed_at": _now_iso(),
            "total_processing_time": round(time.monotonic() - state.started, 3),
        })
        job = await self.store.update(state.job_id, {
            "status": JobStatus.COMPLETED,
            "orphaned_shipments": orphaned,
            "total_savings": summary.total_savings,
            "savings_analysis": summary,
            "processing_metadata": metadata,
        })

        report = validate_job_integrity(job)
        if not report.passed:
            logger.warning(f"Streaming job {job.id} completed with integrity issues: {report.data_consistency_issues}")
            metadata = dict(job.processing_metadata)
            metadata["integrity_issues"] = report.data_consistency_issues
            job = await self.store.update(job.id, {"processing_metadata": metadata})

        logger.info(
            f"Streaming job {job.id} completed: {len(job.processed_shipments)} processed, "
            f"{len(job.orphaned_shipments)} orphaned"
        )
        if self.progress is not None:
            await self.progress.publish(ProgressEvent(
                job_id=job.id, event=ProgressEventType.COMPLETED,
                processed=state.total_items, total=state.total_items,
                completed_shipments=len(job.processed_shipments),
                orphaned_shipments=len(job.orphaned_shipments),
                total_savings=job.total_savings,
            ))
        return job

    async def _fail(self, state: _StreamState, error: Optional[BaseException], aborted: bool = False) -> AnalysisJob:
        message = "Analysis aborted" if aborted else str(error)
        if error is not None:
            context = error.to_dict() if isinstance(error, AnalysisException) else {"error": message}
            logger.error(f"Streaming job {state.job_id} failed: {message}", extra={"error_context": context})
        else:
            logger.info(f"Streaming job {state.job_id} aborted after {state.processed_chunks} chunks")

        job = await self.store.read(state.job_id)
        metadata = dict(job.processing_metadata)
        metadata.update({"error": message, "failed_at": _now_iso(), "processed_chunks": state.processed_chunks})
        if aborted:
            metadata["aborted"] = True
        if isinstance(error, AnalysisException) and "chunk_index" in error.context:
            metadata["failed_chunk"] = error.context["chunk_index"]

        job = await self.store.update(state.job_id, {"status": JobStatus.FAILED, "processing_metadata": metadata})
        if self.progress is not None:
            await self.progress.publish(ProgressEvent(
                job_id=state.job_id,
                event=ProgressEventType.ABORTED if aborted else ProgressEventType.FAILED,
                message=message,
            ))
        return job
