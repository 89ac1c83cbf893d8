"""
Analysis job endpoints: start, poll, abort and maintenance
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import List
import time
import uuid
import logging

from analysis.integrity import recover_missing_shipments, validate_job_integrity
from analysis.migration import LegacyMigrator
from analysis.orchestrator import AnalysisOrchestrator
from analysis.reanalysis import SelectiveReanalyzer
from analysis.registry import JobRegistry
from analysis.streaming import StreamingChunkProcessor
from api.dependencies import (
    get_migrator,
    get_orchestrator,
    get_reanalyzer,
    get_registry,
    get_store,
    get_streaming_processor,
)
from core.exceptions import ChunkRetryExhaustedError, ValidationError
from ingestion.extractors.csv_extractor import CSVExtractor
from ingestion.transformers.normalizer import ShipmentNormalizer
from persistence.base import AnalysisStore
from schemas.analysis import AnalysisJob, IntegrityReport, MigrationResult
from schemas.api import (
    APIResponse,
    AnalysisCreateRequest,
    FixOrphanRequest,
    JobStatusResponse,
    MigrationSweepResponse,
    ReanalysisResponse,
    ReanalyzeRequest,
    ServiceCorrectionRequest,
    StreamingCreateRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/analyses", tags=["Analyses"])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


def _latency_ms(start_time: float) -> int:
    return int((time.perf_counter() - start_time) * 1000)


@router.post("", response_model=APIResponse[JobStatusResponse], status_code=202)
async def create_analysis(
    request: Request,
    body: AnalysisCreateRequest,
    wait: bool = Query(False, description="Run to completion before responding"),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    """
    Start an analysis.

    Rows are normalized before the job is created; incomplete rows become
    missing_data orphans rather than request errors. By default the run
    continues in the background and the response carries the new job id.
    """
    start_time = time.perf_counter()
    request_id = _request_id(request)

    rows = body.shipments if body.shipments is not None else CSVExtractor().parse_text(body.csv_text)
    if not rows:
        raise ValidationError("No shipment rows provided")

    shipments = ShipmentNormalizer(column_mapping=body.column_mapping).normalize_all(rows)
    logger.info(f"[{request_id}] POST /analyses - {len(shipments)} shipments, wait={wait}")

    job_fields = dict(
        file_name=body.file_name,
        report_name=body.report_name,
        client_id=body.client_id,
        original_data={"csvData": rows, "fieldMappings": body.column_mapping},
    )
    if wait:
        job = await orchestrator.run_analysis(
            shipments, body.carrier_account_ids, body.service_mappings, **job_fields
        )
    else:
        job_id = await orchestrator.start_analysis(
            shipments, body.carrier_account_ids, body.service_mappings, **job_fields
        )
        job = await orchestrator.get_job(job_id)

    return APIResponse(
        request_id=request_id,
        api_latency_ms=_latency_ms(start_time),
        data=JobStatusResponse.from_job(job),
    )


@router.post("/stream", response_model=APIResponse[JobStatusResponse], status_code=202)
async def create_streaming_analysis(
    request: Request,
    body: StreamingCreateRequest,
    wait: bool = Query(False, description="Process every chunk before responding"),
    processor: StreamingChunkProcessor = Depends(get_streaming_processor),
    store: AnalysisStore = Depends(get_store),
):
    """Stream pre-quoted recommendations through the chunk worker"""
    start_time = time.perf_counter()
    request_id = _request_id(request)
    logger.info(f"[{request_id}] POST /analyses/stream - {len(body.recommendations)} recommendations")

    job_fields = dict(
        file_name=body.file_name,
        client_id=body.client_id,
        carrier_account_ids=body.carrier_account_ids,
    )
    if wait:
        try:
            job = await processor.stream_analysis(body.recommendations, body.orphaned_shipments, **job_fields)
        except ChunkRetryExhaustedError as e:
            job = await store.read(e.context["analysis_id"])
    else:
        job_id = await processor.start_streaming(body.recommendations, body.orphaned_shipments, **job_fields)
        job = await store.read(job_id)

    return APIResponse(
        request_id=request_id,
        api_latency_ms=_latency_ms(start_time),
        data=JobStatusResponse.from_job(job),
    )


@router.get("", response_model=List[str])
async def list_analyses(
    needs_migration: bool = Query(False, description="Only legacy jobs"),
    store: AnalysisStore = Depends(get_store),
):
    return await store.list_job_ids(needs_migration=needs_migration)


@router.get("/{job_id}", response_model=APIResponse[JobStatusResponse])
async def get_analysis(request: Request, job_id: str, store: AnalysisStore = Depends(get_store)):
    start_time = time.perf_counter()
    job = await store.read(job_id)
    return APIResponse(
        request_id=_request_id(request),
        api_latency_ms=_latency_ms(start_time),
        data=JobStatusResponse.from_job(job),
    )


@router.get("/{job_id}/details", response_model=AnalysisJob)
async def get_analysis_details(job_id: str, store: AnalysisStore = Depends(get_store)):
    """Full job including processed and orphaned shipments"""
    return await store.read(job_id)


@router.post("/{job_id}/abort")
async def abort_analysis(job_id: str, registry: JobRegistry = Depends(get_registry),
                         store: AnalysisStore = Depends(get_store)):
    await store.read(job_id)
    return {"job_id": job_id, "abort_requested": registry.abort(job_id)}


@router.post("/{job_id}/service-corrections", response_model=ReanalysisResponse)
async def apply_service_corrections(
    job_id: str,
    body: ServiceCorrectionRequest,
    reanalyzer: SelectiveReanalyzer = Depends(get_reanalyzer),
):
    outcome = await reanalyzer.apply_service_corrections(job_id, body.corrections, body.shipment_ids)
    return ReanalysisResponse(success=outcome.success, failed=outcome.failed)


@router.post("/{job_id}/reanalyze", response_model=ReanalysisResponse)
async def reanalyze_shipments(
    job_id: str,
    body: ReanalyzeRequest,
    reanalyzer: SelectiveReanalyzer = Depends(get_reanalyzer),
):
    outcome = await reanalyzer.reanalyze_shipments(job_id, body.shipment_ids, body.service_mappings)
    return ReanalysisResponse(success=outcome.success, failed=outcome.failed)


@router.post("/{job_id}/orphans/{shipment_id}/fix", response_model=ReanalysisResponse)
async def fix_orphaned_shipment(
    job_id: str,
    shipment_id: int,
    body: FixOrphanRequest,
    reanalyzer: SelectiveReanalyzer = Depends(get_reanalyzer),
):
    outcome = await reanalyzer.fix_orphaned_shipment(job_id, shipment_id, body.corrected_fields)
    return ReanalysisResponse(success=outcome.success, failed=outcome.failed)


@router.post("/migrate", response_model=MigrationSweepResponse)
async def migrate_all_analyses(migrator: LegacyMigrator = Depends(get_migrator)):
    return MigrationSweepResponse(**await migrator.migrate_all())


@router.post("/{job_id}/migrate", response_model=MigrationResult)
async def migrate_analysis(job_id: str, migrator: LegacyMigrator = Depends(get_migrator)):
    return await migrator.migrate(job_id)


@router.get("/{job_id}/integrity", response_model=IntegrityReport)
async def check_integrity(job_id: str, store: AnalysisStore = Depends(get_store)):
    return validate_job_integrity(await store.read(job_id))


@router.post("/{job_id}/recover")
async def recover_shipments(job_id: str, store: AnalysisStore = Depends(get_store),
                            registry: JobRegistry = Depends(get_registry)):
    recovered = await recover_missing_shipments(store, job_id, registry)
    return {"job_id": job_id, "recovered": recovered}
