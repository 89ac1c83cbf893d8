"""
Health check endpoint with store connectivity and active runs
"""

from fastapi import APIRouter, Depends
from analysis.registry import JobRegistry
from api.dependencies import get_registry, get_store
from core.config import settings
from persistence.base import AnalysisStore
from schemas.api import HealthResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    store: AnalysisStore = Depends(get_store),
    registry: JobRegistry = Depends(get_registry),
):
    """
    Health check endpoint.

    Returns:
    - Store connectivity status
    - Number of analysis runs in progress
    """
    store_connected = await store.ping()
    if not store_connected:
        logger.error("Health check: analysis store unreachable")

    return HealthResponse(
        store_backend=settings.STORE_BACKEND,
        store_connected=store_connected,
        active_jobs=len(registry.active_job_ids()),
    )
