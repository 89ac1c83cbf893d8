"""
FastAPI dependencies resolving the components built at startup
"""

from fastapi import HTTPException, Request

from analysis.migration import LegacyMigrator
from analysis.orchestrator import AnalysisOrchestrator
from analysis.reanalysis import SelectiveReanalyzer
from analysis.registry import JobRegistry
from analysis.streaming import StreamingChunkProcessor
from persistence.base import AnalysisStore


def get_store(request: Request) -> AnalysisStore:
    return request.app.state.store


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Quote provider is not configured")
    return orchestrator


def get_reanalyzer(request: Request) -> SelectiveReanalyzer:
    reanalyzer = getattr(request.app.state, "reanalyzer", None)
    if reanalyzer is None:
        raise HTTPException(status_code=503, detail="Quote provider is not configured")
    return reanalyzer


def get_streaming_processor(request: Request) -> StreamingChunkProcessor:
    return request.app.state.streaming_processor


def get_migrator(request: Request) -> LegacyMigrator:
    return request.app.state.migrator
