"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
import logging

from analysis.chunk_workers import HttpChunkWorker, InProcessChunkWorker
from analysis.migration import LegacyMigrator
from analysis.orchestrator import AnalysisOrchestrator
from analysis.progress import ProgressChannel
from analysis.reanalysis import SelectiveReanalyzer
from analysis.registry import JobRegistry
from analysis.scheduler import MaintenanceScheduler
from analysis.streaming import StreamingChunkProcessor
from api.middleware import RequestContextMiddleware, register_exception_handlers
from api.routes import analyses, health
from core.config import settings
from core.logging import setup_logging
from persistence import build_store
from quotes.http_provider import HttpQuoteProvider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the analysis components once per process and tear them down on exit"""
    setup_logging()
    logger.info("Starting Rate Analysis API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Store backend: {settings.STORE_BACKEND}")

    store = build_store()
    registry = JobRegistry()
    progress = ProgressChannel()

    quote_provider = None
    if settings.QUOTE_API_URL:
        quote_provider = HttpQuoteProvider(timeout=settings.QUOTE_TIMEOUT_SECONDS or 30.0)
    else:
        logger.warning("QUOTE_API_URL is not set; analysis endpoints are disabled")

    orchestrator = None
    reanalyzer = None
    if quote_provider is not None:
        orchestrator = AnalysisOrchestrator(store, quote_provider, registry, progress=progress)
        reanalyzer = SelectiveReanalyzer(orchestrator)

    chunk_worker = HttpChunkWorker() if settings.CHUNK_WORKER_URL else InProcessChunkWorker(store)
    streaming_processor = StreamingChunkProcessor(store, chunk_worker, registry=registry, progress=progress)

    migrator = LegacyMigrator(store, registry)
    scheduler = MaintenanceScheduler(migrator)

    app.state.store = store
    app.state.registry = registry
    app.state.progress = progress
    app.state.orchestrator = orchestrator
    app.state.reanalyzer = reanalyzer
    app.state.streaming_processor = streaming_processor
    app.state.migrator = migrator

    if settings.MIGRATION_SWEEP_MINUTES > 0:
        scheduler.start()

    yield

    logger.info("Shutting down Rate Analysis API")
    scheduler.stop()
    await registry.shutdown()
    if quote_provider is not None:
        await quote_provider.close()
    await chunk_worker.close()
    await store.close()


# Create FastAPI app
app = FastAPI(
    title="Rate Analysis Backend API",
    description="Batch shipment rate-savings analysis",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)
register_exception_handlers(app)

# Include routers
app.include_router(health.router)
app.include_router(analyses.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Rate Analysis Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "analyses": "/analyses"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT)
