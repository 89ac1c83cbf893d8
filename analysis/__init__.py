"""
Rate-savings analysis engine.

Modules:
    orchestrator: Quote shipments batch by batch and persist processed/orphaned results
    batch_processor: Bounded-concurrency batch waves with abort and progress
    rating: Best-rate selection, savings and summary arithmetic
    streaming: Chunked processing of pre-quoted recommendations
    chunk_workers: In-process and HTTP chunk workers
    reanalysis: Service corrections, selective re-analysis and orphan fixes
    migration: Rebuild collections for legacy jobs
    integrity: Consistency checks and missing-shipment recovery
    registry: Process-wide record of active runs
    progress: Progress events and observers
    retry: Exponential backoff policy
    scheduler: APScheduler sweep for legacy migration

Usage:
    from analysis.orchestrator import AnalysisOrchestrator
    from analysis.registry import JobRegistry

    orchestrator = AnalysisOrchestrator(store, provider, JobRegistry())
    job = await orchestrator.run_analysis(shipments, ["acct-1"])
"""

__all__ = [
    "batch_processor",
    "chunk_workers",
    "integrity",
    "migration",
    "orchestrator",
    "progress",
    "rating",
    "reanalysis",
    "registry",
    "retry",
    "scheduler",
    "streaming",
]
