"""
Persistence gateway for analysis jobs.

Modules:
    base: Abstract AnalysisStore with field-level merge and status guard
    memory_store: Dict-backed store used by default and in tests
    sql_store: SQLAlchemy async store over the shipping_analyses table

Usage:
    from persistence import build_store
    store = build_store()
"""

from core.config import settings
from persistence.base import AnalysisStore
from persistence.memory_store import InMemoryAnalysisStore
from persistence.sql_store import SqlAnalysisStore


def build_store(backend: str = None) -> AnalysisStore:
    """Create the store selected by STORE_BACKEND"""
    backend = (backend or settings.STORE_BACKEND).lower()
    if backend == "memory":
        return InMemoryAnalysisStore()
    if backend == "sql":
        from core.database import create_engine, create_session_maker

        engine = create_engine()
        return SqlAnalysisStore(create_session_maker(engine), engine=engine)
    raise ValueError(f"Unknown store backend: {backend}")


__all__ = [
    "AnalysisStore",
    "InMemoryAnalysisStore",
    "SqlAnalysisStore",
    "build_store",
]
