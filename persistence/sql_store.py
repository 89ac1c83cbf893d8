"""
SQLAlchemy-backed analysis store
"""

from typing import Any, Dict, List
from datetime import datetime
from sqlalchemy import select, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import JobNotFoundError, PersistenceError
from models.base import JobStatus
from models.shipping_analysis import ShippingAnalysis
from persistence.base import AnalysisStore, build_job, prepare_update
from schemas.analysis import AnalysisJob
import logging

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = ("created_at", "updated_at")


def _to_columns(encoded: Dict[str, Any]) -> Dict[str, Any]:
    """Convert JSON-encoded job fields back into column values"""
    values = dict(encoded)
    for field in _DATETIME_FIELDS:
        if isinstance(values.get(field), str):
            values[field] = datetime.fromisoformat(values[field])
    if "status" in values:
        values["status"] = JobStatus(values["status"])
    return values


def _to_document(row: ShippingAnalysis) -> Dict[str, Any]:
    document = {
        column.name: getattr(row, column.name)
        for column in ShippingAnalysis.__table__.columns
    }
    document["status"] = row.status.value if row.status else JobStatus.PROCESSING.value
    document["processing_metadata"] = document.get("processing_metadata") or {}
    document["carrier_account_ids"] = document.get("carrier_account_ids") or []
    document["service_mappings"] = document.get("service_mappings") or []
    return document


class SqlAnalysisStore(AnalysisStore):
    """
    Persist jobs in the ``shipping_analyses`` table.

    Each call runs in its own session and transaction. Driver failures are
    rolled back and surfaced as PersistenceError so the orchestrator can halt
    the run instead of claiming progress that was never committed.
    """

    def __init__(self, session_maker: async_sessionmaker, engine=None):
        self.session_maker = session_maker
        self.engine = engine

    async def create(self, job: AnalysisJob) -> AnalysisJob:
        async with self.session_maker() as session:
            try:
                row = ShippingAnalysis(**_to_columns(job.model_dump(mode="json")))
                session.add(row)
                await session.commit()
                logger.debug(f"Created job {job.id}")
                return build_job(_to_document(row), job.id)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to create job {job.id}: {str(e)}")
                raise PersistenceError(
                    f"Failed to create job {job.id}",
                    context={"job_id": job.id, "operation": "create"},
                    original_exception=e
                )

    async def update(self, job_id: str, fields: Dict[str, Any]) -> AnalysisJob:
        async with self.session_maker() as session:
            try:
                row = await session.get(ShippingAnalysis, job_id)
                if row is None:
                    raise JobNotFoundError(
                        f"Job {job_id} not found",
                        context={"job_id": job_id, "operation": "update"}
                    )

                current = row.status.value if row.status else JobStatus.PROCESSING.value
                encoded = prepare_update(job_id, current, fields)
                for name, value in _to_columns(encoded).items():
                    setattr(row, name, value)

                await session.commit()
                return build_job(_to_document(row), job_id)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to update job {job_id}: {str(e)}")
                raise PersistenceError(
                    f"Failed to update job {job_id}",
                    context={"job_id": job_id, "operation": "update", "fields": sorted(fields)},
                    original_exception=e
                )

    async def read(self, job_id: str) -> AnalysisJob:
        async with self.session_maker() as session:
            try:
                row = await session.get(ShippingAnalysis, job_id)
            except SQLAlchemyError as e:
                raise PersistenceError(
                    f"Failed to read job {job_id}",
                    context={"job_id": job_id, "operation": "read"},
                    original_exception=e
                )
            if row is None:
                raise JobNotFoundError(
                    f"Job {job_id} not found",
                    context={"job_id": job_id, "operation": "read"}
                )
            return build_job(_to_document(row), job_id)

    async def list_job_ids(self, needs_migration: bool = False) -> List[str]:
        stmt = select(ShippingAnalysis.id).where(ShippingAnalysis.is_deleted.is_(False))
        if needs_migration:
            stmt = stmt.where(or_(
                ShippingAnalysis.processed_shipments.is_(None),
                ShippingAnalysis.orphaned_shipments.is_(None),
            ))
        stmt = stmt.order_by(ShippingAnalysis.created_at)

        async with self.session_maker() as session:
            try:
                result = await session.execute(stmt)
            except SQLAlchemyError as e:
                raise PersistenceError(
                    "Failed to list jobs",
                    context={"operation": "list", "needs_migration": needs_migration},
                    original_exception=e
                )
            return list(result.scalars().all())

    async def ping(self) -> bool:
        async with self.session_maker() as session:
            try:
                await session.execute(text("SELECT 1"))
                return True
            except (SQLAlchemyError, OSError) as e:
                logger.error(f"Database connection failed: {str(e)}")
                return False

    async def close(self):
        if self.engine is not None:
            await self.engine.dispose()
