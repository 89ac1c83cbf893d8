"""
In-memory analysis store
"""

import asyncio
import copy
from typing import Any, Dict, List

from core.exceptions import JobNotFoundError, PersistenceError
from persistence.base import AnalysisStore, build_job, prepare_update
from schemas.analysis import AnalysisJob
import logging

logger = logging.getLogger(__name__)


class InMemoryAnalysisStore(AnalysisStore):
    """
    Keeps job documents as JSON-able dicts, deep-copied on every read and
    write so callers never share mutable state with the store.
    """

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: AnalysisJob) -> AnalysisJob:
        async with self._lock:
            if job.id in self._documents:
                raise PersistenceError(
                    f"Job {job.id} already exists",
                    context={"job_id": job.id, "operation": "create"}
                )
            self._documents[job.id] = job.model_dump(mode="json")
            logger.debug(f"Created job {job.id}")
            return build_job(copy.deepcopy(self._documents[job.id]), job.id)

    async def update(self, job_id: str, fields: Dict[str, Any]) -> AnalysisJob:
        async with self._lock:
            document = self._documents.get(job_id)
            if document is None:
                raise JobNotFoundError(
                    f"Job {job_id} not found",
                    context={"job_id": job_id, "operation": "update"}
                )
            encoded = prepare_update(job_id, document.get("status", "processing"), fields)
            document.update(copy.deepcopy(encoded))
            return build_job(copy.deepcopy(document), job_id)

    async def read(self, job_id: str) -> AnalysisJob:
        document = self._documents.get(job_id)
        if document is None:
            raise JobNotFoundError(
                f"Job {job_id} not found",
                context={"job_id": job_id, "operation": "read"}
            )
        return build_job(copy.deepcopy(document), job_id)

    async def list_job_ids(self, needs_migration: bool = False) -> List[str]:
        ids = []
        for job_id, document in self._documents.items():
            if document.get("is_deleted"):
                continue
            if needs_migration and not (
                document.get("processed_shipments") is None
                or document.get("orphaned_shipments") is None
            ):
                continue
            ids.append(job_id)
        return ids

    def put_document(self, document: Dict[str, Any]):
        """Store a raw document as-is (used to seed legacy records)"""
        self._documents[document["id"]] = copy.deepcopy(document)
