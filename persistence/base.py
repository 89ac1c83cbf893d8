"""
Persistence gateway for analysis jobs
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel

from core.exceptions import InvalidJobTransitionError, PersistenceError
from models.base import JobStatus
from schemas.analysis import AnalysisJob

JOB_FIELDS = frozenset(AnalysisJob.model_fields) - {"id", "created_at"}


def encode_value(value: Any) -> Any:
    """Turn pydantic models (and lists/dicts of them) into JSON-able values"""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=False)
    if isinstance(value, list):
        return [encode_value(v) for v in value]
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, JobStatus):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def prepare_update(job_id: str, current_status: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and encode a partial update.

    Unknown fields are rejected. A terminal job may not change status; every
    other field stays writable so re-analysis can merge into finished jobs.
    """
    unknown = set(fields) - JOB_FIELDS
    if unknown:
        raise PersistenceError(
            f"Unknown job fields: {', '.join(sorted(unknown))}",
            context={"job_id": job_id, "operation": "update"}
        )

    encoded = {k: encode_value(v) for k, v in fields.items()}

    if "status" in encoded:
        current = JobStatus(current_status)
        new = JobStatus(encoded["status"])
        if current.is_terminal and new != current:
            raise InvalidJobTransitionError(
                f"Job {job_id} is {current.value}; cannot move to {new.value}",
                context={"job_id": job_id, "operation": "update"}
            )

    encoded["updated_at"] = datetime.now(timezone.utc).isoformat()
    return encoded


class AnalysisStore(ABC):
    """
    Document-style store keyed by job id.

    Updates merge at the field level: fields not named are left untouched,
    while list fields (processed/orphaned shipments) are replaced wholesale,
    so callers always submit the complete merged array.
    """

    @abstractmethod
    async def create(self, job: AnalysisJob) -> AnalysisJob:
        """Persist a new job; the id must not exist yet"""
        pass

    @abstractmethod
    async def update(self, job_id: str, fields: Dict[str, Any]) -> AnalysisJob:
        """Merge ``fields`` into the stored job and return the result"""
        pass

    @abstractmethod
    async def read(self, job_id: str) -> AnalysisJob:
        """
        Raises:
            JobNotFoundError: No job exists for the id
        """
        pass

    @abstractmethod
    async def list_job_ids(self, needs_migration: bool = False) -> List[str]:
        """Ids of non-deleted jobs, optionally only legacy ones"""
        pass

    async def ping(self) -> bool:
        """True when the backing storage is reachable"""
        return True

    async def close(self):
        pass


def build_job(document: Dict[str, Any], job_id: Optional[str] = None) -> AnalysisJob:
    try:
        return AnalysisJob.model_validate(document)
    except ValueError as e:
        raise PersistenceError(
            "Stored job document is invalid",
            context={"job_id": job_id or document.get("id"), "operation": "read"},
            original_exception=e
        )
