"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Dict, Any, Generic, TypeVar
from datetime import datetime, timezone

from models.base import JobStatus
from schemas.analysis import (
    AnalysisJob,
    AnalysisSummary,
    OrphanedShipment,
    ProcessedShipment,
    ServiceCorrection,
)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class APIResponse(BaseModel, Generic[T]):
    request_id: str
    api_latency_ms: int
    data: T

# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy or unhealthy")
    timestamp: datetime = Field(default_factory=_utcnow)
    store_backend: str
    store_connected: bool
    active_jobs: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        self.status = "healthy" if self.store_connected else "unhealthy"
        return self

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status": "healthy",
            "timestamp": "2024-01-15T10:30:00Z",
            "store_backend": "sql",
            "store_connected": True,
            "active_jobs": 2
        }
    })

# ============================================================================
# Analysis Request Schemas
# ============================================================================

class AnalysisCreateRequest(BaseModel):
    """
    Start an analysis from uploaded rows or pasted CSV text.

    Exactly one of ``shipments`` and ``csv_text`` must be given.
    """
    shipments: Optional[List[Dict[str, Any]]] = Field(None, description="Raw shipment rows")
    csv_text: Optional[str] = Field(None, description="CSV content with a header row")
    carrier_account_ids: List[str] = Field(..., min_length=1)
    service_mappings: List[ServiceCorrection] = Field(default_factory=list)
    column_mapping: Dict[str, str] = Field(default_factory=dict, description="Canonical field -> source column")
    file_name: Optional[str] = None
    report_name: Optional[str] = None
    client_id: Optional[str] = None

    @model_validator(mode="after")
    def require_one_source(self):
        if (self.shipments is None) == (self.csv_text is None):
            raise ValueError("Provide exactly one of 'shipments' or 'csv_text'")
        return self


class StreamingCreateRequest(BaseModel):
    """Start a streaming job over pre-quoted recommendations"""
    recommendations: List[Dict[str, Any]] = Field(..., min_length=1)
    orphaned_shipments: List[OrphanedShipment] = Field(default_factory=list)
    carrier_account_ids: List[str] = Field(default_factory=list)
    file_name: Optional[str] = None
    client_id: Optional[str] = None


class ServiceCorrectionRequest(BaseModel):
    corrections: List[ServiceCorrection] = Field(..., min_length=1)
    shipment_ids: Optional[List[int]] = Field(None, description="Limit re-analysis to these shipments")


class ReanalyzeRequest(BaseModel):
    shipment_ids: List[int] = Field(..., min_length=1)
    service_mappings: Optional[List[ServiceCorrection]] = None


class FixOrphanRequest(BaseModel):
    corrected_fields: Dict[str, Any] = Field(..., min_length=1)

# ============================================================================
# Analysis Response Schemas
# ============================================================================

class JobCreatedResponse(BaseModel):
    job_id: str
    status: JobStatus
    total_shipments: int


class JobStatusResponse(BaseModel):
    """Compact job view for polling"""
    id: str
    status: JobStatus
    total_shipments: int
    processed_count: int
    orphaned_count: int
    total_savings: float
    is_partial_success: bool
    needs_migration: bool
    savings_analysis: Optional[AnalysisSummary] = None
    processing_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: AnalysisJob) -> "JobStatusResponse":
        return cls(
            id=job.id,
            status=job.status,
            total_shipments=job.total_shipments,
            processed_count=len(job.processed_shipments or []),
            orphaned_count=len(job.orphaned_shipments or []),
            total_savings=job.total_savings,
            is_partial_success=job.is_partial_success,
            needs_migration=job.needs_migration,
            savings_analysis=job.savings_analysis,
            processing_metadata=job.processing_metadata,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class ReanalysisResponse(BaseModel):
    success: List[ProcessedShipment] = Field(default_factory=list)
    failed: List[OrphanedShipment] = Field(default_factory=list)


class MigrationSweepResponse(BaseModel):
    success: int = 0
    failed: int = 0
    skipped: int = 0

# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "JobNotFoundError",
            "detail": "Analysis job 3f2c... not found",
            "timestamp": "2024-01-15T10:30:00Z"
        }
    })
