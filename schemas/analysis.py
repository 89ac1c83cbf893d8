"""
Pydantic schemas for per-shipment results and persisted analysis jobs
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone

from core.exceptions import InvalidStateTransitionError
from models.base import AnalysisStatus, ErrorType, JobStatus, OrphanStage
from schemas.shipment import Rate, Shipment


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisResult(BaseModel):
    """
    In-memory result for one shipment within one run.

    State machine: pending -> processing -> completed | error. Terminal states
    are final; a re-analysis builds a new result instead of reviving this one.
    """

    shipment: Shipment
    status: AnalysisStatus = AnalysisStatus.PENDING

    best_rate: Optional[Rate] = None
    rates: List[Rate] = Field(default_factory=list)
    savings: Optional[float] = None
    savings_percent: Optional[float] = None
    marked_up_rate: Optional[float] = None

    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    missing_fields: List[str] = Field(default_factory=list)

    def _require(self, *allowed: AnalysisStatus):
        if self.status not in allowed:
            raise InvalidStateTransitionError(
                f"Illegal transition from {self.status.value}",
                context={"shipment_id": self.shipment.id},
            )

    def begin(self):
        self._require(AnalysisStatus.PENDING)
        self.status = AnalysisStatus.PROCESSING

    def complete(self, best_rate: Rate, rates: List[Rate], savings: float, savings_percent: float):
        self._require(AnalysisStatus.PROCESSING)
        self.best_rate = best_rate
        self.rates = list(rates)
        self.savings = savings
        self.savings_percent = savings_percent
        self.status = AnalysisStatus.COMPLETED

    def fail(self, error_type: ErrorType, error: str, missing_fields: Optional[List[str]] = None):
        self._require(AnalysisStatus.PENDING, AnalysisStatus.PROCESSING)
        self.error_type = error_type
        self.error = error
        self.missing_fields = list(missing_fields or [])
        self.status = AnalysisStatus.ERROR

    @property
    def is_terminal(self) -> bool:
        return self.status in (AnalysisStatus.COMPLETED, AnalysisStatus.ERROR)


class ProcessedShipment(BaseModel):
    """A successfully priced shipment as persisted on the job"""

    id: int
    tracking_id: str
    origin_zip: str
    destination_zip: str
    weight: float
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    is_residential: bool = False

    carrier: Optional[str] = None
    original_service: Optional[str] = None
    intended_service: Optional[str] = None
    new_service: Optional[str] = None

    current_rate: float = 0.0
    new_rate: float = 0.0
    savings: float = 0.0
    savings_percent: float = 0.0
    marked_up_rate: Optional[float] = None

    account_id: Optional[str] = None
    account_name: Optional[str] = None
    rates: List[Rate] = Field(default_factory=list)

    corrected: bool = False
    reanalyzed_at: Optional[datetime] = None
    fixed_at: Optional[datetime] = None
    raw_data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: AnalysisResult) -> "ProcessedShipment":
        shipment = result.shipment
        best = result.best_rate
        return cls(
            id=shipment.id,
            tracking_id=shipment.tracking_id,
            origin_zip=shipment.origin_zip,
            destination_zip=shipment.destination_zip,
            weight=shipment.weight,
            length=shipment.length,
            width=shipment.width,
            height=shipment.height,
            is_residential=shipment.is_residential,
            carrier=shipment.carrier,
            original_service=shipment.original_service,
            intended_service=shipment.intended_service,
            new_service=best.service_name or best.service_code,
            current_rate=shipment.current_rate,
            new_rate=best.total_charges,
            savings=result.savings,
            savings_percent=result.savings_percent,
            marked_up_rate=result.marked_up_rate,
            account_id=best.carrier_id or None,
            account_name=best.carrier_name or None,
            rates=result.rates,
            raw_data=shipment.raw_data,
        )

    def to_shipment(self) -> Shipment:
        return Shipment(
            id=self.id,
            tracking_id=self.tracking_id,
            origin_zip=self.origin_zip,
            destination_zip=self.destination_zip,
            weight=self.weight,
            length=self.length,
            width=self.width,
            height=self.height,
            carrier=self.carrier,
            original_service=self.original_service,
            intended_service=self.intended_service,
            is_residential=self.is_residential,
            current_rate=max(self.current_rate, 0.0),
            raw_data=self.raw_data,
        )


class OrphanedShipment(BaseModel):
    """A shipment that could not be priced, with diagnostic metadata"""

    id: int
    tracking_id: str
    origin_zip: Optional[str] = None
    destination_zip: Optional[str] = None
    weight: Optional[float] = None
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    is_residential: bool = False

    carrier: Optional[str] = None
    service: Optional[str] = None
    intended_service: Optional[str] = None
    current_rate: float = 0.0

    error: str
    error_type: ErrorType
    missing_fields: List[str] = Field(default_factory=list)
    stage: OrphanStage = OrphanStage.ANALYSIS
    attempt_count: int = 1
    raw_data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_shipment(
        cls,
        shipment: Shipment,
        error_type: ErrorType,
        error: str,
        stage: OrphanStage = OrphanStage.ANALYSIS,
        missing_fields: Optional[List[str]] = None,
        attempt_count: int = 1,
    ) -> "OrphanedShipment":
        return cls(
            id=shipment.id,
            tracking_id=shipment.tracking_id,
            origin_zip=shipment.origin_zip,
            destination_zip=shipment.destination_zip,
            weight=shipment.weight,
            length=shipment.length,
            width=shipment.width,
            height=shipment.height,
            is_residential=shipment.is_residential,
            carrier=shipment.carrier,
            service=shipment.original_service,
            intended_service=shipment.intended_service,
            current_rate=shipment.current_rate,
            error=error,
            error_type=error_type,
            missing_fields=list(missing_fields or []),
            stage=stage,
            attempt_count=attempt_count,
            raw_data=shipment.raw_data,
        )

    @classmethod
    def from_result(cls, result: AnalysisResult, stage: OrphanStage = OrphanStage.ANALYSIS) -> "OrphanedShipment":
        return cls.from_shipment(
            result.shipment,
            error_type=result.error_type or ErrorType.PROCESSING_ERROR,
            error=result.error or "Processing failed",
            stage=stage,
            missing_fields=result.missing_fields,
        )

    def to_shipment(self) -> Shipment:
        return Shipment(
            id=self.id,
            tracking_id=self.tracking_id,
            origin_zip=self.origin_zip,
            destination_zip=self.destination_zip,
            weight=self.weight,
            length=self.length,
            width=self.width,
            height=self.height,
            carrier=self.carrier,
            original_service=self.service,
            intended_service=self.intended_service,
            is_residential=self.is_residential,
            current_rate=max(self.current_rate, 0.0),
            raw_data=self.raw_data,
        )


class ServiceCorrection(BaseModel):
    """User-supplied substitution of a carrier service label"""

    model_config = ConfigDict(populate_by_name=True)

    from_service: str = Field(..., alias="from", min_length=1)
    to_service: str = Field(..., alias="to", min_length=1)
    affected_count: int = Field(default=0, ge=0)


class AnalysisSummary(BaseModel):
    """Running cost/savings totals over completed shipments"""

    total_shipments: int = 0
    completed_shipments: int = 0
    error_shipments: int = 0
    total_current_cost: float = 0.0
    total_savings: float = 0.0
    savings_percentage: float = 0.0
    # Display-only: floored at zero, never stored back into total_savings
    potential_savings: float = 0.0
    average_savings_percent: float = 0.0


class AnalysisJob(BaseModel):
    """
    Persisted aggregate for one end-to-end analysis run.

    ``processed_shipments`` / ``orphaned_shipments`` are None only on legacy
    records that predate the centralized schema.
    """

    id: str
    file_name: Optional[str] = None
    report_name: Optional[str] = None
    client_id: Optional[str] = None
    status: JobStatus = JobStatus.PROCESSING

    total_shipments: int = Field(default=0, ge=0)
    total_savings: float = 0.0

    processed_shipments: Optional[List[ProcessedShipment]] = None
    orphaned_shipments: Optional[List[OrphanedShipment]] = None

    recommendations: Optional[List[Dict[str, Any]]] = None
    original_data: Optional[Any] = None

    savings_analysis: Optional[AnalysisSummary] = None
    processing_metadata: Dict[str, Any] = Field(default_factory=dict)

    carrier_account_ids: List[str] = Field(default_factory=list)
    service_mappings: List[ServiceCorrection] = Field(default_factory=list)

    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def needs_migration(self) -> bool:
        return self.processed_shipments is None or self.orphaned_shipments is None

    @property
    def accounted_shipments(self) -> int:
        return len(self.processed_shipments or []) + len(self.orphaned_shipments or [])

    @property
    def is_partial_success(self) -> bool:
        return self.status == JobStatus.COMPLETED and bool(self.orphaned_shipments)


class ReanalysisOutcome(BaseModel):
    """Per-shipment outcome of a bulk re-analysis"""

    success: List[ProcessedShipment] = Field(default_factory=list)
    failed: List[OrphanedShipment] = Field(default_factory=list)


class MigrationResult(BaseModel):
    """Outcome of migrating one legacy job"""

    job_id: str
    migrated: bool
    skipped: bool = False
    processed_count: int = 0
    orphaned_count: int = 0
    error: Optional[str] = None


class IntegrityReport(BaseModel):
    """Data-integrity findings for one persisted job"""

    analysis_id: str
    total_shipments: int = 0
    processed_shipments: int = 0
    orphaned_shipments: int = 0
    has_valid_centralized_data: bool = False
    missing_shipments: int = 0
    surplus_shipments: int = 0
    savings_calculation_correct: bool = True
    data_consistency_issues: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.data_consistency_issues
