from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, enum.Enum):
    """Persisted analysis job status (monotonic)"""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class AnalysisStatus(str, enum.Enum):
    """Per-shipment analysis state"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ErrorType(str, enum.Enum):
    """Closed taxonomy used to classify orphaned shipments"""
    MISSING_DATA = "missing_data"
    SERVICE_MAPPING_NOT_FOUND = "service_mapping_not_found"
    API_ERROR = "api_error"
    NO_RATES = "no_rates"
    PROCESSING_ERROR = "processing_error"
    CHUNK_RETRY_EXHAUSTED = "chunk_retry_exhausted"


class OrphanStage(str, enum.Enum):
    """Where in the pipeline a shipment was orphaned"""
    INGESTION = "ingestion"
    ANALYSIS = "analysis"
    REANALYSIS = "reanalysis"
    RECOVERY = "recovery"
    LEGACY = "legacy"
