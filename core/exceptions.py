"""
Custom exceptions for the rate analysis pipeline with structured error context.

This module provides the exception hierarchy used throughout shipment
normalization, quoting, batch/chunk processing and persistence. Each
exception carries context information for debugging and monitoring, and an
``error_type`` that maps it onto the closed orphan taxonomy
(see ``models.base.ErrorType``) when a shipment has to be orphaned.

Exception Hierarchy:
    AnalysisException (base)
    ├── ValidationError
    │   └── MissingDataError
    ├── ServiceMappingError
    ├── QuoteProviderError
    │   ├── QuoteNetworkError
    │   ├── QuoteRateLimitError
    │   ├── QuoteAuthenticationError
    │   └── NoRatesError
    ├── PersistenceError
    │   ├── JobNotFoundError
    │   ├── CheckpointError
    │   └── InvalidJobTransitionError
    ├── BatchProcessingError
    │   └── BatchProcessorBusyError
    ├── ChunkProcessingError
    │   └── ChunkRetryExhaustedError
    ├── InvalidStateTransitionError
    ├── JobActiveError
    ├── ReanalysisError
    ├── MigrationError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class AnalysisException(Exception):
    """
    Base exception for all analysis-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job id, shipment id, etc.)
        original_exception: The original exception that was caught (if any)
        error_type: Orphan taxonomy value used when this error orphans a shipment
    """

    error_type = "processing_error"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "orphan_error_type": self.error_type,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(AnalysisException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(AnalysisException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Invalid shipment data
    """
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(NonRetryableError):
    """
    Exception raised when shipment data fails validation.

    Context should include:
        - shipment_id: Id of the shipment within the job
        - missing_fields: Required fields that were absent
    """
    error_type = "missing_data"


class MissingDataError(ValidationError):
    """A shipment lacks origin ZIP, destination ZIP or a positive weight."""

    def __init__(
        self,
        message: str,
        missing_fields: Optional[list] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.missing_fields = list(missing_fields or [])
        self.context["missing_fields"] = self.missing_fields


class ServiceMappingError(NonRetryableError):
    """
    No intended service could be resolved for a shipment's original service.

    Context should include:
        - original_service: Service string as it appeared in the source data
    """
    error_type = "service_mapping_not_found"


# ============================================================================
# Quote Provider Errors
# ============================================================================

class QuoteProviderError(AnalysisException):
    """
    Base exception for quote provider failures.

    Context should include:
        - api_url: The endpoint that failed (if remote)
        - status_code: HTTP status code (if applicable)
        - carrier_account_ids: Accounts that were quoted
    """
    error_type = "api_error"


class QuoteNetworkError(RetryableError, QuoteProviderError):
    """Network-related quote failures (timeouts, 5xx, connection errors)."""
    pass


class QuoteRateLimitError(RetryableError, QuoteProviderError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class QuoteAuthenticationError(NonRetryableError, QuoteProviderError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class NoRatesError(NonRetryableError, QuoteProviderError):
    """The provider answered successfully but returned zero candidate rates."""
    error_type = "no_rates"


# ============================================================================
# Persistence Errors
# ============================================================================

class PersistenceError(AnalysisException):
    """
    Exception raised when the persistence gateway fails.

    Context should include:
        - job_id: Job being read or written
        - operation: create, update or read
    """
    pass


class JobNotFoundError(PersistenceError):
    """No analysis job exists for the requested id."""
    pass


class CheckpointError(PersistenceError):
    """
    Exception raised when an incremental checkpoint cannot be written.

    A checkpoint failure halts the run: progress that exists only in memory
    must never be reported as committed.
    """
    pass


class InvalidJobTransitionError(PersistenceError):
    """A write tried to move a job out of a terminal status."""
    pass


# ============================================================================
# Processing Errors
# ============================================================================

class BatchProcessingError(AnalysisException):
    """Base exception for batch processor failures."""
    pass


class BatchProcessorBusyError(BatchProcessingError):
    """process_batches was called while another call is still active."""
    pass


class ChunkProcessingError(AnalysisException):
    """
    Exception raised when a streaming chunk fails.

    Context should include:
        - analysis_id: Job the chunk belongs to
        - chunk_index: Zero-based chunk index
    """
    pass


class ChunkRetryExhaustedError(ChunkProcessingError):
    """A chunk failed after every retry attempt."""
    error_type = "chunk_retry_exhausted"


class JobActiveError(AnalysisException):
    """A run is already active for the job; concurrent mutation is rejected."""
    pass


class ReanalysisError(AnalysisException):
    """A selective re-analysis or orphan fix could not be completed."""
    pass


class MigrationError(AnalysisException):
    """A legacy analysis could not be migrated to the processed/orphaned schema."""
    pass


class InvalidStateTransitionError(AnalysisException):
    """A per-shipment result was moved out of a terminal state."""
    pass
