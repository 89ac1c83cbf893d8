from sqlalchemy import Column, String, Integer, Float, DateTime, Boolean, JSON, Enum, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime, timezone
from models.base import Base, JobStatus

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests). None is stored
# as SQL NULL so legacy records stay queryable with IS NULL.
JSONDocument = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


def _utcnow():
    return datetime.now(timezone.utc)


class ShippingAnalysis(Base):
    """
    One persisted analysis job: the unit of durability.

    Purpose:
    - Durable anchor for long-running and streaming analyses
    - Incremental checkpoints of processed/orphaned shipments
    - Source of truth for re-analysis, migration and integrity checks

    Design:
    - processed_shipments / orphaned_shipments are whole JSON documents,
      replaced on every write (callers always submit the merged array)
    - NULL collections mark a legacy record that predates the centralized
      schema; recommendations / original_data hold its ad-hoc data
    - processing_metadata is advisory checkpoint state only
    """
    __tablename__ = "shipping_analyses"

    id = Column(String(36), primary_key=True)

    # Job metadata
    file_name = Column(String(500), nullable=True)
    report_name = Column(String(500), nullable=True)
    client_id = Column(String(100), nullable=True, index=True)
    status = Column(Enum(JobStatus), default=JobStatus.PROCESSING, nullable=False, index=True)

    # Totals
    total_shipments = Column(Integer, nullable=False, default=0)
    total_savings = Column(Float, nullable=False, default=0.0)

    # Centralized collections
    processed_shipments = Column(JSONDocument, nullable=True)
    orphaned_shipments = Column(JSONDocument, nullable=True)

    # Legacy ad-hoc fields
    recommendations = Column(JSONDocument, nullable=True)
    original_data = Column(JSONDocument, nullable=True)

    # Summary and checkpoint state
    savings_analysis = Column(JSONDocument, nullable=True)
    processing_metadata = Column(JSONDocument, nullable=True)

    # Inputs used for the run
    carrier_account_ids = Column(JSONDocument, nullable=True)
    service_mappings = Column(JSONDocument, nullable=True)

    # Soft delete (owned by the UI)
    is_deleted = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_shipping_analyses_status_created", "status", "created_at"),
    )
