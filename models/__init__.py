"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (JobStatus, AnalysisStatus,
          ErrorType, OrphanStage)
    shipping_analysis: One persisted analysis job with its processed and
          orphaned shipment collections

Database Schema:
    The model uses JSONB on PostgreSQL (plain JSON elsewhere) for the
    shipment collections, summary and checkpoint metadata.

Usage:
    from models.shipping_analysis import ShippingAnalysis
    from models.base import JobStatus, ErrorType
"""

__all__ = [
    "Base",
    "JobStatus",
    "AnalysisStatus",
    "ErrorType",
    "OrphanStage",
    "ShippingAnalysis",
]
