"""
Pydantic schemas for shipments, analysis results and the HTTP API.

Schemas:
    shipment: Canonical Shipment, carrier Rate and QuoteResponse
    analysis: Per-shipment results, persisted AnalysisJob and reports
    api: Request/response models for the FastAPI routes
"""

__all__ = [
    "analysis",
    "api",
    "shipment",
]
