"""
Shipment ingestion: turn uploaded rows into canonical shipments.

Subpackages:
    extractors: CSV reading (file or pasted text) into raw row dicts
    transformers: Column normalization and carrier service classification

Usage:
    from ingestion.extractors.csv_extractor import CSVExtractor
    from ingestion.transformers.normalizer import ShipmentNormalizer

    rows = CSVExtractor("shipments.csv").fetch_rows()
    shipments = ShipmentNormalizer().normalize_all(rows)

Incomplete rows are kept as incomplete shipments; the orchestrator turns them
into missing_data orphans instead of dropping them.
"""

__all__ = [
    "extractors",
    "transformers",
]
