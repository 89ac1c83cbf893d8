"""
Unit tests for shipment normalization and service resolution
"""

import pytest
from core.exceptions import MissingDataError, ServiceMappingError
from ingestion.transformers.normalizer import ShipmentNormalizer, ensure_complete
from ingestion.transformers.service_mapping import (
    apply_corrections,
    classify_service,
    resolve_intended_service,
    service_codes_to_request,
)
from schemas.analysis import ServiceCorrection
from schemas.shipment import Shipment


class TestShipmentNormalizer:
    """Test row normalization into canonical shipments"""

    def test_normalize_csv_row(self, sample_rows):
        """Test header aliases, currency and ZIP parsing"""
        shipment = ShipmentNormalizer().normalize(sample_rows[0], shipment_id=1)

        assert shipment.id == 1
        assert shipment.tracking_id == "1Z0001"
        assert shipment.origin_zip == "10001"
        assert shipment.destination_zip == "90210"
        assert shipment.weight == 5.0
        assert shipment.original_service == "UPS Ground"
        assert shipment.intended_service is None
        assert shipment.current_rate == 20.0
        assert shipment.is_complete

    def test_normalize_coerces_messy_values(self, sample_rows):
        """Test leading-zero ZIPs, unit suffixes, thousands separators and residential flags"""
        shipment = ShipmentNormalizer().normalize(sample_rows[2], shipment_id=3)

        assert shipment.origin_zip == "02108"
        assert shipment.weight == 12.0
        assert shipment.current_rate == 1204.10
        assert shipment.is_residential is True

    def test_incomplete_row_is_kept(self, sample_rows):
        """Test that a row missing its origin ZIP still becomes a shipment"""
        shipment = ShipmentNormalizer().normalize(sample_rows[1], shipment_id=2)

        assert shipment.origin_zip is None
        assert not shipment.is_complete
        assert shipment.missing_fields() == ["origin_zip"]

    def test_normalize_all_assigns_sequential_ids(self, sample_rows):
        shipments = ShipmentNormalizer().normalize_all(sample_rows)

        assert [s.id for s in shipments] == [1, 2, 3]
        assert sum(1 for s in shipments if s.is_complete) == 2

    def test_column_mapping_wins_over_aliases(self):
        """Test that an explicit mapping beats the built-in alias order"""
        normalizer = ShipmentNormalizer(column_mapping={"weight": "Billed Wt"})
        row = {"origin_zip": "10001", "dest_zip": "90210", "Weight": "3", "Billed Wt": "7"}

        shipment = normalizer.normalize(row, shipment_id=1)

        assert shipment.weight == 7.0

    def test_dimension_string_fills_missing_dimensions(self):
        row = {"origin_zip": "10001", "dest_zip": "90210", "weight": "2", "Dimensions": "12x10x8"}

        shipment = ShipmentNormalizer().normalize(row, shipment_id=1)

        assert (shipment.length, shipment.width, shipment.height) == (12.0, 10.0, 8.0)

    def test_missing_tracking_id_is_synthesized(self):
        shipment = ShipmentNormalizer().normalize({"origin_zip": "10001"}, shipment_id=4)

        assert shipment.tracking_id == "Shipment-4"

    def test_negative_rate_treated_as_unknown(self):
        shipment = ShipmentNormalizer().normalize({"cost": "-5.00"}, shipment_id=1)

        assert shipment.current_rate == 0.0

    def test_residential_inferred_from_service(self):
        shipment = ShipmentNormalizer().normalize({"service": "Ground Residential"}, shipment_id=1)

        assert shipment.is_residential is True

    @pytest.mark.parametrize("value,expected", [
        ("$1,234.50", 1234.50),
        ("(12.00)", -12.0),
        ("0", 0.0),
        ("", None),
        ("n/a", None),
        (19.99, 19.99),
    ])
    def test_parse_currency(self, value, expected):
        assert ShipmentNormalizer.parse_currency(value) == expected

    def test_ensure_complete_raises_with_missing_fields(self):
        shipment = Shipment(id=1, destination_zip="90210")

        with pytest.raises(MissingDataError) as exc_info:
            ensure_complete(shipment)

        assert exc_info.value.missing_fields == ["origin_zip", "weight"]
        assert exc_info.value.error_type == "missing_data"


class TestServiceMapping:
    """Test carrier service label classification"""

    @pytest.mark.parametrize("label,service,code", [
        ("UPS Ground", "Ground", "03"),
        ("Next Day Air Saver", "Next Day Air Saver", "13"),
        ("next day air early am", "Next Day Air Early", "14"),
        ("2 Day", "2nd Day Air", "02"),
        ("UPS 3 Day Select", "3 Day Select", "12"),
        ("Worldwide Express Plus", "Worldwide Express Plus", "54"),
    ])
    def test_classify_known_labels(self, label, service, code):
        match = classify_service(label)

        assert match.service == service
        assert match.code == code

    def test_empty_label_defaults_to_ground(self):
        match = classify_service("")

        assert match.service == "Ground"
        assert match.confidence == 0.5

    def test_unrecognized_label_returns_none(self):
        assert classify_service("Pallet Freight") is None

    def test_requested_codes_put_match_first(self):
        assert service_codes_to_request("UPS 3 Day Select") == ["12", "01", "02", "03", "13"]
        assert service_codes_to_request("Pallet Freight") == ["01", "02", "03", "12", "13"]

    def test_apply_corrections_is_case_insensitive(self):
        corrections = [ServiceCorrection(from_service="Pallet Freight", to_service="Ground")]

        assert apply_corrections("  pallet freight ", corrections) == "Ground"
        assert apply_corrections("Air Cargo", corrections) is None

    def test_resolve_prefers_existing_intended_service(self):
        shipment = Shipment(id=1, original_service="Pallet Freight", intended_service="2nd Day Air")

        assert resolve_intended_service(shipment) == "2nd Day Air"

    def test_resolve_uses_correction_before_classifier(self):
        shipment = Shipment(id=1, original_service="UPS Ground")
        corrections = [ServiceCorrection(**{"from": "UPS Ground", "to": "3 Day Select"})]

        assert resolve_intended_service(shipment, corrections) == "3 Day Select"

    def test_resolve_unknown_service_raises(self):
        shipment = Shipment(id=1, original_service="Pallet Freight")

        with pytest.raises(ServiceMappingError) as exc_info:
            resolve_intended_service(shipment)

        assert exc_info.value.error_type == "service_mapping_not_found"
