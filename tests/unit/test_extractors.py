"""
Unit tests for the CSV extractor
"""

import pytest
from core.exceptions import ValidationError
from ingestion.extractors.csv_extractor import CSVExtractor


CSV_CONTENT = (
    "Tracking Number , Origin ZIP,Dest ZIP,Weight,Service,Cost\n"
    "1Z0001,02108,90210,5,UPS Ground,$20.00\n"
    ",,,,,\n"
    "1Z0002,10001,,3,2nd Day Air,\n"
)


class TestCSVExtractor:
    """Test CSV reading from files and pasted text"""

    def test_fetch_rows_from_file(self, tmp_path):
        path = tmp_path / "shipments.csv"
        path.write_text(CSV_CONTENT)

        rows = CSVExtractor(str(path)).fetch_rows()

        assert len(rows) == 2
        assert rows[0]["Tracking Number"] == "1Z0001"

    def test_values_are_kept_as_strings(self):
        """Test that ZIP leading zeros and currency text survive reading"""
        rows = CSVExtractor().parse_text(CSV_CONTENT)

        assert rows[0]["Origin ZIP"] == "02108"
        assert rows[0]["Cost"] == "$20.00"

    def test_blank_cells_are_empty_strings(self):
        rows = CSVExtractor().parse_text(CSV_CONTENT)

        assert rows[1]["Dest ZIP"] == ""
        assert rows[1]["Cost"] == ""

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ValidationError) as exc_info:
            CSVExtractor(str(tmp_path / "missing.csv")).fetch_rows()

        assert "not found" in exc_info.value.message

    def test_empty_text_raises(self):
        with pytest.raises(ValidationError):
            CSVExtractor().parse_text("   ")
