"""
Unit tests for best-rate selection, savings and error classification
"""

import asyncio
import httpx
import pytest
from analysis.rating import classify_exception, compute_savings, select_best_rate, summarize
from core.exceptions import (
    ChunkRetryExhaustedError,
    MissingDataError,
    NoRatesError,
    QuoteAuthenticationError,
    QuoteNetworkError,
    ServiceMappingError,
)
from models.base import ErrorType
from schemas.analysis import ProcessedShipment
from conftest import make_rate


def processed(shipment_id, current, new):
    savings, percent = compute_savings(current, new)
    return ProcessedShipment(
        id=shipment_id, tracking_id=f"T{shipment_id}", origin_zip="10001",
        destination_zip="90210", weight=1.0, current_rate=current, new_rate=new,
        savings=savings, savings_percent=percent,
    )


class TestRating:

    def test_best_rate_is_lowest_total(self):
        rates = [make_rate(18.0), make_rate(12.5, carrier_id="acct-2"), make_rate(14.0)]

        assert select_best_rate(rates).carrier_id == "acct-2"

    def test_best_rate_ties_keep_first(self):
        rates = [make_rate(10.0, carrier_id="first"), make_rate(10.0, carrier_id="second")]

        assert select_best_rate(rates).carrier_id == "first"

    def test_best_rate_of_nothing(self):
        assert select_best_rate([]) is None

    def test_compute_savings(self):
        assert compute_savings(20.0, 15.0) == (5.0, 25.0)

    def test_negative_savings_allowed(self):
        savings, percent = compute_savings(10.0, 12.0)

        assert savings == -2.0
        assert percent == -20.0

    def test_unknown_current_rate_gives_zero_percent(self):
        assert compute_savings(0.0, 12.0) == (-12.0, 0.0)

    def test_summarize_totals(self):
        summary = summarize([processed(1, 20.0, 15.0), processed(2, 10.0, 12.0)], orphaned_count=1)

        assert summary.total_shipments == 3
        assert summary.completed_shipments == 2
        assert summary.error_shipments == 1
        assert summary.total_current_cost == 30.0
        assert summary.total_savings == 3.0
        assert summary.savings_percentage == pytest.approx(10.0)
        assert summary.average_savings_percent == pytest.approx(2.5)

    def test_potential_savings_floored_at_zero(self):
        summary = summarize([processed(1, 10.0, 12.0)], orphaned_count=0)

        assert summary.total_savings == -2.0
        assert summary.potential_savings == 0.0


class TestClassifyException:

    @pytest.mark.parametrize("exc,expected", [
        (MissingDataError("missing", missing_fields=["weight"]), ErrorType.MISSING_DATA),
        (ServiceMappingError("no mapping"), ErrorType.SERVICE_MAPPING_NOT_FOUND),
        (QuoteNetworkError("reset"), ErrorType.API_ERROR),
        (QuoteAuthenticationError("denied"), ErrorType.API_ERROR),
        (NoRatesError("none"), ErrorType.NO_RATES),
        (ChunkRetryExhaustedError("gave up"), ErrorType.CHUNK_RETRY_EXHAUSTED),
        (asyncio.TimeoutError(), ErrorType.API_ERROR),
        (httpx.ConnectError("refused"), ErrorType.API_ERROR),
        (KeyError("rates"), ErrorType.PROCESSING_ERROR),
    ])
    def test_classification(self, exc, expected):
        assert classify_exception(exc) == expected
