"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from typing import Callable, Dict, List, Optional

from analysis.batch_processor import BatchConfig
from analysis.orchestrator import AnalysisOrchestrator
from analysis.registry import JobRegistry
from core.exceptions import QuoteNetworkError
from persistence.memory_store import InMemoryAnalysisStore
from quotes.base import QuoteProvider
from schemas.shipment import QuoteResponse, Rate, Shipment


def make_rate(total: float, service: str = "UPS Ground", carrier_id: str = "acct-1",
              carrier_name: str = "Main Account") -> Rate:
    return Rate(
        carrier_id=carrier_id,
        carrier_name=carrier_name,
        service_code="03",
        service_name=service,
        total_charges=total,
    )


def make_shipment(shipment_id: int, **overrides) -> Shipment:
    fields = dict(
        id=shipment_id,
        tracking_id=f"1Z{shipment_id:08d}",
        origin_zip="10001",
        destination_zip="90210",
        weight=5.0,
        carrier="UPS",
        original_service="UPS Ground",
        current_rate=20.0,
    )
    fields.update(overrides)
    return Shipment(**fields)


class FakeQuoteProvider(QuoteProvider):
    """
    Quote provider double.

    ``responses`` maps shipment id to a QuoteResponse or an exception to
    raise; unknown ids get ``default_rates``.
    """

    def __init__(self, default_rates: Optional[List[Rate]] = None, responses: Optional[Dict] = None,
                 hook: Optional[Callable] = None):
        self.default_rates = default_rates if default_rates is not None else [make_rate(15.0)]
        self.responses = responses or {}
        self.hook = hook
        self.calls: List[Shipment] = []

    async def quote(self, shipment: Shipment, carrier_account_ids: List[str]) -> QuoteResponse:
        self.calls.append(shipment)
        if self.hook is not None:
            await self.hook(shipment)
        outcome = self.responses.get(shipment.id)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        return QuoteResponse(success=True, rates=list(self.default_rates))


@pytest.fixture
def store():
    return InMemoryAnalysisStore()


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def batch_config():
    return BatchConfig(batch_size=2, max_concurrent=2, delay_between_batches=0)


@pytest.fixture
def quote_provider():
    return FakeQuoteProvider()


@pytest.fixture
def orchestrator(store, quote_provider, registry, batch_config):
    return AnalysisOrchestrator(store, quote_provider, registry, batch_config, quote_timeout=5.0)


@pytest.fixture
def network_error():
    return QuoteNetworkError("connection reset", context={"shipment_id": 2})


@pytest.fixture
def sample_rows():
    """Raw CSV-style rows as uploaded"""
    return [
        {
            "Tracking Number": "1Z0001",
            "Origin ZIP": "10001",
            "Dest ZIP": "90210",
            "Weight": "5",
            "Service": "UPS Ground",
            "Cost": "$20.00",
        },
        {
            "Tracking Number": "1Z0002",
            "Origin ZIP": "",
            "Dest ZIP": "60601",
            "Weight": "3",
            "Service": "2nd Day Air",
            "Cost": "$35.50",
        },
        {
            "Tracking Number": "1Z0003",
            "Origin ZIP": "2108",
            "Dest ZIP": "30301",
            "Weight": "12 lbs",
            "Service": "Next Day Air Saver",
            "Cost": "1,204.10",
            "Residential": "yes",
        },
    ]


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    """SqlAnalysisStore over a throwaway SQLite database"""
    from core.database import create_session_maker, init_models
    from sqlalchemy.ext.asyncio import create_async_engine
    from sqlalchemy.pool import NullPool
    from persistence.sql_store import SqlAnalysisStore

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'analyses.db'}", poolclass=NullPool)
    await init_models(engine)
    store = SqlAnalysisStore(create_session_maker(engine), engine=engine)
    yield store
    await store.close()
