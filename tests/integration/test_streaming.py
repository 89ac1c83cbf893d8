"""
Streaming chunk processing against the in-memory store
"""

import pytest
from collections import Counter
from analysis.chunk_workers import ChunkWorker, InProcessChunkWorker, price_recommendation
from analysis.streaming import StreamingChunkProcessor, StreamingConfig
from core.exceptions import ChunkProcessingError, ChunkRetryExhaustedError
from models.base import ErrorType, JobStatus, OrphanStage
from schemas.analysis import OrphanedShipment
from conftest import make_shipment


def make_recommendation(index, current="20.00", rates=(15.0,)):
    return {
        "shipment": {
            "Tracking Number": f"1Z{index:06d}",
            "Origin ZIP": "10001",
            "Dest ZIP": "90210",
            "Weight": "5",
            "Service": "UPS Ground",
        },
        "currentCost": current,
        "allRates": [
            {"carrierId": "acct-1", "carrierName": "Main Account", "serviceName": "UPS Ground", "totalCharges": r}
            for r in rates
        ],
    }


class ScriptedWorker(ChunkWorker):
    """Wraps the in-process worker and fails chosen chunks a set number of times"""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = dict(failures)
        self.attempts = Counter()

    async def process(self, chunk):
        self.attempts[chunk.chunk_index] += 1
        remaining = self.failures.get(chunk.chunk_index, 0)
        if remaining:
            if remaining > 0:
                self.failures[chunk.chunk_index] = remaining - 1
            raise ChunkProcessingError("worker unavailable", context={"chunk_index": chunk.chunk_index})
        await self.inner.process(chunk)


def make_processor(store, registry, worker, chunk_size=500, max_concurrent_chunks=3):
    config = StreamingConfig(
        chunk_size=chunk_size,
        max_concurrent_chunks=max_concurrent_chunks,
        retry_attempts=3,
        backoff_base=0,
    )
    return StreamingChunkProcessor(store, worker, config, registry)


class TestStreamingChunkProcessor:
    """Test chunked processing, retry and failure handling"""

    def test_create_chunks_covers_every_item(self, store):
        processor = make_processor(store, None, InProcessChunkWorker(store))
        recommendations = [make_recommendation(i) for i in range(1200)]

        chunks = processor.create_chunks(recommendations, "job-1")

        assert [len(c.data) for c in chunks] == [500, 500, 200]
        assert {c.total_chunks for c in chunks} == {3}
        assert chunks[2].start_index == 1000

    @pytest.mark.asyncio
    async def test_stream_completes_and_merges_orphans(self, store, registry):
        """
        Test: every chunk succeeds, ingestion orphans are merged at finalization
        """
        recommendations = [make_recommendation(i) for i in range(7)]
        recommendations[3]["allRates"] = []
        orphan = OrphanedShipment.from_shipment(
            make_shipment(8, origin_zip=None), ErrorType.MISSING_DATA, "Missing origin", OrphanStage.INGESTION
        )
        processor = make_processor(store, registry, InProcessChunkWorker(store), chunk_size=3, max_concurrent_chunks=2)

        job = await processor.stream_analysis(recommendations, [orphan], file_name="big.csv")

        assert job.status == JobStatus.COMPLETED
        assert job.total_shipments == 8
        assert len(job.processed_shipments) == 6
        assert sorted(o.id for o in job.orphaned_shipments) == [4, 8]
        no_rates = next(o for o in job.orphaned_shipments if o.id == 4)
        assert no_rates.error_type == ErrorType.NO_RATES
        assert job.total_savings == pytest.approx(30.0)
        assert job.processing_metadata["processing_type"] == "streaming"
        assert job.processing_metadata["processed_chunks"] == 3
        assert not registry.is_active(job.id)

    @pytest.mark.asyncio
    async def test_ingestion_orphans_never_replace_chunk_orphans(self, store, registry):
        """
        Test: a caller orphan whose id matches a no_rates item is kept alongside it
        """
        recommendations = [make_recommendation(i) for i in range(3)]
        recommendations[2]["allRates"] = []
        orphan = OrphanedShipment.from_shipment(
            make_shipment(3, origin_zip=None), ErrorType.MISSING_DATA, "Missing origin", OrphanStage.INGESTION
        )
        processor = make_processor(store, registry, InProcessChunkWorker(store), chunk_size=2)

        job = await processor.stream_analysis(recommendations, [orphan])

        assert job.status == JobStatus.COMPLETED
        assert job.total_shipments == 4
        assert len(job.processed_shipments) + len(job.orphaned_shipments) == job.total_shipments
        assert [(o.id, o.error_type) for o in job.orphaned_shipments] == [
            (3, ErrorType.NO_RATES),
            (4, ErrorType.MISSING_DATA),
        ]
        assert "integrity_issues" not in job.processing_metadata

    @pytest.mark.asyncio
    async def test_chunk_retry_exhausted_fails_job(self, store, registry):
        """
        Test: 1200 items in chunks of 500, chunk 1 always fails
        """
        worker = ScriptedWorker(InProcessChunkWorker(store), failures={1: -1})
        processor = make_processor(store, registry, worker)
        recommendations = [make_recommendation(i) for i in range(1200)]

        with pytest.raises(ChunkRetryExhaustedError) as exc_info:
            await processor.stream_analysis(recommendations)

        job = await store.read(exc_info.value.context["analysis_id"])
        assert job.status == JobStatus.FAILED
        assert job.processing_metadata["failed_chunk"] == 1
        assert job.processing_metadata["processed_chunks"] == 2
        assert worker.attempts[1] == 3
        # Chunks that succeeded stay persisted
        assert len(job.processed_shipments) == 700

    @pytest.mark.asyncio
    async def test_transient_chunk_failure_recovers_without_duplicates(self, store, registry):
        worker = ScriptedWorker(InProcessChunkWorker(store), failures={0: 2})
        processor = make_processor(store, registry, worker, chunk_size=4)
        recommendations = [make_recommendation(i) for i in range(10)]

        job = await processor.stream_analysis(recommendations)

        assert job.status == JobStatus.COMPLETED
        assert worker.attempts[0] == 3
        assert [p.id for p in job.processed_shipments] == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_background_stream(self, store, registry):
        processor = make_processor(store, registry, InProcessChunkWorker(store), chunk_size=2)

        job_id = await processor.start_streaming([make_recommendation(i) for i in range(5)])
        await registry.wait(job_id)

        job = await store.read(job_id)
        assert job.status == JobStatus.COMPLETED
        assert len(job.processed_shipments) == 5


class TestPriceRecommendation:

    def test_prices_from_lowest_rate(self):
        rec = make_recommendation(1, current="$40.00", rates=(32.5, 28.0))

        processed, orphan = price_recommendation(rec, 1)

        assert orphan is None
        assert processed.new_rate == 28.0
        assert processed.savings == pytest.approx(12.0)
        assert processed.savings_percent == pytest.approx(30.0)
        assert processed.account_id == "acct-1"

    def test_unparseable_rates_are_skipped(self):
        rec = make_recommendation(1)
        rec["allRates"] = [{"carrierId": "acct-1"}, {"totalCharges": "not a number"}]

        processed, orphan = price_recommendation(rec, 1)

        assert processed is None
        assert orphan.error_type == ErrorType.NO_RATES
