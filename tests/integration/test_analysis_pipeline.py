"""
End-to-end analysis runs against the in-memory store
"""

import asyncio
import pytest
from analysis.orchestrator import AnalysisOrchestrator
from analysis.progress import ProgressChannel, ProgressEventType
from core.exceptions import CheckpointError, PersistenceError
from models.base import ErrorType, JobStatus, OrphanStage
from schemas.shipment import QuoteResponse
from conftest import FakeQuoteProvider, make_rate, make_shipment


@pytest.mark.asyncio
async def test_all_shipments_priced(orchestrator, store):
    """
    Test: every shipment quotes successfully, job completes with full savings
    """
    shipments = [make_shipment(i) for i in (1, 2, 3)]

    job = await orchestrator.run_analysis(shipments, ["acct-1"])

    assert job.status == JobStatus.COMPLETED
    assert [p.id for p in job.processed_shipments] == [1, 2, 3]
    assert job.orphaned_shipments == []
    assert job.total_savings == pytest.approx(15.0)
    assert job.savings_analysis.completed_shipments == 3
    assert job.processing_metadata["completed_batches"] == 2

    stored = await store.read(job.id)
    assert stored.processed_shipments[0].new_rate == 15.0
    assert stored.processed_shipments[0].savings_percent == pytest.approx(25.0)
    assert stored.processed_shipments[0].intended_service == "Ground"


@pytest.mark.asyncio
async def test_incomplete_shipment_orphaned_without_quote(orchestrator, quote_provider):
    """
    Test: a shipment missing its origin ZIP is orphaned at ingestion and never quoted
    """
    shipments = [make_shipment(1), make_shipment(2, origin_zip=None), make_shipment(3)]

    job = await orchestrator.run_analysis(shipments, ["acct-1"])

    assert job.status == JobStatus.COMPLETED
    assert [p.id for p in job.processed_shipments] == [1, 3]
    orphan = job.orphaned_shipments[0]
    assert orphan.id == 2
    assert orphan.error_type == ErrorType.MISSING_DATA
    assert orphan.missing_fields == ["origin_zip"]
    assert orphan.error == "Missing required fields: origin_zip"
    assert orphan.stage == OrphanStage.INGESTION
    assert sorted(s.id for s in quote_provider.calls) == [1, 3]
    assert job.is_partial_success


@pytest.mark.asyncio
async def test_network_error_orphans_one_shipment(store, registry, batch_config, network_error):
    """
    Test: the quote provider fails for one shipment, the job still completes
    """
    provider = FakeQuoteProvider(responses={2: network_error})
    orchestrator = AnalysisOrchestrator(store, provider, registry, batch_config, quote_timeout=5.0)

    job = await orchestrator.run_analysis([make_shipment(i) for i in (1, 2, 3)], ["acct-1"])

    assert job.status == JobStatus.COMPLETED
    assert len(job.processed_shipments) == 2
    assert len(job.orphaned_shipments) == 1
    assert job.orphaned_shipments[0].error_type == ErrorType.API_ERROR
    assert job.orphaned_shipments[0].stage == OrphanStage.ANALYSIS
    assert job.accounted_shipments == job.total_shipments


@pytest.mark.asyncio
async def test_orphan_classification(store, registry, batch_config):
    """Test that each per-shipment failure maps to its error type"""
    provider = FakeQuoteProvider(responses={
        2: QuoteResponse(success=True, rates=[]),
        3: QuoteResponse(success=False, error="account suspended"),
        4: ValueError("unexpected payload"),
    })
    orchestrator = AnalysisOrchestrator(store, provider, registry, batch_config, quote_timeout=5.0)
    shipments = [
        make_shipment(1, original_service="Pallet Freight"),
        make_shipment(2),
        make_shipment(3),
        make_shipment(4),
    ]

    job = await orchestrator.run_analysis(shipments, ["acct-1"])

    kinds = {o.id: o.error_type for o in job.orphaned_shipments}
    assert kinds == {
        1: ErrorType.SERVICE_MAPPING_NOT_FOUND,
        2: ErrorType.NO_RATES,
        3: ErrorType.API_ERROR,
        4: ErrorType.PROCESSING_ERROR,
    }
    assert job.status == JobStatus.COMPLETED
    assert job.processed_shipments == []
    assert job.total_savings == 0.0


@pytest.mark.asyncio
async def test_slow_quote_times_out(store, registry, batch_config):
    async def stall(shipment):
        if shipment.id == 1:
            await asyncio.sleep(1)

    provider = FakeQuoteProvider(hook=stall)
    orchestrator = AnalysisOrchestrator(store, provider, registry, batch_config, quote_timeout=0.05)

    job = await orchestrator.run_analysis([make_shipment(1), make_shipment(2)], ["acct-1"])

    assert job.orphaned_shipments[0].id == 1
    assert job.orphaned_shipments[0].error_type == ErrorType.API_ERROR
    assert "timed out" in job.orphaned_shipments[0].error


@pytest.mark.asyncio
async def test_best_rate_and_negative_savings(store, registry, batch_config):
    """Test that the cheapest rate wins even when it costs more than today"""
    provider = FakeQuoteProvider(default_rates=[
        make_rate(31.0, "UPS Ground", "acct-1"),
        make_rate(25.0, "UPS 3 Day Select", "acct-2", "Second Account"),
        make_rate(25.0, "UPS 2nd Day Air", "acct-3"),
    ])
    orchestrator = AnalysisOrchestrator(store, provider, registry, batch_config, quote_timeout=5.0)

    job = await orchestrator.run_analysis([make_shipment(1)], ["acct-1", "acct-2"])

    processed = job.processed_shipments[0]
    assert processed.new_rate == 25.0
    assert processed.new_service == "UPS 3 Day Select"
    assert processed.account_id == "acct-2"
    assert processed.savings == pytest.approx(-5.0)
    assert job.total_savings == pytest.approx(-5.0)
    assert job.savings_analysis.potential_savings == 0.0


@pytest.mark.asyncio
async def test_markup_recorded_on_processed_shipment(store, registry, batch_config, quote_provider):
    orchestrator = AnalysisOrchestrator(
        store, quote_provider, registry, batch_config, quote_timeout=5.0,
        markup_fn=lambda shipment, rate: round(rate.total_charges * 1.1, 2),
    )

    job = await orchestrator.run_analysis([make_shipment(1)], ["acct-1"])

    assert job.processed_shipments[0].marked_up_rate == 16.5
    assert job.processed_shipments[0].savings == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_checkpoint_failure_fails_job(orchestrator, store):
    """
    Test: the store rejects a checkpoint, the run halts and the job is marked failed
    """
    original_update = store.update
    failures = []

    async def flaky_update(job_id, fields):
        if "processed_shipments" in fields and not failures:
            failures.append(job_id)
            raise PersistenceError("disk full", context={"job_id": job_id})
        return await original_update(job_id, fields)

    store.update = flaky_update

    with pytest.raises(CheckpointError):
        await orchestrator.run_analysis([make_shipment(i) for i in range(1, 5)], ["acct-1"], job_id="job-ckpt")

    job = await store.read("job-ckpt")
    assert job.status == JobStatus.FAILED
    assert "Failed to checkpoint" in job.processing_metadata["error"]


@pytest.mark.asyncio
async def test_abort_stops_after_current_wave(store, registry, batch_config):
    """
    Test: abort during the first wave lets it finish and skips the rest
    """
    orchestrator = None

    async def abort_on_first(shipment):
        if shipment.id == 1:
            orchestrator.abort("job-abort")

    provider = FakeQuoteProvider(hook=abort_on_first)
    orchestrator = AnalysisOrchestrator(store, provider, registry, batch_config, quote_timeout=5.0)

    job = await orchestrator.run_analysis(
        [make_shipment(i) for i in range(1, 7)], ["acct-1"], job_id="job-abort"
    )

    assert job.status == JobStatus.FAILED
    assert job.processing_metadata["aborted"] is True
    assert [p.id for p in job.processed_shipments] == [1, 2, 3, 4]
    assert job.total_shipments == 6
    assert not registry.is_active("job-abort")


@pytest.mark.asyncio
async def test_abort_during_last_wave_completes_job(store, registry, batch_config):
    """
    Test: abort lands while the only wave runs, so no shipment is skipped
    """
    orchestrator = None

    async def abort_on_first(shipment):
        if shipment.id == 1:
            orchestrator.abort("job-late-abort")

    provider = FakeQuoteProvider(hook=abort_on_first)
    orchestrator = AnalysisOrchestrator(store, provider, registry, batch_config, quote_timeout=5.0)

    job = await orchestrator.run_analysis(
        [make_shipment(i) for i in range(1, 5)], ["acct-1"], job_id="job-late-abort"
    )

    assert job.status == JobStatus.COMPLETED
    assert "aborted" not in job.processing_metadata
    assert [p.id for p in job.processed_shipments] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_background_run_publishes_progress(store, registry, batch_config, quote_provider):
    channel = ProgressChannel(queue_size=50)
    orchestrator = AnalysisOrchestrator(
        store, quote_provider, registry, batch_config, quote_timeout=5.0, progress=channel
    )
    queue = channel.subscribe()

    job_id = await orchestrator.start_analysis([make_shipment(i) for i in range(1, 4)], ["acct-1"])
    assert registry.is_active(job_id)
    await registry.wait(job_id)

    events = []
    while not queue.empty():
        events.append(queue.get_nowait())

    assert events[0].event == ProgressEventType.STARTED
    assert events[-1].event == ProgressEventType.COMPLETED
    assert events[-1].completed_shipments == 3
    assert sum(1 for e in events if e.event == ProgressEventType.BATCH_COMPLETED) == 2
    assert (await store.read(job_id)).status == JobStatus.COMPLETED
    assert not registry.is_active(job_id)


@pytest.mark.asyncio
async def test_cancelled_background_run_marks_job_failed(store, registry, batch_config):
    started = asyncio.Event()

    async def block(shipment):
        started.set()
        await asyncio.sleep(10)

    orchestrator = AnalysisOrchestrator(
        store, FakeQuoteProvider(hook=block), registry, batch_config, quote_timeout=None
    )

    job_id = await orchestrator.start_analysis([make_shipment(1)], ["acct-1"])
    await started.wait()
    await registry.shutdown()

    job = await store.read(job_id)
    assert job.status == JobStatus.FAILED
    assert "Analysis cancelled" in job.processing_metadata["error"]
