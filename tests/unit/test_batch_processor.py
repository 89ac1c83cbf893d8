"""
Unit tests for the batch processor
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock
from analysis.batch_processor import BatchConfig, BatchProcessor
from core.exceptions import BatchProcessorBusyError


async def double(batch):
    return [x * 2 for x in batch]


class TestBatchProcessor:
    """Test wave scheduling, ordering and abort"""

    def test_partition_keeps_order_and_short_tail(self):
        processor = BatchProcessor(BatchConfig(batch_size=3, max_concurrent=1, delay_between_batches=0))

        assert processor.partition(list(range(7))) == [[0, 1, 2], [3, 4, 5], [6]]

    def test_invalid_config_rejected(self):
        with pytest.raises(ValueError):
            BatchConfig(batch_size=0, max_concurrent=1, delay_between_batches=0)
        with pytest.raises(ValueError):
            BatchConfig(batch_size=1, max_concurrent=0, delay_between_batches=0)

    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        """Test that out-of-order batch completion does not reorder results"""
        async def slow_first(batch):
            if batch[0] == 0:
                await asyncio.sleep(0.02)
            return batch

        processor = BatchProcessor(BatchConfig(batch_size=2, max_concurrent=3, delay_between_batches=0))
        results = await processor.process_batches(list(range(6)), slow_first)

        assert results == [0, 1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_waves_respect_concurrency_limit(self):
        active = 0
        peak = 0

        async def track(batch):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return batch

        processor = BatchProcessor(BatchConfig(batch_size=1, max_concurrent=2, delay_between_batches=0))
        await processor.process_batches(list(range(5)), track)

        assert peak == 2

    @pytest.mark.asyncio
    async def test_callbacks_receive_batches_and_progress(self):
        on_batch = MagicMock()
        on_progress = AsyncMock()

        processor = BatchProcessor(BatchConfig(batch_size=2, max_concurrent=1, delay_between_batches=0))
        await processor.process_batches([1, 2, 3], double, on_batch_complete=on_batch, on_progress=on_progress)

        on_batch.assert_any_call([2, 4], 0)
        on_batch.assert_any_call([6], 1)
        last_progress = on_progress.await_args_list[-1].args[0]
        assert last_progress.processed == 3
        assert last_progress.total == 3
        assert last_progress.percentage == 100.0

    @pytest.mark.asyncio
    async def test_empty_input(self):
        processor = BatchProcessor(BatchConfig(batch_size=2, max_concurrent=1, delay_between_batches=0))

        assert await processor.process_batches([], double) == []

    @pytest.mark.asyncio
    async def test_abort_stops_next_wave(self):
        """Test that batches in flight finish but no new wave starts"""
        processor = BatchProcessor(BatchConfig(batch_size=1, max_concurrent=2, delay_between_batches=0))
        seen = []

        async def process(batch):
            seen.extend(batch)
            if batch[0] == 0:
                processor.abort()
            return batch

        results = await processor.process_batches(list(range(6)), process)

        assert results == [0, 1]
        assert seen == [0, 1]
        assert not processor.is_aborted

    @pytest.mark.asyncio
    async def test_abort_before_start_is_honoured(self):
        processor = BatchProcessor(BatchConfig(batch_size=1, max_concurrent=1, delay_between_batches=0))
        processor.abort()

        assert await processor.process_batches([1, 2], double) == []

    @pytest.mark.asyncio
    async def test_failing_batch_propagates_after_wave_settles(self):
        completed = []

        async def process(batch):
            if batch[0] == 1:
                raise RuntimeError("boom")
            await asyncio.sleep(0.01)
            completed.append(batch[0])
            return batch

        processor = BatchProcessor(BatchConfig(batch_size=1, max_concurrent=3, delay_between_batches=0))
        with pytest.raises(RuntimeError, match="boom"):
            await processor.process_batches([0, 1, 2, 3, 4], process)

        assert sorted(completed) == [0, 2]
        assert not processor.is_processing

    @pytest.mark.asyncio
    async def test_reentry_rejected(self):
        processor = BatchProcessor(BatchConfig(batch_size=1, max_concurrent=1, delay_between_batches=0))
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocking(batch):
            started.set()
            await release.wait()
            return batch

        task = asyncio.create_task(processor.process_batches([1], blocking))
        await started.wait()

        with pytest.raises(BatchProcessorBusyError):
            await processor.process_batches([2], blocking)

        release.set()
        assert await task == [1]

    @pytest.mark.asyncio
    async def test_delay_between_waves_only(self, monkeypatch):
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)

        monkeypatch.setattr("analysis.batch_processor.asyncio.sleep", fake_sleep)
        processor = BatchProcessor(BatchConfig(batch_size=1, max_concurrent=2, delay_between_batches=0.5))

        await processor.process_batches([1, 2, 3, 4, 5], double)

        assert sleeps == [0.5, 0.5]
