"""
Bounded-concurrency batch runner
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from core.config import settings
from core.exceptions import BatchProcessorBusyError
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchConfig:
    """
    Attributes:
        batch_size: Items per batch; the last batch may be smaller
        max_concurrent: Batches dispatched together in one wave
        delay_between_batches: Seconds to wait between waves
    """

    batch_size: int = field(default_factory=lambda: settings.BATCH_SIZE)
    max_concurrent: int = field(default_factory=lambda: settings.MAX_CONCURRENT_BATCHES)
    delay_between_batches: float = field(
        default_factory=lambda: settings.DELAY_BETWEEN_BATCHES_MS / 1000
    )

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.delay_between_batches < 0:
            raise ValueError("delay_between_batches must not be negative")


@dataclass
class BatchProgress:
    processed: int
    total: int
    batch_index: int
    total_batches: int

    @property
    def percentage(self) -> float:
        return (self.processed / self.total * 100) if self.total else 100.0


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


class BatchProcessor:
    """
    Split items into batches and run them in waves of bounded concurrency.

    - Batches inside a wave run concurrently; the next wave starts only after
      every batch of the current one has settled and the inter-wave delay
      has elapsed.
    - Results are placed by batch index, so the returned list always lines
      up with the input regardless of completion order.
    - ``abort()`` stops new waves from being dispatched; batches already in
      flight run to completion. An abort requested before the call starts
      is honoured; the flag clears when the call returns.
    - If a batch raises, the rest of its wave still settles, then the first
      error propagates. Callbacks already invoked are not undone.
    - One ``process_batches`` call at a time per instance.
    """

    def __init__(self, config: Optional[BatchConfig] = None):
        self.config = config or BatchConfig()
        self._active = False
        self._aborted = False
        self.processed_items = 0
        self.total_items = 0
        self.completed_batches = 0
        self.total_batches = 0

    @property
    def is_processing(self) -> bool:
        return self._active

    @property
    def is_aborted(self) -> bool:
        return self._aborted

    def abort(self):
        """Stop dispatching further waves"""
        if self._active and not self._aborted:
            logger.info(
                f"Batch processing abort requested after {self.completed_batches}/"
                f"{self.total_batches} batches"
            )
        self._aborted = True

    def partition(self, items: Sequence[T]) -> List[List[T]]:
        size = self.config.batch_size
        return [list(items[i:i + size]) for i in range(0, len(items), size)]

    async def process_batches(
        self,
        items: Sequence[T],
        process_fn: Callable[[List[T]], Awaitable[List[R]]],
        on_batch_complete: Optional[Callable[[List[R], int], Any]] = None,
        on_progress: Optional[Callable[[BatchProgress], Any]] = None,
    ) -> List[R]:
        """
        Run ``process_fn`` over every batch of ``items``.

        Args:
            items: Ordered input
            process_fn: Async function processing one batch, order preserving
            on_batch_complete: Called with (results, batch_index) per batch;
                may be sync or async
            on_progress: Called with a BatchProgress after every batch

        Returns:
            Concatenated results in input order. After an abort, only the
            batches that completed before the abort was observed.

        Raises:
            BatchProcessorBusyError: Another call is still active
        """
        if self._active:
            raise BatchProcessorBusyError(
                "Batch processor is already running",
                context={"completed_batches": self.completed_batches, "total_batches": self.total_batches}
            )

        self._active = True
        try:
            batches = self.partition(items)
            self.total_items = len(items)
            self.total_batches = len(batches)
            self.processed_items = 0
            self.completed_batches = 0
            results: List[Optional[List[R]]] = [None] * len(batches)

            logger.info(
                f"Processing {len(items)} items in {len(batches)} batches "
                f"(size {self.config.batch_size}, {self.config.max_concurrent} concurrent)"
            )

            async def run_batch(index: int):
                batch_results = list(await process_fn(batches[index]))
                results[index] = batch_results
                self.processed_items += len(batches[index])
                self.completed_batches += 1

                if on_batch_complete is not None:
                    await _maybe_await(on_batch_complete(batch_results, index))
                if on_progress is not None:
                    await _maybe_await(on_progress(BatchProgress(
                        processed=self.processed_items,
                        total=self.total_items,
                        batch_index=index,
                        total_batches=self.total_batches,
                    )))

            step = self.config.max_concurrent
            for wave_start in range(0, len(batches), step):
                if self._aborted:
                    logger.info(f"Aborted before wave starting at batch {wave_start}")
                    break

                wave = range(wave_start, min(wave_start + step, len(batches)))
                outcomes = await asyncio.gather(
                    *(run_batch(i) for i in wave), return_exceptions=True
                )

                for index, outcome in zip(wave, outcomes):
                    if isinstance(outcome, BaseException):
                        logger.error(f"Batch {index} failed: {outcome}")
                        raise outcome

                is_last_wave = wave_start + step >= len(batches)
                if not is_last_wave and not self._aborted and self.config.delay_between_batches > 0:
                    await asyncio.sleep(self.config.delay_between_batches)

            return [r for batch in results if batch is not None for r in batch]
        finally:
            self._active = False
            self._aborted = False
