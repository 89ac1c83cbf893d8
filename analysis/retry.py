"""
Named retry policy with exponential backoff
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Retry an async operation a bounded number of times.

    ``max_attempts`` counts every call including the first. After the n-th
    failed attempt the policy sleeps ``backoff_base * 2 ** n`` seconds, so the
    default base of 1.0 waits 2s, then 4s.

    Attributes:
        max_attempts: Total attempts before giving up (>= 1)
        backoff_base: Seconds multiplied by 2^attempt between attempts
        retry_on: Exception types worth another attempt; others propagate at once
        max_delay: Optional cap on a single backoff sleep
    """

    max_attempts: int = 3
    backoff_base: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    max_delay: Optional[float] = None
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, failed_attempts: int) -> float:
        delay = self.backoff_base * (2 ** failed_attempts)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Await ``operation()`` until it succeeds or attempts run out.

        Raises:
            The last exception raised by ``operation`` once attempts are
            exhausted, or immediately when it is not in ``retry_on``.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except self.retry_on as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.warning(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}). "
                    f"Retrying in {delay:.2f} seconds: {e}"
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                await self.sleep(delay)
