"""
Unit tests for the retry policy
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from analysis.retry import RetryPolicy
from core.exceptions import QuoteAuthenticationError, QuoteNetworkError, RetryableError


class TestRetryPolicy:

    def test_delay_doubles_per_failed_attempt(self):
        policy = RetryPolicy(max_attempts=4, backoff_base=1.0)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_delay_capped(self):
        policy = RetryPolicy(backoff_base=1.0, max_delay=3.0)

        assert policy.delay_for(5) == 3.0

    def test_at_least_one_attempt(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=[QuoteNetworkError("reset"), QuoteNetworkError("reset"), "ok"])
        on_retry = MagicMock()
        policy = RetryPolicy(max_attempts=3, backoff_base=0.5, retry_on=(RetryableError,), sleep=sleep)

        assert await policy.run(operation, on_retry=on_retry) == "ok"
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
        assert on_retry.call_count == 2

    @pytest.mark.asyncio
    async def test_reraises_last_error_when_exhausted(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=QuoteNetworkError("down"))
        policy = RetryPolicy(max_attempts=3, backoff_base=0, retry_on=(RetryableError,), sleep=sleep)

        with pytest.raises(QuoteNetworkError):
            await policy.run(operation)

        assert operation.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=QuoteAuthenticationError("denied"))
        policy = RetryPolicy(max_attempts=3, retry_on=(RetryableError,), sleep=sleep)

        with pytest.raises(QuoteAuthenticationError):
            await policy.run(operation)

        assert operation.await_count == 1
        sleep.assert_not_awaited()
