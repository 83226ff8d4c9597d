"""Tests for RetryPolicy."""

import asyncio

import httpx
import pytest

from opsflow.config import RetryConfig
from opsflow.errors import ErrorCode, OperationError
from opsflow.policies import RetryPolicy, compute_delay


class TestRetryDelays:
    """Tests for backoff computation."""

    def test_exponential_delays(self):
        """Test that delays double from the base and cap at the maximum."""
        delays = [compute_delay(a, 1000, 30000) for a in range(1, 8)]

        assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000]

    def test_delays_for_config(self):
        """Test that delays() lists one delay per retry."""
        policy = RetryPolicy(RetryConfig(max_attempts=5, base_delay_ms=1000, max_delay_ms=30000))

        assert policy.delays() == [1000, 2000, 4000, 8000]


class TestRetryExecute:
    """Tests for the retry loop."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, no_sleep):
        """Test that a successful call returns its value after one attempt."""
        policy = RetryPolicy(RetryConfig(), sleep=no_sleep)

        async def fn():
            return 42

        outcome = await policy.execute(fn)

        assert outcome.success is True
        assert outcome.value == 42
        assert outcome.attempts == 1
        no_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, no_sleep):
        """Test that retryable failures are retried with backoff."""
        policy = RetryPolicy(RetryConfig(max_attempts=3), sleep=no_sleep)
        calls = []

        async def fn():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        outcome = await policy.execute(fn)

        assert outcome.success is True
        assert outcome.attempts == 3
        assert outcome.delays_ms == [1000, 2000]
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_stops_immediately(self, no_sleep):
        """Test that a non-retryable error on attempt 1 yields one attempt."""
        policy = RetryPolicy(RetryConfig(max_attempts=5), sleep=no_sleep)

        async def fn():
            raise OperationError(ErrorCode.VALIDATION_ERROR, "bad input")

        outcome = await policy.execute(fn)

        assert outcome.success is False
        assert outcome.attempts == 1
        assert outcome.error.code == ErrorCode.VALIDATION_ERROR
        no_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_exhaustion_marks_final_error_not_retryable(self, no_sleep):
        """Test that exhausting attempts returns retryable=False."""
        policy = RetryPolicy(RetryConfig(max_attempts=5), sleep=no_sleep)

        async def fn():
            raise httpx.ConnectError("unreachable")

        outcome = await policy.execute(fn)

        assert outcome.success is False
        assert outcome.attempts == 5
        assert outcome.delays_ms == [1000, 2000, 4000, 8000]
        assert outcome.error.code == ErrorCode.TRANSIENT_DELIVERY
        assert outcome.error.retryable is False

    @pytest.mark.asyncio
    async def test_rate_limited_honours_retry_after(self, no_sleep):
        """Test that a longer retry-after overrides the computed delay."""
        policy = RetryPolicy(RetryConfig(max_attempts=2), sleep=no_sleep)

        async def fn():
            raise OperationError(ErrorCode.RATE_LIMITED, "slow down", retry_after_ms=5000)

        outcome = await policy.execute(fn)

        assert outcome.delays_ms == [5000]
        no_sleep.assert_awaited_once_with(5.0)

    @pytest.mark.asyncio
    async def test_total_timeout(self):
        """Test that the outer budget aborts a slow retry loop."""
        policy = RetryPolicy(
            RetryConfig(max_attempts=3, base_delay_ms=10, total_timeout_ms=50)
        )

        async def fn():
            await asyncio.sleep(1)

        outcome = await policy.execute(fn, operation="slow_call")

        assert outcome.success is False
        assert outcome.error.code == ErrorCode.EXECUTION_TIMEOUT
        assert outcome.error.retryable is False

    @pytest.mark.asyncio
    async def test_per_call_config(self, no_sleep):
        """Test that a config passed to execute overrides the default."""
        policy = RetryPolicy(RetryConfig(max_attempts=5), sleep=no_sleep)

        async def fn():
            raise TimeoutError()

        outcome = await policy.execute(fn, RetryConfig(max_attempts=2))

        assert outcome.attempts == 2
        assert outcome.error.code == ErrorCode.TIMEOUT
