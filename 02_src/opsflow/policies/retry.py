"""Exponential-backoff retry executor."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..config import RetryConfig
from ..errors import ErrorCode, ErrorInfo, classify_error
from ..logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class RetryOutcome:
    """Result of ``RetryPolicy.execute``.

    When attempts are exhausted ``error.retryable`` is False even if every
    intermediate failure was retryable.
    """

    success: bool
    value: Any = None
    error: ErrorInfo | None = None
    attempts: int = 0
    delays_ms: list[int] = field(default_factory=list)


def compute_delay(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Delay before the retry that follows ``attempt`` (1-based)."""
    return min(base_delay_ms * 2 ** (attempt - 1), max_delay_ms)


class RetryPolicy:
    """Runs an async callable until it succeeds, fails permanently or runs out of attempts."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        classify: Callable[[BaseException], ErrorInfo] = classify_error,
    ):
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._classify = classify

    @property
    def config(self) -> RetryConfig:
        return self._config

    def delays(self, config: RetryConfig | None = None) -> list[int]:
        """Delays that would be used between attempts under config."""
        cfg = config or self._config
        return [
            compute_delay(attempt, cfg.base_delay_ms, cfg.max_delay_ms)
            for attempt in range(1, cfg.max_attempts)
        ]

    async def execute(
        self,
        fn: Callable[[], Awaitable[Any]],
        config: RetryConfig | None = None,
        operation: str = "operation",
    ) -> RetryOutcome:
        """Run fn under the retry budget.

        A ``total_timeout_ms`` on the config bounds the whole loop, sleeps included.
        """
        cfg = config or self._config
        state = RetryOutcome(success=False)

        if cfg.total_timeout_ms is None:
            return await self._run(fn, cfg, operation, state)

        try:
            return await asyncio.wait_for(
                self._run(fn, cfg, operation, state),
                timeout=cfg.total_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%s exceeded retry budget of %sms after %s attempts",
                operation,
                cfg.total_timeout_ms,
                state.attempts,
            )
            state.success = False
            state.error = ErrorInfo(
                code=ErrorCode.EXECUTION_TIMEOUT,
                message=f"{operation} exceeded {cfg.total_timeout_ms}ms",
                retryable=False,
            )
            return state

    async def _run(
        self,
        fn: Callable[[], Awaitable[Any]],
        cfg: RetryConfig,
        operation: str,
        state: RetryOutcome,
    ) -> RetryOutcome:
        max_attempts = max(1, cfg.max_attempts)

        for attempt in range(1, max_attempts + 1):
            state.attempts = attempt
            try:
                state.value = await fn()
                state.success = True
                state.error = None
                return state
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = self._classify(e)
                state.error = error

                if not error.retryable:
                    logger.warning(
                        "%s failed with non-retryable %s: %s",
                        operation,
                        error.code.value,
                        error.message,
                    )
                    return state

                if attempt == max_attempts:
                    break

                delay = compute_delay(attempt, cfg.base_delay_ms, cfg.max_delay_ms)
                if error.code == ErrorCode.RATE_LIMITED and error.retry_after_ms:
                    delay = max(delay, error.retry_after_ms)
                state.delays_ms.append(delay)

                logger.info(
                    "%s attempt %s/%s failed (%s), retrying in %sms",
                    operation,
                    attempt,
                    max_attempts,
                    error.code.value,
                    delay,
                )
                await self._sleep(delay / 1000)

        logger.error(
            "%s failed after %s attempts: %s",
            operation,
            state.attempts,
            state.error.message if state.error else "unknown",
        )
        if state.error:
            state.error = state.error.final()
        return state
