"""Sliding-window rate limiter keyed by recipient or workflow."""

import math
import time
from typing import Any, Callable, Protocol

from ..config import RateLimitConfig
from ..logging_config import get_logger
from ..models import RateLimitDecision
from .store import IKeyedStore, InMemoryKeyedStore
from .sweeper import PeriodicSweeper

logger = get_logger(__name__)

GLOBAL_KEY = "__global__"
HOUR_SECONDS = 3600.0
DAY_SECONDS = 86400.0


def is_urgent(priority: Any) -> bool:
    """Urgent is the string/enum value "urgent" or a numeric priority of 5."""
    if priority is None:
        return False
    if isinstance(priority, int):
        return priority >= 5
    return str(getattr(priority, "value", priority)).lower() == "urgent"


class IRateLimiter(Protocol):
    """Per-key sliding windows plus a global ceiling."""

    def is_allowed(self, key: str, priority: Any = None) -> RateLimitDecision:
        """Check without recording."""
        ...

    def record(self, key: str) -> None:
        """Record one use of key (and of the global window)."""
        ...

    def try_acquire(self, key: str, priority: Any = None) -> RateLimitDecision:
        """Check and record in one step."""
        ...


class RateLimiter:
    """Timestamp-list sliding windows.

    check and record never await, so under cooperative scheduling two racing
    callers cannot both pass a check that should admit only one.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        store: IKeyedStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or RateLimitConfig()
        self._store = store if store is not None else InMemoryKeyedStore()
        self._clock = clock
        self._sweeper = PeriodicSweeper(
            "rate_limiter", self._config.sweep_interval_seconds, self.sweep
        )

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _windows(self, urgent: bool) -> list[tuple[str, float, int]]:
        cfg = self._config
        windows = []
        if cfg.per_window is not None:
            limit = cfg.per_window + (cfg.urgent_burst if urgent else 0)
            windows.append(("per_window", cfg.window_seconds, limit))
        if cfg.per_hour is not None:
            windows.append(("per_hour", HOUR_SECONDS, cfg.per_hour))
        if cfg.per_day is not None:
            windows.append(("per_day", DAY_SECONDS, cfg.per_day))
        return windows

    def _retention(self) -> float:
        """Widest window that still has a limit attached."""
        cfg = self._config
        spans = [cfg.window_seconds]
        if cfg.per_hour is not None:
            spans.append(HOUR_SECONDS)
        if cfg.per_day is not None:
            spans.append(DAY_SECONDS)
        return max(spans)

    def _timestamps(self, key: str, now: float, retention: float) -> list[float]:
        """Load and lazily prune one key; empty keys are dropped from the store."""
        stamps = self._store.get(key)
        if not stamps:
            return []
        kept = [ts for ts in stamps if now - ts < retention]
        if kept:
            if len(kept) != len(stamps):
                self._store.set(key, kept)
        else:
            self._store.delete(key)
        return kept

    @staticmethod
    def _check_window(
        stamps: list[float], now: float, span: float, limit: int
    ) -> int | None:
        """Return retry-after ms if the window is full, else None."""
        in_window = [ts for ts in stamps if now - ts < span]
        if len(in_window) < limit:
            return None
        if limit <= 0:
            return int(span * 1000)
        blocking = in_window[len(in_window) - limit]
        return max(0, math.ceil((blocking + span - now) * 1000))

    def is_allowed(self, key: str, priority: Any = None) -> RateLimitDecision:
        now = self._clock()
        cfg = self._config

        if cfg.global_per_window is not None:
            global_stamps = self._timestamps(GLOBAL_KEY, now, cfg.window_seconds)
            retry = self._check_window(
                global_stamps, now, cfg.window_seconds, cfg.global_per_window
            )
            if retry is not None:
                return RateLimitDecision(allowed=False, retry_after_ms=retry, limit="global")

        stamps = self._timestamps(key, now, self._retention())
        for name, span, limit in self._windows(is_urgent(priority)):
            retry = self._check_window(stamps, now, span, limit)
            if retry is not None:
                return RateLimitDecision(allowed=False, retry_after_ms=retry, limit=name)

        return RateLimitDecision(allowed=True)

    def record(self, key: str) -> None:
        now = self._clock()
        stamps = self._store.get(key) or []
        self._store.set(key, stamps + [now])
        if self._config.global_per_window is not None:
            global_stamps = self._store.get(GLOBAL_KEY) or []
            self._store.set(GLOBAL_KEY, global_stamps + [now])

    def try_acquire(self, key: str, priority: Any = None) -> RateLimitDecision:
        decision = self.is_allowed(key, priority)
        if decision.allowed:
            self.record(key)
        else:
            logger.warning(
                "Rate limit exceeded for %s (%s), retry after %sms",
                key,
                decision.limit,
                decision.retry_after_ms,
            )
        return decision

    def get_stats(self, key: str) -> dict:
        now = self._clock()
        stamps = self._timestamps(key, now, self._retention())
        in_window = [ts for ts in stamps if now - ts < self._config.window_seconds]
        limit = self._config.per_window
        return {
            "requests_in_window": len(in_window),
            "remaining": None if limit is None else max(0, limit - len(in_window)),
        }

    def sweep(self) -> int:
        """Prune every key; keys whose timestamp lists empty out are removed."""
        now = self._clock()
        retention = self._retention()
        removed = 0
        for key in self._store.keys():
            before = self._store.get(key) is not None
            self._timestamps(key, now, retention)
            if before and self._store.get(key) is None:
                removed += 1
        return removed

    def tracked_keys(self) -> int:
        return len(self._store)

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
