"""Time-windowed suppression of repeated actions."""

import time
from typing import Callable, Protocol

from ..config import DeduplicationConfig
from ..logging_config import get_logger
from .store import IKeyedStore, InMemoryKeyedStore
from .sweeper import PeriodicSweeper

logger = get_logger(__name__)


class IDeduplicationCache(Protocol):
    """Suppresses keys seen within the dedup window."""

    def check_duplicate(self, key: str) -> bool:
        """True if key was recorded within the window."""
        ...

    def record(self, key: str) -> None:
        """Start a window for key unless one is already active."""
        ...

    def check_and_record(self, key: str) -> bool:
        """Return True for a duplicate; otherwise record key and return False."""
        ...

    def release(self, key: str) -> None:
        """Forget key so a failed attempt can be retried."""
        ...


class DeduplicationCache:
    """Stores ``first_seen_at`` per key.

    An entry suppresses repeats while ``now - first_seen_at <= window``. Recording
    an already-active key keeps its original timestamp, so a key has at most one
    active window.
    """

    def __init__(
        self,
        config: DeduplicationConfig | None = None,
        store: IKeyedStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or DeduplicationConfig()
        self._store = store if store is not None else InMemoryKeyedStore()
        self._clock = clock
        self._sweeper = PeriodicSweeper(
            "dedup_cache", self._config.sweep_interval_seconds, self.sweep
        )

    @property
    def window_seconds(self) -> float:
        return self._config.window_seconds

    def _active(self, key: str, now: float) -> bool:
        first_seen = self._store.get(key)
        if first_seen is None:
            return False
        if now - first_seen > self._config.window_seconds:
            self._store.delete(key)
            return False
        return True

    def check_duplicate(self, key: str) -> bool:
        return self._active(key, self._clock())

    def record(self, key: str) -> None:
        now = self._clock()
        if not self._active(key, now):
            self._store.set(key, now)

    def check_and_record(self, key: str) -> bool:
        now = self._clock()
        if self._active(key, now):
            logger.info("Duplicate suppressed: %s", key)
            return True
        self._store.set(key, now)
        return False

    def release(self, key: str) -> None:
        self._store.delete(key)

    def sweep(self) -> int:
        now = self._clock()
        window = self._config.window_seconds
        return self._store.sweep(lambda _key, first_seen: now - first_seen > window)

    def __len__(self) -> int:
        return len(self._store)

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
