"""Background task that calls a sweep function on a fixed interval."""

import asyncio
from typing import Callable

from ..logging_config import get_logger

logger = get_logger(__name__)


class PeriodicSweeper:
    """Runs ``sweep()`` every ``interval_seconds`` until stopped."""

    def __init__(self, name: str, interval_seconds: float, sweep: Callable[[], int]):
        self._name = name
        self._interval = interval_seconds
        self._sweep = sweep
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                evicted = self._sweep()
                if evicted:
                    logger.debug("%s sweep evicted %s entries", self._name, evicted)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("%s sweep error: %s", self._name, e, exc_info=True)
