"""Tracker implementation for creating TraceEvents."""

import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..event_bus import IEventBus
from ..logging_config import get_logger
from ..models import Event, TraceEvent
from ..storage import IStorage

logger = get_logger(__name__)


class ITracker(Protocol):
    """Creating TraceEvents. Two channels: EventBus subscription + direct calls."""

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to Storage."""
        ...


class Tracker:
    """Creates TraceEvents via a wildcard EventBus subscription and direct track() calls."""

    def __init__(self, event_bus: IEventBus, storage: IStorage):
        self._event_bus = event_bus
        self._storage = storage
        self._subscription_id: str | None = None

    async def start(self) -> None:
        """Subscribe to every event on the bus."""
        if self._subscription_id is None:
            self._subscription_id = self._event_bus.subscribe_any(self._handle_event)

    async def _handle_event(self, event: Event) -> None:
        payload_summary = str(event.payload)[:100]

        await self.track(
            event_type="bus_event_emitted",
            actor=event.source,
            data={
                "event_id": event.id,
                "type": event.type,
                "correlation_id": event.correlation_id,
                "org_id": event.org_id,
                "payload_summary": payload_summary,
            },
        )

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to Storage."""
        trace_event = TraceEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            actor=actor,
            data=data,
            timestamp=datetime.now(timezone.utc),
        )
        await self._storage.save_trace_event(trace_event)

    async def stop(self) -> None:
        """Drop the bus subscription."""
        if self._subscription_id is not None:
            self._event_bus.unsubscribe(self._subscription_id)
            self._subscription_id = None
