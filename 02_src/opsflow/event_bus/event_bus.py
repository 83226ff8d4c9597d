"""EventBus implementation for typed pub/sub between adapters, agent and executors."""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from ..logging_config import get_logger, log_context
from ..models import (
    BusStats,
    EmitContext,
    EmitResult,
    Event,
    EventHistoryEntry,
    EventPayload,
    EventType,
    HandlerResult,
)
from ..models.events import WILDCARD, normalize_event_type, payload_type_for

logger = get_logger(__name__)


EventHandler = Callable[[Event], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    event_type: str
    handler: EventHandler
    once: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class IEventStore(Protocol):
    """Optional persistence for emitted events."""

    async def save_bus_event(self, event: Event) -> None:
        ...


class IEventBus(Protocol):
    """In-process pub/sub with history and correlation-id propagation."""

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> str:
        """Subscribe a handler to an event type. Returns the subscription id."""
        ...

    def subscribe_any(self, handler: EventHandler) -> str:
        """Subscribe a handler to every event."""
        ...

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription."""
        ...

    async def emit(
        self,
        event_type: EventType | str,
        payload: EventPayload,
        context: EmitContext | None = None,
    ) -> EmitResult:
        """Invoke every subscriber concurrently and wait for all of them."""
        ...

    def get_history(
        self, limit: int | None = None, event_types: list[str] | None = None
    ) -> list[Event]:
        """Recent events, oldest first."""
        ...


class EventBus:
    """In-memory pub/sub event bus.

    Handler failures are captured into ``EmitResult.errors`` and never retried
    here. An event with no subscribers still succeeds with zero handlers invoked.
    """

    def __init__(self, storage: IEventStore | None = None, history_size: int = 100):
        self._storage = storage
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._history: deque[EventHistoryEntry] = deque(maxlen=history_size)
        self._event_counts: dict[str, int] = {}
        self._total_emitted = 0
        self._total_handlers_invoked = 0
        self._total_errors = 0

    # Subscriptions

    def _add(self, event_type: EventType | str, handler: EventHandler, once: bool) -> str:
        key = normalize_event_type(event_type)
        subscription = Subscription(
            id=f"sub_{uuid.uuid4().hex[:8]}",
            event_type=key,
            handler=handler,
            once=once,
        )
        self._subscriptions.setdefault(key, []).append(subscription)
        logger.debug("Subscribed %s to %s", subscription.id, key)
        return subscription.id

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> str:
        """Subscribe a handler to an event type."""
        return self._add(event_type, handler, once=False)

    on = subscribe

    def once(self, event_type: EventType | str, handler: EventHandler) -> str:
        """Subscribe for a single successful invocation."""
        return self._add(event_type, handler, once=True)

    def subscribe_any(self, handler: EventHandler) -> str:
        """Subscribe a handler to every event type."""
        return self._add(WILDCARD, handler, once=False)

    def unsubscribe(self, subscription_id: str) -> bool:
        for key, subscriptions in self._subscriptions.items():
            for subscription in subscriptions:
                if subscription.id == subscription_id:
                    subscriptions.remove(subscription)
                    if not subscriptions:
                        del self._subscriptions[key]
                    return True
        return False

    def remove_all_listeners(self, event_type: EventType | str | None = None) -> None:
        if event_type is None:
            self._subscriptions.clear()
        else:
            self._subscriptions.pop(normalize_event_type(event_type), None)

    def listener_count(self, event_type: EventType | str) -> int:
        return len(self._subscriptions.get(normalize_event_type(event_type), []))

    def event_names(self) -> list[str]:
        return [key for key, subs in self._subscriptions.items() if subs]

    # Emission

    async def emit(
        self,
        event_type: EventType | str,
        payload: EventPayload,
        context: EmitContext | None = None,
    ) -> EmitResult:
        """Publish an event: calls subscriber callbacks, persists to the event store."""
        key = normalize_event_type(event_type)
        if key == WILDCARD:
            raise ValueError("Cannot emit the wildcard event type")

        expected = payload_type_for(key)
        if not isinstance(payload, expected):
            raise TypeError(
                f"{key} expects {expected.__name__}, got {type(payload).__name__}"
            )

        ctx = context or EmitContext()
        event = Event(
            id=str(uuid.uuid4()),
            type=key,
            payload=payload,
            source=ctx.source,
            correlation_id=ctx.correlation_id or str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc),
            org_id=ctx.org_id,
            metadata=dict(ctx.metadata),
        )

        result = await self._dispatch(event)

        if self._storage:
            try:
                await self._storage.save_bus_event(event)
            except Exception as e:
                logger.error(
                    "Failed to persist event %s: %s",
                    event.id,
                    e,
                    extra=log_context(event.correlation_id, event_type=key),
                )

        return result

    async def _dispatch(self, event: Event) -> EmitResult:
        subscriptions = list(self._subscriptions.get(event.type, [])) + list(
            self._subscriptions.get(WILDCARD, [])
        )

        # Recorded in emit order; filled in once handlers finish
        entry = EventHistoryEntry(event=event, handlers_invoked=0, processed=False)
        self._history.append(entry)

        # Call all handlers concurrently
        results: list[HandlerResult] = []
        if subscriptions:
            results = await asyncio.gather(
                *[self._invoke(sub, event) for sub in subscriptions]
            )

        for subscription, handler_result in zip(subscriptions, results):
            if subscription.once and handler_result.success:
                self.unsubscribe(subscription.id)

        errors = [r.error for r in results if r.error]

        self._total_emitted += 1
        self._total_handlers_invoked += len(results)
        self._total_errors += len(errors)
        self._event_counts[event.type] = self._event_counts.get(event.type, 0) + 1
        entry.handlers_invoked = len(results)
        entry.errors = errors
        entry.processed = True

        logger.debug(
            "Emitted %s to %s handlers",
            event.type,
            len(results),
            extra=log_context(event.correlation_id, event_id=event.id),
        )

        return EmitResult(
            event_id=event.id,
            event_type=event.type,
            timestamp=event.timestamp,
            handlers_invoked=len(results),
            results=results,
            errors=errors,
        )

    async def _invoke(self, subscription: Subscription, event: Event) -> HandlerResult:
        started = time.perf_counter()
        try:
            await subscription.handler(event)
            return HandlerResult(
                subscription_id=subscription.id,
                success=True,
                execution_time_ms=(time.perf_counter() - started) * 1000,
            )
        except Exception as e:
            logger.error(
                "Error in handler %s for %s: %s",
                subscription.id,
                event.type,
                e,
                exc_info=True,
                extra=log_context(event.correlation_id, event_id=event.id),
            )
            return HandlerResult(
                subscription_id=subscription.id,
                success=False,
                execution_time_ms=(time.perf_counter() - started) * 1000,
                error=f"{subscription.id}: {e}",
            )

    # History

    def get_history(
        self, limit: int | None = None, event_types: list[str] | None = None
    ) -> list[Event]:
        events = [entry.event for entry in self._history]
        if event_types:
            wanted = {normalize_event_type(t) for t in event_types}
            events = [e for e in events if e.type in wanted]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    async def replay(self, events: list[Event]) -> list[EmitResult]:
        """Re-invoke current subscribers with historical events.

        Diagnostic only: replayed events keep their correlation id, are tagged in
        metadata and are not persisted again.
        """
        results = []
        for original in events:
            replayed = replace(
                original,
                id=str(uuid.uuid4()),
                timestamp=datetime.now(timezone.utc),
                metadata={
                    **original.metadata,
                    "replayed": True,
                    "original_event_id": original.id,
                    "original_timestamp": original.timestamp.isoformat(),
                },
            )
            results.append(await self._dispatch(replayed))
        return results

    def clear_history(self) -> None:
        self._history.clear()

    def get_stats(self) -> BusStats:
        return BusStats(
            total_events_emitted=self._total_emitted,
            total_handlers_invoked=self._total_handlers_invoked,
            total_errors=self._total_errors,
            event_counts=dict(self._event_counts),
            subscription_counts={
                key: len(subs) for key, subs in self._subscriptions.items()
            },
            history_size=len(self._history),
        )
