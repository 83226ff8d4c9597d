"""EventBus module."""

from .event_bus import EventBus, EventHandler, IEventBus, IEventStore, Subscription

__all__ = ["EventBus", "EventHandler", "IEventBus", "IEventStore", "Subscription"]
