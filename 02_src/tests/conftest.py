"""Pytest configuration and fixtures."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))


class FakeClock:
    """Manually advanced clock for monotonic and wall-clock consumers."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)
        self._mono = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._mono += seconds

    def set(self, when: datetime) -> None:
        self._mono += (when - self._now).total_seconds()
        self._now = when


@pytest.fixture
def clock():
    """Fake clock starting Monday 2025-01-06 10:00 UTC."""
    return FakeClock()


@pytest_asyncio.fixture
async def storage():
    """Create in-memory storage for testing."""
    from opsflow.storage import Storage

    st = Storage(":memory:")
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def event_bus(storage):
    """Create EventBus with storage."""
    from opsflow.event_bus import EventBus

    return EventBus(storage)


@pytest.fixture
def bare_bus():
    """EventBus without persistence."""
    from opsflow.event_bus import EventBus

    return EventBus()


@pytest.fixture
def tracker(storage, event_bus):
    """Create Tracker with storage and event bus."""
    from opsflow.tracker import Tracker

    return Tracker(event_bus=event_bus, storage=storage)


@pytest.fixture
def repository():
    """In-memory repository."""
    from opsflow.repository import InMemoryRepository

    return InMemoryRepository()


@pytest.fixture
def audit_log(storage):
    """AuditLog writing to in-memory storage."""
    from opsflow.actions import AuditLog

    return AuditLog(storage)


@pytest.fixture
def no_sleep():
    """Retry sleep that returns immediately and records delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def mock_llm():
    """Create mock LLM provider."""
    llm = Mock()
    llm.complete = AsyncMock(return_value='{"intent": "noop", "confidence": 0.9, "actions": []}')
    return llm


@pytest.fixture
def mock_decision_provider():
    """Decision provider returning a high-confidence no-op decision."""
    from opsflow.models import Action, ActionType, Decision

    provider = Mock()
    provider.decide = AsyncMock(
        return_value=Decision(
            intent="acknowledge",
            confidence=0.95,
            actions=[Action(type=ActionType.NO_ACTION)],
        )
    )
    return provider


@pytest.fixture
def mock_delivery():
    """Delivery service that accepts everything."""
    from opsflow.models import DeliveryResult

    delivery = Mock()
    for method in ("send_email", "send_sms", "send_push", "send_in_app"):
        setattr(
            delivery,
            method,
            AsyncMock(return_value=DeliveryResult(success=True, external_id="msg-1", status_code=202)),
        )
    return delivery
