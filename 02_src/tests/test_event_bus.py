"""Tests for EventBus."""

import asyncio

import pytest

from opsflow.models import (
    AgentPayload,
    CustomPayload,
    EmitContext,
    EventType,
    IntakePayload,
)


class TestEventBusSubscribe:
    """Tests for EventBus subscription."""

    def test_subscribe_returns_id(self, bare_bus):
        """Test that subscribe returns a subscription id and counts listeners."""
        async def handler(event):
            pass

        sub_id = bare_bus.subscribe(EventType.INTAKE_CREATED, handler)

        assert sub_id.startswith("sub_")
        assert bare_bus.listener_count("intake:created") == 1
        assert bare_bus.event_names() == ["intake:created"]

    def test_unsubscribe(self, bare_bus):
        """Test that unsubscribe removes the handler."""
        async def handler(event):
            pass

        sub_id = bare_bus.subscribe(EventType.INTAKE_CREATED, handler)

        assert bare_bus.unsubscribe(sub_id) is True
        assert bare_bus.unsubscribe(sub_id) is False
        assert bare_bus.listener_count(EventType.INTAKE_CREATED) == 0

    def test_unknown_event_type_rejected(self, bare_bus):
        """Test that unknown non-custom types raise ValueError."""
        async def handler(event):
            pass

        with pytest.raises(ValueError):
            bare_bus.subscribe("nonsense:thing", handler)

    def test_remove_all_listeners(self, bare_bus):
        """Test removing listeners for one type and for all."""
        async def handler(event):
            pass

        bare_bus.subscribe(EventType.INTAKE_CREATED, handler)
        bare_bus.subscribe(EventType.EMAIL_RECEIVED, handler)

        bare_bus.remove_all_listeners(EventType.INTAKE_CREATED)
        assert bare_bus.event_names() == ["email:received"]

        bare_bus.remove_all_listeners()
        assert bare_bus.event_names() == []


class TestEventBusEmit:
    """Tests for EventBus emission."""

    @pytest.mark.asyncio
    async def test_emit_reaches_subscribers(self, bare_bus):
        """Test that every subscriber receives the event."""
        calls = []

        async def h1(event):
            calls.append(("h1", event.payload.intake_id))

        async def h2(event):
            calls.append(("h2", event.payload.intake_id))

        bare_bus.subscribe(EventType.INTAKE_CREATED, h1)
        bare_bus.subscribe(EventType.INTAKE_CREATED, h2)

        result = await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))

        assert result.handlers_invoked == 2
        assert result.errors == []
        assert sorted(calls) == [("h1", "i1"), ("h2", "i1")]

    @pytest.mark.asyncio
    async def test_no_subscribers_succeeds(self, bare_bus):
        """Test that emitting with no subscribers succeeds with zero handlers."""
        result = await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))

        assert result.handlers_invoked == 0
        assert result.event_type == "intake:created"

    @pytest.mark.asyncio
    async def test_handlers_run_concurrently(self, bare_bus):
        """Test that handlers are invoked concurrently."""
        started = []
        release = asyncio.Event()

        async def waiting(event):
            started.append("waiting")
            await release.wait()

        async def releasing(event):
            started.append("releasing")
            release.set()

        bare_bus.subscribe(EventType.INTAKE_CREATED, waiting)
        bare_bus.subscribe(EventType.INTAKE_CREATED, releasing)

        result = await asyncio.wait_for(
            bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1")),
            timeout=1.0,
        )

        assert result.handlers_invoked == 2
        assert set(started) == {"waiting", "releasing"}

    @pytest.mark.asyncio
    async def test_handler_error_is_isolated(self, bare_bus):
        """Test that a failing handler does not affect other handlers."""
        calls = []

        async def failing(event):
            raise RuntimeError("boom")

        async def working(event):
            calls.append(event.id)

        bare_bus.subscribe(EventType.INTAKE_CREATED, failing)
        bare_bus.subscribe(EventType.INTAKE_CREATED, working)

        result = await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))

        assert len(calls) == 1
        assert len(result.errors) == 1
        assert "boom" in result.errors[0]
        assert bare_bus.get_stats().total_errors == 1

    @pytest.mark.asyncio
    async def test_payload_type_checked(self, bare_bus):
        """Test that a payload of the wrong family is rejected."""
        with pytest.raises(TypeError):
            await bare_bus.emit(EventType.INTAKE_CREATED, CustomPayload(name="x"))

    @pytest.mark.asyncio
    async def test_wildcard_emit_rejected(self, bare_bus):
        """Test that the wildcard cannot be emitted."""
        with pytest.raises(ValueError):
            await bare_bus.emit("*", CustomPayload(name="x"))

    @pytest.mark.asyncio
    async def test_context_propagates(self, bare_bus):
        """Test that source, correlation id and org id reach the event."""
        received = []

        async def handler(event):
            received.append(event)

        bare_bus.subscribe(EventType.AGENT_DECISION_MADE, handler)

        await bare_bus.emit(
            EventType.AGENT_DECISION_MADE,
            AgentPayload(decision_id="d1", state="EXECUTED"),
            EmitContext(source="agent", correlation_id="corr-1", org_id="org-1"),
        )

        assert received[0].source == "agent"
        assert received[0].correlation_id == "corr-1"
        assert received[0].org_id == "org-1"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, bare_bus):
        """Test that a correlation id is generated when absent."""
        received = []

        async def handler(event):
            received.append(event)

        bare_bus.subscribe(EventType.INTAKE_CREATED, handler)
        await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))

        assert received[0].correlation_id

    @pytest.mark.asyncio
    async def test_custom_event_type(self, bare_bus):
        """Test that custom:<name> types carry CustomPayload."""
        received = []

        async def handler(event):
            received.append(event)

        bare_bus.subscribe("custom:invoice_paid", handler)
        await bare_bus.emit("custom:invoice_paid", CustomPayload(name="invoice_paid", data={"n": 1}))

        assert received[0].payload.data == {"n": 1}


class TestEventBusOnce:
    """Tests for single-shot subscriptions."""

    @pytest.mark.asyncio
    async def test_once_fires_once(self, bare_bus):
        """Test that a once handler is removed after it succeeds."""
        calls = []

        async def handler(event):
            calls.append(event.id)

        bare_bus.once(EventType.INTAKE_CREATED, handler)

        await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))
        await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i2"))

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_once_kept_after_failure(self, bare_bus):
        """Test that a failing once handler stays subscribed."""
        async def handler(event):
            raise RuntimeError("not yet")

        bare_bus.once(EventType.INTAKE_CREATED, handler)
        await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))

        assert bare_bus.listener_count(EventType.INTAKE_CREATED) == 1


class TestEventBusWildcard:
    """Tests for subscribe_any."""

    @pytest.mark.asyncio
    async def test_wildcard_receives_all(self, bare_bus):
        """Test that a wildcard subscriber sees every event type."""
        types = []

        async def handler(event):
            types.append(event.type)

        bare_bus.subscribe_any(handler)
        await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))
        await bare_bus.emit(EventType.AGENT_ERROR, AgentPayload(decision_id="d", state="FAILED"))

        assert types == ["intake:created", "agent:error"]


class TestEventBusHistory:
    """Tests for history, replay and stats."""

    @pytest.mark.asyncio
    async def test_history_bounded_and_filtered(self, storage):
        """Test that history keeps only the latest events and filters by type."""
        from opsflow.event_bus import EventBus

        bus = EventBus(storage, history_size=2)
        await bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))
        await bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i2"))
        await bus.emit(EventType.AGENT_ERROR, AgentPayload(decision_id="d", state="FAILED"))

        history = bus.get_history()
        assert [e.type for e in history] == ["intake:created", "agent:error"]
        assert [e.payload.intake_id for e in bus.get_history(event_types=["intake:created"])] == ["i2"]
        assert len(bus.get_history(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_events_persisted(self, event_bus, storage):
        """Test that emitted events are written to storage."""
        await event_bus.emit(
            EventType.INTAKE_CREATED,
            IntakePayload(intake_id="i1"),
            EmitContext(correlation_id="corr-9"),
        )

        [stored] = await storage.get_bus_events(correlation_id="corr-9")
        assert stored.payload.intake_id == "i1"

    @pytest.mark.asyncio
    async def test_replay_keeps_correlation(self, bare_bus):
        """Test that replayed events keep correlation and are tagged."""
        received = []

        await bare_bus.emit(
            EventType.INTAKE_CREATED,
            IntakePayload(intake_id="i1"),
            EmitContext(correlation_id="corr-1"),
        )

        async def handler(event):
            received.append(event)

        bare_bus.subscribe(EventType.INTAKE_CREATED, handler)
        original = bare_bus.get_history()
        await bare_bus.replay(original)

        assert received[0].correlation_id == "corr-1"
        assert received[0].metadata["replayed"] is True
        assert received[0].metadata["original_event_id"] == original[0].id
        assert received[0].id != original[0].id

    @pytest.mark.asyncio
    async def test_stats(self, bare_bus):
        """Test emission counters."""
        async def handler(event):
            pass

        bare_bus.subscribe(EventType.INTAKE_CREATED, handler)
        await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))
        await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i2"))

        stats = bare_bus.get_stats()
        assert stats.total_events_emitted == 2
        assert stats.total_handlers_invoked == 2
        assert stats.event_counts == {"intake:created": 2}
        assert stats.subscription_counts == {"intake:created": 1}

    @pytest.mark.asyncio
    async def test_clear_history(self, bare_bus):
        """Test that clear_history empties the buffer."""
        await bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))

        bare_bus.clear_history()

        assert bare_bus.get_history() == []

    @pytest.mark.asyncio
    async def test_history_follows_emit_order(self, bare_bus):
        """Test that a slow handler does not reorder history."""
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow(event):
            entered.set()
            await release.wait()

        bare_bus.subscribe(EventType.INTAKE_CREATED, slow)

        first = asyncio.create_task(
            bare_bus.emit(EventType.INTAKE_CREATED, IntakePayload(intake_id="i1"))
        )
        await asyncio.wait_for(entered.wait(), timeout=1.0)

        assert [e.type for e in bare_bus.get_history()] == ["intake:created"]

        await bare_bus.emit(EventType.AGENT_ERROR, AgentPayload(decision_id="d", state="FAILED"))
        release.set()
        await first

        assert [e.type for e in bare_bus.get_history()] == ["intake:created", "agent:error"]
