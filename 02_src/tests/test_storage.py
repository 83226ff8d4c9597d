"""Tests for Storage."""

from datetime import datetime, timedelta, timezone

import pytest

from opsflow.models import (
    ActorType,
    AuditLogEntry,
    EmailPayload,
    Event,
    JobStatus,
    PerformedBy,
    ScheduledJob,
    TraceEvent,
)
from opsflow.storage import Storage


class TestStorageInit:
    """Tests for Storage initialization."""

    @pytest.mark.asyncio
    async def test_init_creates_tables(self, storage):
        """Test that init creates all tables."""
        async with storage._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ) as cursor:
            tables = [row[0] for row in await cursor.fetchall()]
        for table in ("records", "audit_log", "trace_events", "bus_events", "scheduled_jobs"):
            assert table in tables

    @pytest.mark.asyncio
    async def test_use_before_init_raises(self):
        """Test that methods fail clearly before init()."""
        st = Storage(":memory:")

        with pytest.raises(RuntimeError, match="Storage not initialized"):
            await st.find("anything", "1")


class TestStorageRecords:
    """Tests for the repository surface."""

    @pytest.mark.asyncio
    async def test_create_generates_id(self, storage):
        """Test that create assigns an id and timestamps."""
        record = await storage.create("intakes", {"title": "Leak"})

        assert record["id"]
        assert record["created_at"]
        assert await storage.find("intakes", record["id"]) == record

    @pytest.mark.asyncio
    async def test_update_merges(self, storage):
        """Test that update merges changes into the stored record."""
        await storage.create("intakes", {"id": "i1", "title": "Leak", "status": "NEW"})

        updated = await storage.update("intakes", "i1", {"status": "ASSIGNED"})

        assert updated["title"] == "Leak"
        assert updated["status"] == "ASSIGNED"
        assert (await storage.find("intakes", "i1"))["status"] == "ASSIGNED"

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, storage):
        """Test that updating an unknown record returns None."""
        assert await storage.update("intakes", "nope", {"x": 1}) is None

    @pytest.mark.asyncio
    async def test_find_many_filters(self, storage):
        """Test equality and membership filters."""
        await storage.create("tasks", {"id": "t1", "status": "open", "owner": "a"})
        await storage.create("tasks", {"id": "t2", "status": "done", "owner": "a"})
        await storage.create("tasks", {"id": "t3", "status": "open", "owner": "b"})

        open_a = await storage.find_many("tasks", {"status": "open", "owner": "a"})
        either = await storage.find_many("tasks", {"owner": ["a", "b"]}, limit=2)

        assert [r["id"] for r in open_a] == ["t1"]
        assert len(either) == 2
        assert await storage.count("tasks") == 3
        assert await storage.count("tasks", {"status": "open"}) == 2

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, storage):
        """Test that the same id can exist in two collections."""
        await storage.create("a", {"id": "x", "v": 1})
        await storage.create("b", {"id": "x", "v": 2})

        assert (await storage.find("a", "x"))["v"] == 1
        assert (await storage.find("b", "x"))["v"] == 2

    @pytest.mark.asyncio
    async def test_delete(self, storage):
        """Test that delete removes and reports whether anything was removed."""
        await storage.create("a", {"id": "x"})

        assert await storage.delete("a", "x") is True
        assert await storage.delete("a", "x") is False
        assert await storage.find("a", "x") is None


class TestStorageAudit:
    """Tests for audit entries."""

    @pytest.mark.asyncio
    async def test_save_and_query(self, storage):
        """Test round trip with filters, newest first."""
        base = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)
        for i in range(3):
            await storage.save_audit_entry(
                AuditLogEntry(
                    entity_type="intake",
                    entity_id="i1" if i < 2 else "i2",
                    action="ASSIGN",
                    performed_by=PerformedBy(type=ActorType.AGENT, id="agent"),
                    timestamp=base + timedelta(minutes=i),
                    previous_state={"status": "NEW"},
                    new_state={"status": "ASSIGNED"},
                    correlation_id="corr-1",
                )
            )

        entries = await storage.get_audit_entries(entity_id="i1")

        assert len(entries) == 2
        assert entries[0].timestamp > entries[1].timestamp
        assert entries[0].performed_by.type == ActorType.AGENT
        assert entries[0].new_state == {"status": "ASSIGNED"}
        assert len(await storage.get_audit_entries(correlation_id="corr-1")) == 3


class TestStorageTraceEvents:
    """Tests for trace events."""

    @pytest.mark.asyncio
    async def test_filters(self, storage):
        """Test event type, actor and after filters."""
        base = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)
        await storage.save_trace_event(
            TraceEvent(id="t1", event_type="decision_made", actor="agent", data={}, timestamp=base)
        )
        await storage.save_trace_event(
            TraceEvent(
                id="t2",
                event_type="bus_event_emitted",
                actor="webhook",
                data={"n": 1},
                timestamp=base + timedelta(seconds=5),
            )
        )

        assert [e.id for e in await storage.get_trace_events(actor="agent")] == ["t1"]
        assert [
            e.id for e in await storage.get_trace_events(event_types=["bus_event_emitted"])
        ] == ["t2"]
        assert [e.id for e in await storage.get_trace_events(after=base)] == ["t2"]


class TestStorageBusEvents:
    """Tests for persisted bus events."""

    @pytest.mark.asyncio
    async def test_payload_type_restored(self, storage):
        """Test that bus events come back with their typed payload."""
        event = Event(
            id="e1",
            type="email:received",
            payload=EmailPayload(
                email_id="m1",
                from_address="a@example.com",
                to=["ops@example.com"],
                subject="Hi",
                body="Hello",
                email_type="new_inquiry",
            ),
            source="email",
            correlation_id="corr-1",
            timestamp=datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc),
        )
        await storage.save_bus_event(event)

        [loaded] = await storage.get_bus_events(correlation_id="corr-1")

        assert isinstance(loaded.payload, EmailPayload)
        assert loaded.payload.to == ["ops@example.com"]


class TestStorageScheduledJobs:
    """Tests for durable scheduled jobs."""

    @pytest.mark.asyncio
    async def test_pending_jobs(self, storage):
        """Test that only pending jobs are returned."""
        now = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)
        for job_id in ("j1", "j2"):
            await storage.save_scheduled_job(
                ScheduledJob(id=job_id, kind="notification", payload={"x": 1}, run_at=now, created_at=now)
            )
        await storage.update_scheduled_job_status("j2", JobStatus.EXECUTED)

        pending = await storage.get_pending_scheduled_jobs()

        assert [j.id for j in pending] == ["j1"]
        assert pending[0].payload == {"x": 1}


class TestStorageClear:
    """Tests for Storage.clear()."""

    @pytest.mark.asyncio
    async def test_clear_removes_everything(self, storage):
        """Test that clear empties all tables."""
        await storage.create("a", {"id": "x"})
        await storage.save_trace_event(
            TraceEvent(
                id="t1",
                event_type="x",
                actor="y",
                data={},
                timestamp=datetime.now(timezone.utc),
            )
        )

        await storage.clear()

        assert await storage.count("a") == 0
        assert await storage.get_trace_events() == []
