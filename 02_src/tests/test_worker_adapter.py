"""Tests for WorkerEventAdapter."""

import pytest

from opsflow.errors import ErrorCode
from opsflow.inputs import WorkerEventAdapter
from opsflow.models import AutomationPayload, CalendarPayload, InputSource, SchedulePayload


def worker_event(event_type="completed", queue="automation", **job):
    body = {"id": "job-1", "name": "sync-crm", "timestamp": 1736157600000}
    body.update(job)
    return {"eventType": event_type, "queueName": queue, "job": body}


@pytest.fixture
def received(bare_bus):
    events = []

    async def handler(event):
        events.append(event)

    bare_bus.subscribe_any(handler)
    return events


class TestWorkerValidation:
    """Tests for worker event validation."""

    def test_unknown_lifecycle(self, bare_bus):
        """Test that unknown lifecycle kinds are rejected."""
        result = WorkerEventAdapter(bare_bus).validate(worker_event(event_type="exploded"))

        assert result.is_valid is False

    def test_missing_job_name(self, bare_bus):
        """Test that job.name is required."""
        result = WorkerEventAdapter(bare_bus).validate(
            {"eventType": "completed", "queueName": "automation", "job": {}}
        )

        assert result.is_valid is False
        assert any("job.name" in e for e in result.errors)

    def test_warnings(self, bare_bus):
        """Test warnings for missing optional job fields."""
        raw = worker_event(event_type="failed")
        del raw["job"]["timestamp"]

        result = WorkerEventAdapter(bare_bus).validate(raw)

        assert result.is_valid is True
        assert "Missing job.timestamp, will use current time" in result.warnings
        assert "Failed job missing failed_reason" in result.warnings


class TestWorkerEventMapping:
    """Tests for queue to event type mapping."""

    def test_queue_mapping(self, bare_bus):
        """Test built-in and default mappings."""
        adapter = WorkerEventAdapter(bare_bus)

        assert adapter.event_type_for("automation", "scheduled") == "automation:triggered"
        assert adapter.event_type_for("email", "scheduled") == "schedule:triggered"
        assert adapter.event_type_for("reminders", "completed") == "calendar:reminder_due"
        assert adapter.event_type_for("unknown", "stalled") == "automation:failed"

    def test_custom_mapping_rejects_incompatible_payload(self, bare_bus):
        """Test that a queue cannot be mapped to intake events."""
        adapter = WorkerEventAdapter(bare_bus)

        with pytest.raises(ValueError):
            adapter.add_queue_mapping("billing", {"completed": "intake:created"})

    def test_custom_mapping(self, bare_bus):
        """Test that custom queue mappings are honoured."""
        adapter = WorkerEventAdapter(bare_bus, queue_event_map={"billing": {"completed": "custom:invoice_paid"}})

        assert adapter.event_type_for("Billing", "completed") == "custom:invoice_paid"


class TestWorkerProcessing:
    """Tests for WorkerEventAdapter.handle_input."""

    @pytest.mark.asyncio
    async def test_completed_job(self, bare_bus, received):
        """Test that completed jobs publish automation:completed."""
        adapter = WorkerEventAdapter(bare_bus)

        result = await adapter.handle_input(
            worker_event(
                returnValue={"synced": 12},
                data={"workflowId": "wf-9", "processedOn": 1000, "finishedOn": 1750},
            )
        )

        assert result.success is True
        assert result.input.source == InputSource.WORKER_EVENT
        assert result.input.type == "worker:automation:completed"
        assert result.input.metadata.related_entity_ids["workflow_id"] == "wf-9"
        payload = received[0].payload
        assert isinstance(payload, AutomationPayload)
        assert payload.status == "success"
        assert payload.result == {"synced": 12}
        assert payload.workflow_id == "wf-9"
        assert payload.data["execution_time_ms"] == 750

    @pytest.mark.asyncio
    async def test_failure_becomes_permanent(self, bare_bus, received):
        """Test retry tracking until the attempt budget is spent."""
        adapter = WorkerEventAdapter(bare_bus)
        failed = worker_event(event_type="failed", failedReason="timeout", opts={"attempts": 2})

        await adapter.handle_input(failed)
        assert adapter.get_job_retry_count("automation", "job-1") == 1
        await adapter.handle_input(failed)

        assert [e.payload.permanent_failure for e in received] == [False, True]
        assert received[1].payload.status == "failure"
        assert received[1].payload.error == "timeout"
        assert adapter.get_stats().extra["permanent_failures"] == 1
        assert adapter.get_job_retry_count("automation", "job-1") == 0

    @pytest.mark.asyncio
    async def test_progress_filtered_by_default(self, bare_bus, received):
        """Test that progress events are skipped unless enabled."""
        adapter = WorkerEventAdapter(bare_bus)

        result = await adapter.handle_input(worker_event(event_type="progress", progress=50))

        assert result.skipped is True
        assert result.skip_reason == "filtered"
        assert received == []

    @pytest.mark.asyncio
    async def test_progress_threshold(self, bare_bus, received):
        """Test that progress is emitted only past the threshold."""
        adapter = WorkerEventAdapter(bare_bus, emit_progress_events=True, progress_threshold=10)

        await adapter.handle_input(worker_event(event_type="progress", progress=15))
        await adapter.handle_input(worker_event(event_type="progress", progress={"percent": 20}))
        await adapter.handle_input(worker_event(event_type="progress", progress=30))

        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_reminder_queue(self, bare_bus, received):
        """Test that reminder jobs publish calendar reminders."""
        await WorkerEventAdapter(bare_bus).handle_input(
            worker_event(
                queue="reminders",
                name="meeting-reminder",
                data={"eventId": "evt-1", "reminderId": "rem-1", "recipientIds": ["u1"]},
            )
        )

        payload = received[0].payload
        assert isinstance(payload, CalendarPayload)
        assert payload.event_id == "evt-1"
        assert payload.reminder_id == "rem-1"
        assert payload.data["recipient_ids"] == ["u1"]

    @pytest.mark.asyncio
    async def test_scheduled_job(self, bare_bus, received):
        """Test that scheduled jobs on the email queue publish schedule:triggered."""
        await WorkerEventAdapter(bare_bus).handle_input(
            worker_event(event_type="scheduled", queue="email", repeatJobKey="daily")
        )

        payload = received[0].payload
        assert isinstance(payload, SchedulePayload)
        assert payload.data["repeat_job_key"] == "daily"
        assert payload.scheduled_for.startswith("2025-01-06")

    @pytest.mark.asyncio
    async def test_invalid_input(self, bare_bus, received):
        """Test that invalid events fail with a validation error."""
        result = await WorkerEventAdapter(bare_bus).handle_input("nope")

        assert result.success is False
        assert result.error.code == ErrorCode.VALIDATION_ERROR
        assert received == []

    @pytest.mark.asyncio
    async def test_stats_by_queue(self, bare_bus):
        """Test per-queue counters."""
        adapter = WorkerEventAdapter(bare_bus)

        await adapter.handle_input(worker_event())
        await adapter.handle_input(worker_event(event_type="stalled"))

        extra = adapter.get_stats().extra
        assert extra["completed_jobs"] == 1
        assert extra["stalled_jobs"] == 1
        assert extra["by_queue"] == {"automation": {"completed": 1, "failed": 1}}
