"""Tests for AutomationTrigger."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from opsflow.actions import AutomationTrigger
from opsflow.config import RetryConfig, WorkflowConfig
from opsflow.errors import ErrorCode
from opsflow.models import (
    Action,
    ActionStatus,
    ActionType,
    ActorType,
    ExecutionContext,
    InvocationResponse,
    PerformedBy,
    TriggerContext,
    TriggerOptions,
    WorkflowExecutionStatus,
)
from opsflow.policies import RetryPolicy
from opsflow.repository import HttpWorkflowInvoker, InMemoryRepository


def seed():
    return {
        "workflows": [
            {"id": "wf-1", "name": "sync-crm", "org_id": "org-1", "is_active": True},
            {"id": "wf-off", "name": "old", "org_id": "org-1", "is_active": False},
            {"id": "wf-other", "name": "foreign", "org_id": "org-2", "is_active": True},
            {
                "id": "wf-hook",
                "name": "hooked",
                "org_id": "org-1",
                "is_active": True,
                "webhook_url": "https://hooks.example.com/run",
            },
        ]
    }


@pytest.fixture
def repo():
    return InMemoryRepository(seed())


@pytest.fixture
def invoker():
    inv = Mock()
    inv.invoke = AsyncMock(
        return_value=InvocationResponse(status_code=200, body={"executionId": "exec-9", "status": "running"})
    )
    return inv


@pytest.fixture
def trigger_ctx():
    return TriggerContext(org_id="org-1", correlation_id="corr-w", source_event="intake:created")


@pytest.fixture
def automation(repo, invoker, audit_log, bare_bus, no_sleep, clock):
    return AutomationTrigger(
        repo,
        invoker,
        audit_log,
        event_bus=bare_bus,
        retry=RetryPolicy(sleep=no_sleep),
        org_id="org-1",
        clock=clock.now,
    )


@pytest.fixture
def received(bare_bus):
    events = []

    async def handler(event):
        events.append(event)

    bare_bus.subscribe_any(handler)
    return events


class TestTrigger:
    """Tests for AutomationTrigger.trigger."""

    @pytest.mark.asyncio
    async def test_trigger_success(self, automation, invoker, storage, received, trigger_ctx):
        """Test a successful trigger reports the remote status and execution id."""
        result = await automation.trigger("wf-1", {"intake_id": "i1"}, trigger_ctx)

        assert result.success is True
        assert result.status == WorkflowExecutionStatus.RUNNING
        assert result.execution_id == "exec-9"
        assert result.attempts == 1

        ref, body = invoker.invoke.await_args.args
        assert ref == "wf-1"
        assert body["intake_id"] == "i1"
        assert body["_meta"]["correlation_id"] == "corr-w"
        assert invoker.invoke.await_args.kwargs["timeout_ms"] == 30000

        assert received[0].type == "automation:triggered"
        assert received[0].payload.workflow_id == "wf-1"
        [entry] = await storage.get_audit_entries(entity_type="workflow")
        assert entry.action == "TRIGGER_AUTOMATION"

    @pytest.mark.asyncio
    async def test_webhook_url_preferred(self, automation, invoker, trigger_ctx):
        """Test that workflows with a webhook URL are invoked by URL."""
        await automation.trigger("wf-hook", {}, trigger_ctx)

        assert invoker.invoke.await_args.args[0] == "https://hooks.example.com/run"

    @pytest.mark.asyncio
    async def test_lookup_failures(self, automation, invoker, trigger_ctx):
        """Test missing, inactive and foreign workflows."""
        missing = await automation.trigger("nope", {}, trigger_ctx)
        inactive = await automation.trigger("wf-off", {}, trigger_ctx)
        foreign = await automation.trigger("wf-other", {}, trigger_ctx)

        assert missing.error.code == ErrorCode.WORKFLOW_NOT_FOUND
        assert inactive.error.code == ErrorCode.WORKFLOW_INACTIVE
        assert foreign.error.code == ErrorCode.PERMISSION_DENIED
        invoker.invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_options(self, automation, trigger_ctx):
        """Test that out-of-range options fail validation."""
        result = await automation.trigger("wf-1", {}, trigger_ctx, TriggerOptions(retries=50))

        assert result.error.code == ErrorCode.VALIDATION_ERROR
        assert result.error.details["errors"]

    @pytest.mark.asyncio
    async def test_server_errors_retried(self, automation, invoker, no_sleep, received, trigger_ctx):
        """Test that 5xx answers are retried and end as permanent failures."""
        invoker.invoke = AsyncMock(return_value=InvocationResponse(status_code=502, body="bad gateway"))

        result = await automation.trigger("wf-1", {}, trigger_ctx, TriggerOptions(retries=2))

        assert result.success is False
        assert result.attempts == 3
        assert result.error.code == ErrorCode.TRANSIENT_DELIVERY
        assert result.retryable is False
        assert no_sleep.await_count == 2
        assert received[0].type == "automation:failed"
        assert received[0].payload.permanent_failure is True

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, automation, invoker, trigger_ctx):
        """Test that a 4xx answer fails immediately."""
        invoker.invoke = AsyncMock(return_value=InvocationResponse(status_code=422, body={}))

        result = await automation.trigger("wf-1", {}, trigger_ctx)

        assert result.attempts == 1
        assert result.error.code == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_unreachable_engine(self, repo, audit_log, no_sleep, trigger_ctx):
        """Test that connection failures exhaust retries and are not retryable afterwards."""

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        automation = AutomationTrigger(
            repo,
            HttpWorkflowInvoker(WorkflowConfig(base_url="http://engine.invalid/api"), client=client),
            audit_log,
            retry=RetryPolicy(sleep=no_sleep),
        )

        result = await automation.trigger("wf-1", {}, trigger_ctx)
        await client.aclose()

        assert result.success is False
        assert result.attempts == 4
        assert result.error.code == ErrorCode.TRANSIENT_DELIVERY
        assert result.error.retryable is False

    @pytest.mark.asyncio
    async def test_trigger_by_name(self, automation, invoker, trigger_ctx):
        """Test name lookup within the organization."""
        found = await automation.trigger_by_name("sync-crm", {}, trigger_ctx)
        missing = await automation.trigger_by_name("foreign", {}, trigger_ctx)

        assert found.workflow_id == "wf-1"
        assert missing.error.code == ErrorCode.WORKFLOW_NOT_FOUND


class TestRateLimitAndScheduling:
    """Tests for throttling and deferred triggers."""

    @pytest.fixture
    def scheduler(self):
        sched = Mock()
        sched.register_handler = Mock()
        sched.schedule = AsyncMock(return_value="sched-7")
        sched.cancel = AsyncMock(return_value=True)
        sched.list_pending = Mock(return_value=[])
        return sched

    @pytest.mark.asyncio
    async def test_rate_limit_without_scheduler(self, repo, invoker, audit_log, trigger_ctx):
        """Test that the per-workflow limit fails the excess trigger."""
        automation = AutomationTrigger(
            repo, invoker, audit_log, config=WorkflowConfig(rate_limit_per_workflow=1)
        )

        await automation.trigger("wf-1", {}, trigger_ctx)
        limited = await automation.trigger("wf-1", {}, trigger_ctx)

        assert limited.error.code == ErrorCode.RATE_LIMITED
        assert automation.get_stats()["rate_limited"] == 1

    @pytest.mark.asyncio
    async def test_rate_limit_defers_with_scheduler(self, repo, invoker, audit_log, scheduler, trigger_ctx):
        """Test that a throttled trigger is queued for later."""
        automation = AutomationTrigger(
            repo, invoker, audit_log, scheduler=scheduler, config=WorkflowConfig(rate_limit_per_workflow=1)
        )

        await automation.trigger("wf-1", {}, trigger_ctx)
        deferred = await automation.trigger("wf-1", {"x": 1}, trigger_ctx)

        assert deferred.success is True
        assert deferred.status == WorkflowExecutionStatus.QUEUED
        assert deferred.schedule_id == "sched-7"
        kind, payload, _ = scheduler.schedule.await_args.args
        assert kind == "automation"
        assert payload["payload"] == {"x": 1}
        assert payload["context"]["correlation_id"] == "corr-w"

    @pytest.mark.asyncio
    async def test_schedule_automation(self, repo, invoker, audit_log, scheduler, clock, trigger_ctx):
        """Test future scheduling and immediate run for past times."""
        automation = AutomationTrigger(repo, invoker, audit_log, scheduler=scheduler, clock=clock.now)

        queued = await automation.schedule_automation("wf-1", {}, clock.now() + timedelta(hours=2), trigger_ctx)
        immediate = await automation.schedule_automation("wf-1", {}, clock.now() - timedelta(seconds=1), trigger_ctx)

        assert queued.schedule_id == "sched-7"
        assert immediate.status == WorkflowExecutionStatus.RUNNING
        assert automation.get_stats()["scheduled"] == 1
        assert await automation.cancel_scheduled("sched-7") is True

    @pytest.mark.asyncio
    async def test_scheduled_handler_triggers(self, repo, invoker, audit_log, scheduler, trigger_ctx):
        """Test that the scheduler handler runs the stored trigger."""
        automation = AutomationTrigger(repo, invoker, audit_log, scheduler=scheduler)
        _, handler = scheduler.register_handler.call_args.args
        job = Mock(
            payload=AutomationTrigger._job_payload("wf-1", {"a": 1}, trigger_ctx),
        )

        await handler(job)

        assert invoker.invoke.await_args.args[1]["a"] == 1
        assert automation.get_stats()["successful_triggers"] == 1


class TestExecutionTracking:
    """Tests for the execution log views."""

    @pytest.mark.asyncio
    async def test_status_and_recent(self, automation, trigger_ctx):
        """Test that executions are tracked in the log."""
        await automation.trigger("wf-1", {}, trigger_ctx)

        [entry] = automation.get_recent_executions(workflow_id="wf-1")
        status = automation.get_workflow_status(entry.id)

        assert status.status == "running"
        assert status.workflow_id == "wf-1"
        assert automation.get_workflow_status("missing") is None
        assert automation.get_stats()["executions"]["total"] == 1

    @pytest.mark.asyncio
    async def test_list_workflows(self, automation):
        """Test organization and active filters."""
        active = await automation.list_workflows(active_only=True)

        assert sorted(w.id for w in active) == ["wf-1", "wf-hook"]


class TestWebhook:
    """Tests for raw webhook triggers."""

    @pytest.mark.asyncio
    async def test_trigger_webhook(self, repo, invoker, audit_log, no_sleep):
        """Test posting to an arbitrary URL."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "run-1"})

        automation = AutomationTrigger(
            repo,
            invoker,
            audit_log,
            retry=RetryPolicy(sleep=no_sleep),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        result = await automation.trigger_webhook("https://hooks.example.com/x", {"k": "v"})
        await automation.close()

        assert result.success is True
        assert result.status_code == 200
        assert result.execution_id == "run-1"
        assert seen[0].method == "POST"

    @pytest.mark.asyncio
    async def test_trigger_webhook_404(self, repo, invoker, audit_log, no_sleep):
        """Test that a 404 is not retried and keeps the status code."""
        automation = AutomationTrigger(
            repo,
            invoker,
            audit_log,
            retry=RetryPolicy(sleep=no_sleep),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))),
        )

        result = await automation.trigger_webhook("https://hooks.example.com/x", {})
        await automation.close()

        assert result.success is False
        assert result.attempts == 1
        assert result.status_code == 404

    @pytest.mark.asyncio
    async def test_trigger_webhook_total_timeout(self, repo, invoker, audit_log):
        """Test that the retry policy's overall time limit bounds webhook retries."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        async def stalled_sleep(seconds):
            await asyncio.Event().wait()

        automation = AutomationTrigger(
            repo,
            invoker,
            audit_log,
            retry=RetryPolicy(RetryConfig(total_timeout_ms=50), sleep=stalled_sleep),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        result = await asyncio.wait_for(
            automation.trigger_webhook("https://hooks.example.com/x", {}, TriggerOptions(retries=5)),
            timeout=2.0,
        )
        await automation.close()

        assert result.success is False
        assert result.error.code == ErrorCode.EXECUTION_TIMEOUT
        assert len(calls) == 1


class TestAutomationExecutor:
    """Tests for the executor entry point."""

    @pytest.fixture
    def context(self):
        return ExecutionContext(
            correlation_id="corr-x",
            org_id="org-1",
            performed_by=PerformedBy(type=ActorType.AGENT, id="agent"),
        )

    @pytest.mark.asyncio
    async def test_trigger_by_name_action(self, automation, context):
        """Test TRIGGER_AUTOMATION with a workflow name."""
        outcome = await automation.execute(
            Action(type=ActionType.TRIGGER_AUTOMATION, params={"workflow_name": "sync-crm", "payload": {"a": 1}}),
            context,
        )

        assert outcome.success is True
        assert outcome.status == ActionStatus.EXECUTED
        assert outcome.detail["execution_id"] == "exec-9"

    @pytest.mark.asyncio
    async def test_missing_workflow_reference(self, automation, context):
        """Test that an action without workflow id or name is invalid."""
        outcome = await automation.execute(Action(type=ActionType.TRIGGER_AUTOMATION), context)

        assert outcome.error.message == "Missing required parameter: workflow_name"
