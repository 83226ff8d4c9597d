"""Tests for NotificationDispatcher."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from opsflow.actions import NotificationDispatcher, render
from opsflow.actions.notifications import coerce_priority
from opsflow.config import NotificationConfig, QuietHoursPolicy, RateLimitConfig
from opsflow.errors import ErrorCode
from opsflow.models import (
    Action,
    ActionStatus,
    ActionType,
    ActorType,
    DeliveryResult,
    ExecutionContext,
    NotificationChannel,
    NotificationPayload,
    NotificationPriority,
    NotificationStatus,
    PerformedBy,
)
from opsflow.policies import QuietHoursEvaluator, RateLimiter, RetryPolicy
from opsflow.repository import InMemoryRepository


def email(recipient="ana@client.com", **kwargs):
    return NotificationPayload(
        channel=NotificationChannel.EMAIL,
        recipient=recipient,
        subject=kwargs.pop("subject", "Hello"),
        body=kwargs.pop("body", "Body"),
        **kwargs,
    )


@pytest.fixture
def repo():
    return InMemoryRepository({"users": [{"id": "u1", "name": "Ana Diaz", "email": "ana@client.com"}]})


@pytest.fixture
def scheduler():
    sched = Mock()
    sched.register_handler = Mock()
    sched.schedule = AsyncMock(return_value="sched-1")
    sched.cancel = AsyncMock(return_value=True)
    return sched


@pytest.fixture
def dispatcher(mock_delivery, audit_log, repo, no_sleep, clock):
    return NotificationDispatcher(
        mock_delivery,
        audit_log,
        repository=repo,
        retry=RetryPolicy(sleep=no_sleep),
        config=NotificationConfig(operator_recipients=["ops@example.com", "u1"]),
        clock=clock.now,
    )


@pytest.fixture
def context():
    return ExecutionContext(
        correlation_id="corr-n",
        org_id="org-1",
        performed_by=PerformedBy(type=ActorType.AGENT, id="agent"),
    )


class TestRendering:
    """Tests for template helpers."""

    def test_render_leaves_unknown_placeholders(self):
        """Test placeholder substitution."""
        assert render("Hi {{ name }}, ref {{id}}", {"name": "Ana"}) == "Hi Ana, ref {{id}}"

    def test_coerce_priority(self):
        """Test priority coercion from ints and names."""
        assert coerce_priority(5) == NotificationPriority.URGENT
        assert coerce_priority(2) == NotificationPriority.LOW
        assert coerce_priority("medium") == NotificationPriority.NORMAL
        assert coerce_priority(None) == NotificationPriority.NORMAL

    def test_render_builtin_template(self, dispatcher):
        """Test template defaults merge under caller data."""
        subject, body = dispatcher.render_template("task_assigned", {"task_name": "Call back"})

        assert subject == "New Task Assigned"
        assert body == "You have been assigned a new task: Call back"


class TestSend:
    """Tests for single sends."""

    @pytest.mark.asyncio
    async def test_send_email(self, dispatcher, mock_delivery, repo):
        """Test a successful email send is stored."""
        result = await dispatcher.send(email())

        assert result.success is True
        assert result.status == NotificationStatus.SENT
        assert result.external_id == "msg-1"
        assert result.attempts == 1
        record = await repo.find("notifications", result.notification_id)
        assert record["status"] == "sent"
        mock_delivery.send_email.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_validation(self, dispatcher, mock_delivery):
        """Test recipient format checks."""
        bad_email = await dispatcher.send(email("not-an-email"))
        bad_phone = await dispatcher.send(
            NotificationPayload(channel=NotificationChannel.SMS, recipient="12", body="hi")
        )
        no_body = await dispatcher.send(email(body=""))

        assert bad_email.error.message == "Invalid email address"
        assert bad_phone.error.message == "Invalid phone number"
        assert no_body.error.code == ErrorCode.VALIDATION_ERROR
        mock_delivery.send_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_personalisation(self, dispatcher, mock_delivery):
        """Test that known users fill user placeholders."""
        await dispatcher.send(
            NotificationPayload(
                channel=NotificationChannel.IN_APP, recipient="u1", subject="Hi", body="Hi {{user.first_name}}"
            )
        )

        content = mock_delivery.send_in_app.await_args.args[1]
        assert content.body == "Hi Ana"

    @pytest.mark.asyncio
    async def test_deduplication(self, dispatcher, mock_delivery):
        """Test that a repeated key is suppressed but counted as success."""
        first = await dispatcher.send(email(deduplication_key="k1"))
        second = await dispatcher.send(email(deduplication_key="k1"))

        assert first.status == NotificationStatus.SENT
        assert second.success is True
        assert second.deduplicated is True
        assert mock_delivery.send_email.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_delivery_releases_key(self, dispatcher, mock_delivery, no_sleep):
        """Test retries on 503 and that the dedup key can be retried afterwards."""
        mock_delivery.send_email = AsyncMock(
            return_value=DeliveryResult(success=False, status_code=503, error="unavailable")
        )

        failed = await dispatcher.send(email(deduplication_key="k2"))

        assert failed.success is False
        assert failed.attempts == 3
        assert failed.error.code == ErrorCode.TRANSIENT_DELIVERY
        assert failed.error.retryable is False
        assert no_sleep.await_count == 2

        mock_delivery.send_email = AsyncMock(return_value=DeliveryResult(success=True, external_id="m2"))
        retried = await dispatcher.send(email(deduplication_key="k2"))
        assert retried.status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, dispatcher, mock_delivery):
        """Test that a 400 from the provider fails on the first attempt."""
        mock_delivery.send_email = AsyncMock(
            return_value=DeliveryResult(success=False, status_code=400, error="bad address")
        )

        result = await dispatcher.send(email())

        assert result.attempts == 1
        assert result.error.code == ErrorCode.VALIDATION_ERROR


class TestDeferral:
    """Tests for rate limit and quiet hours deferral."""

    @pytest.mark.asyncio
    async def test_rate_limited_is_deferred(self, mock_delivery, audit_log, scheduler, clock):
        """Test that rate-limited sends are scheduled for later."""
        dispatcher = NotificationDispatcher(
            mock_delivery,
            audit_log,
            rate_limiter=RateLimiter(RateLimitConfig(per_window=1), clock=clock.monotonic),
            scheduler=scheduler,
            clock=clock.now,
        )

        await dispatcher.send(email())
        deferred = await dispatcher.send(email())

        assert deferred.success is True
        assert deferred.status == NotificationStatus.DEFERRED
        assert deferred.schedule_id == "sched-1"
        kind, payload, run_at = scheduler.schedule.await_args.args
        assert kind == "notification"
        assert payload["notification"]["recipient"] == "ana@client.com"
        assert run_at == clock.now() + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_rate_limited_without_scheduler_fails(self, mock_delivery, audit_log, clock):
        """Test that without a scheduler the rate limit is a retryable failure."""
        dispatcher = NotificationDispatcher(
            mock_delivery,
            audit_log,
            rate_limiter=RateLimiter(RateLimitConfig(per_window=1), clock=clock.monotonic),
            clock=clock.now,
        )

        await dispatcher.send(email())
        result = await dispatcher.send(email())

        assert result.error.code == ErrorCode.RATE_LIMITED
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_quiet_hours_deferral(self, mock_delivery, audit_log, scheduler, clock):
        """Test that non-urgent sends wait until quiet hours end."""
        clock.set(datetime(2025, 1, 6, 23, 0, tzinfo=timezone.utc))
        dispatcher = NotificationDispatcher(
            mock_delivery,
            audit_log,
            quiet_hours=QuietHoursEvaluator(QuietHoursPolicy(enabled=True)),
            scheduler=scheduler,
            clock=clock.now,
        )

        normal = await dispatcher.send(email())
        urgent = await dispatcher.send(email(priority=NotificationPriority.URGENT))

        assert normal.status == NotificationStatus.DEFERRED
        assert scheduler.schedule.await_args.args[2] == datetime(2025, 1, 7, 7, 0, tzinfo=timezone.utc)
        assert urgent.status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_quiet_hours_deferral_keeps_quota(self, mock_delivery, audit_log, scheduler, clock):
        """Test that deferred sends do not use up the recipient's rate limit."""
        clock.set(datetime(2025, 1, 6, 23, 30, tzinfo=timezone.utc))
        limiter = RateLimiter(RateLimitConfig(per_day=2), clock=clock.monotonic)
        dispatcher = NotificationDispatcher(
            mock_delivery,
            audit_log,
            rate_limiter=limiter,
            quiet_hours=QuietHoursEvaluator(QuietHoursPolicy(enabled=True)),
            scheduler=scheduler,
            clock=clock.now,
        )

        first = await dispatcher.send(email("a@b.com"))
        second = await dispatcher.send(email("a@b.com"))

        assert [first.status, second.status] == [NotificationStatus.DEFERRED] * 2
        assert limiter.is_allowed("a@b.com").allowed is True
        mock_delivery.send_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_only_delivered_sends_count(self, mock_delivery, audit_log, clock):
        """Test that the quota is spent by sends that reach delivery."""
        limiter = RateLimiter(RateLimitConfig(per_window=1), clock=clock.monotonic)
        dispatcher = NotificationDispatcher(
            mock_delivery, audit_log, rate_limiter=limiter, clock=clock.now
        )

        rejected = await dispatcher.send(email(recipient=""))
        sent = await dispatcher.send(email())

        assert rejected.status == NotificationStatus.FAILED
        assert sent.status == NotificationStatus.SENT
        assert limiter.is_allowed("ana@client.com").allowed is False

    @pytest.mark.asyncio
    async def test_scheduled_job_sends(self, mock_delivery, audit_log, scheduler, clock):
        """Test that the registered scheduler handler sends the stored payload."""
        dispatcher = NotificationDispatcher(mock_delivery, audit_log, scheduler=scheduler, clock=clock.now)
        kind, handler = scheduler.register_handler.call_args.args
        job = Mock(id="job-1", payload={"notification": email().to_dict()})

        await handler(job)

        assert kind == "notification"
        mock_delivery.send_email.assert_awaited_once()
        assert dispatcher.quiet_hours is not None

    @pytest.mark.asyncio
    async def test_schedule_and_cancel(self, mock_delivery, audit_log, scheduler, clock):
        """Test future scheduling and cancellation."""
        dispatcher = NotificationDispatcher(mock_delivery, audit_log, scheduler=scheduler, clock=clock.now)

        queued = await dispatcher.schedule_notification(email(), clock.now() + timedelta(hours=1))
        past = await dispatcher.schedule_notification(email(), clock.now() - timedelta(minutes=1))

        assert queued.status == NotificationStatus.QUEUED
        assert past.status == NotificationStatus.SENT
        assert await dispatcher.cancel_scheduled("sched-1") is True


class TestSendFailureContainment:
    """Tests for unexpected errors inside send."""

    @pytest.mark.asyncio
    async def test_repository_error_becomes_result(self, mock_delivery, audit_log, clock):
        """Test that a repository failure returns an internal error instead of raising."""
        repo = Mock()
        repo.find = AsyncMock(side_effect=ConnectionResetError("db down"))
        dispatcher = NotificationDispatcher(mock_delivery, audit_log, repository=repo, clock=clock.now)

        result = await dispatcher.send(email(deduplication_key="k9"))

        assert result.success is False
        assert result.status == NotificationStatus.FAILED
        assert result.error.code == ErrorCode.INTERNAL_ERROR
        assert result.error.message == "db down"
        mock_delivery.send_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repository_error_releases_key(self, mock_delivery, audit_log, clock):
        """Test that the dedup key is free again after an unexpected failure."""
        repo = Mock()
        repo.find = AsyncMock(side_effect=[ConnectionResetError("db down"), None])
        repo.find_many = AsyncMock(return_value=[])
        repo.create = AsyncMock(return_value={"id": "n-1"})
        dispatcher = NotificationDispatcher(mock_delivery, audit_log, repository=repo, clock=clock.now)

        await dispatcher.send(email(deduplication_key="k10"))
        retried = await dispatcher.send(email(deduplication_key="k10"))

        assert retried.status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_bulk_survives_repository_error(self, mock_delivery, audit_log, clock):
        """Test that one failing lookup does not abort a bulk send."""
        repo = Mock()
        repo.find = AsyncMock(side_effect=[ConnectionResetError("db down"), None])
        repo.find_many = AsyncMock(return_value=[])
        repo.create = AsyncMock(return_value={"id": "n-1"})
        dispatcher = NotificationDispatcher(
            mock_delivery,
            audit_log,
            repository=repo,
            config=NotificationConfig(bulk_concurrency=1),
            clock=clock.now,
        )

        bulk = await dispatcher.send_bulk([email("a@x.com"), email("b@x.com")])

        assert bulk.total == 2
        assert bulk.failed == 1
        assert bulk.successful == 1


class TestBulkAndOperators:
    """Tests for bulk sends and operator alerts."""

    @pytest.mark.asyncio
    async def test_bulk_counts(self, dispatcher):
        """Test bulk result counters."""
        bulk = await dispatcher.send_bulk(
            [email(deduplication_key="b"), email(deduplication_key="b"), email("bad")]
        )

        assert (bulk.total, bulk.successful, bulk.failed, bulk.deduplicated) == (3, 1, 1, 1)

    @pytest.mark.asyncio
    async def test_escalate_notifies_operators(self, dispatcher, mock_delivery, context):
        """Test that ESCALATE reaches every operator bypassing quiet hours."""
        outcome = await dispatcher.execute(
            Action(type=ActionType.ESCALATE, params={"reason": "Low confidence"}), context
        )

        assert outcome.success is True
        assert outcome.detail["recipients"] == ["ops@example.com", "u1"]
        content = mock_delivery.send_email.await_args.args[1]
        assert content.subject == "Escalation: Low confidence"
        mock_delivery.send_in_app.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_escalate_without_operators(self, mock_delivery, audit_log, context):
        """Test that escalation with no operators is skipped."""
        dispatcher = NotificationDispatcher(mock_delivery, audit_log)

        outcome = await dispatcher.execute(Action(type=ActionType.ESCALATE), context)

        assert outcome.status == ActionStatus.SKIPPED


class TestNotificationExecutor:
    """Tests for the executor entry point."""

    @pytest.mark.asyncio
    async def test_send_notification_action(self, dispatcher, context):
        """Test SEND_NOTIFICATION maps params onto a payload."""
        outcome = await dispatcher.execute(
            Action(
                type=ActionType.SEND_NOTIFICATION,
                params={"to": "ana@client.com", "subject": "Hi", "message": "Body", "priority": 4},
            ),
            context,
        )

        assert outcome.success is True
        assert outcome.status == ActionStatus.EXECUTED
        assert outcome.detail["notification_status"] == "sent"

    @pytest.mark.asyncio
    async def test_unsupported_channel(self, dispatcher, context):
        """Test that an unknown channel is a validation failure."""
        outcome = await dispatcher.execute(
            Action(type=ActionType.SEND_NOTIFICATION, params={"to": "x", "channel": "fax"}), context
        )

        assert outcome.error.message == "Unsupported channel: fax"

    @pytest.mark.asyncio
    async def test_bulk_action(self, dispatcher, mock_delivery, context):
        """Test BULK_NOTIFICATION fans out to recipients."""
        outcome = await dispatcher.execute(
            Action(
                type=ActionType.BULK_NOTIFICATION,
                params={"recipients": ["a@x.com", "b@x.com"], "subject": "News", "body": "Hi"},
            ),
            context,
        )

        assert outcome.detail["total"] == 2
        assert outcome.detail["successful"] == 2
        assert mock_delivery.send_email.await_count == 2


class TestInAppHistory:
    """Tests for read tracking."""

    @pytest.mark.asyncio
    async def test_unread_and_mark_read(self, dispatcher):
        """Test unread counts drop after marking read."""
        result = await dispatcher.send(
            NotificationPayload(channel=NotificationChannel.IN_APP, recipient="u1", subject="Hi", body="x")
        )

        assert await dispatcher.get_unread_count("u1") == 1
        assert await dispatcher.mark_as_read(result.notification_id, "someone-else") is False
        assert await dispatcher.mark_as_read(result.notification_id, "u1") is True
        assert await dispatcher.get_unread_count("u1") == 0
        assert len(await dispatcher.get_history("u1")) == 1
