"""Notification executor.

Each send passes through deduplication, rate limiting and quiet hours before
delivery. Rate-limited and quiet-hours sends are deferred through the scheduler
rather than failed. Delivery itself runs under the retry policy.

Repository collections used:

- ``notifications``: id, recipient, channel, subject, body, priority, status,
  external_id, error, read_at, org_id, correlation_id, created_at
- ``users``: id, name, email (personalisation only)
"""

import asyncio
import re
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ..config import NotificationConfig
from ..errors import ErrorCode, ErrorInfo, OperationError, error_for_status
from ..logging_config import get_logger, log_context
from ..models import (
    Action,
    ActionOutcome,
    ActionStatus,
    ActionType,
    BulkNotificationResult,
    DeliveryContent,
    DeliveryResult,
    ExecutionContext,
    NotificationChannel,
    NotificationPayload,
    NotificationPriority,
    NotificationResult,
    NotificationStatus,
    NotificationTemplate,
    ScheduledJob,
)
from ..policies import (
    DeduplicationCache,
    IDeduplicationCache,
    IRateLimiter,
    IScheduler,
    QuietHoursEvaluator,
    RateLimiter,
    RetryPolicy,
)
from ..repository import IDeliveryService, InMemoryRepository, IRepository
from .audit import AuditLog
from .base import BaseActionExecutor, require_param

logger = get_logger(__name__)

SCHEDULE_KIND = "notification"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]{10,}$")
PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")

STATUS_TO_ACTION = {
    NotificationStatus.SENT: ActionStatus.EXECUTED,
    NotificationStatus.DELIVERED: ActionStatus.EXECUTED,
    NotificationStatus.QUEUED: ActionStatus.QUEUED,
    NotificationStatus.DEFERRED: ActionStatus.DEFERRED,
    NotificationStatus.DEDUPLICATED: ActionStatus.DEDUPLICATED,
}

BUILTIN_TEMPLATES = [
    NotificationTemplate(
        id="welcome",
        name="Welcome Email",
        channel=NotificationChannel.EMAIL,
        subject="Welcome to {{app_name}}!",
        body_template=(
            "Hi {{user.first_name}},\n\n"
            "Welcome to {{app_name}}! We're excited to have you on board.\n\n"
            "If you have any questions, feel free to reach out to our support team.\n\n"
            "Best regards,\nThe {{app_name}} Team"
        ),
        default_data={"app_name": "Opsflow"},
    ),
    NotificationTemplate(
        id="task_assigned",
        name="Task Assigned Notification",
        channel=NotificationChannel.IN_APP,
        subject="New Task Assigned",
        body_template="You have been assigned a new task: {{task_name}}",
    ),
    NotificationTemplate(
        id="meeting_reminder",
        name="Meeting Reminder",
        channel=NotificationChannel.PUSH,
        subject="Meeting Starting Soon",
        body_template='Your meeting "{{meeting_title}}" starts in {{minutes_before}} minutes',
    ),
    NotificationTemplate(
        id="intake_received",
        name="Intake Received Confirmation",
        channel=NotificationChannel.EMAIL,
        subject="We received your inquiry",
        body_template=(
            "Hi {{user.first_name}},\n\n"
            "Thank you for reaching out! We've received your inquiry and a member "
            "of our team will be in touch shortly.\n\n"
            "Reference: {{intake_id}}\nSubject: {{subject}}\n\n"
            "Best regards,\nThe {{app_name}} Team"
        ),
        default_data={"app_name": "Opsflow"},
    ),
]


def render(text: str, data: dict[str, Any]) -> str:
    """Substitute ``{{ key }}`` placeholders. Unknown keys are left in place."""

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in data:
            return match.group(0)
        value = data[key]
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(replace, text)


def coerce_priority(value: Any) -> NotificationPriority:
    """Accept enum values, names or a 1-5 action priority."""
    if isinstance(value, NotificationPriority):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        if value >= 5:
            return NotificationPriority.URGENT
        if value == 4:
            return NotificationPriority.HIGH
        if value == 3:
            return NotificationPriority.NORMAL
        return NotificationPriority.LOW
    if value is None:
        return NotificationPriority.NORMAL
    text = str(value).lower()
    if text == "medium":
        return NotificationPriority.NORMAL
    try:
        return NotificationPriority(text)
    except ValueError:
        raise OperationError(
            ErrorCode.VALIDATION_ERROR, f"Invalid notification priority: {value}"
        ) from None


def validate_payload(payload: NotificationPayload) -> None:
    if not payload.recipient:
        raise OperationError(ErrorCode.VALIDATION_ERROR, "Notification recipient is required")
    if not payload.subject and payload.channel != NotificationChannel.SMS and not payload.template_id:
        raise OperationError(ErrorCode.VALIDATION_ERROR, "Notification subject is required")
    if not payload.body and not payload.template_id:
        raise OperationError(
            ErrorCode.VALIDATION_ERROR, "Notification body or template_id is required"
        )
    if payload.channel == NotificationChannel.EMAIL and not EMAIL_PATTERN.match(payload.recipient):
        raise OperationError(
            ErrorCode.VALIDATION_ERROR,
            "Invalid email address",
            details={"recipient": payload.recipient},
        )
    if payload.channel == NotificationChannel.SMS and not PHONE_PATTERN.match(payload.recipient):
        raise OperationError(
            ErrorCode.VALIDATION_ERROR,
            "Invalid phone number",
            details={"recipient": payload.recipient},
        )


class NotificationDispatcher(BaseActionExecutor):
    """Sends notifications over email, SMS, push and in-app channels."""

    handles = (
        ActionType.SEND_NOTIFICATION,
        ActionType.BULK_NOTIFICATION,
        ActionType.ESCALATE,
    )
    name = "notification_dispatcher"

    def __init__(
        self,
        delivery: IDeliveryService,
        audit_log: AuditLog,
        repository: IRepository | None = None,
        rate_limiter: IRateLimiter | None = None,
        dedup: IDeduplicationCache | None = None,
        quiet_hours: QuietHoursEvaluator | None = None,
        retry: RetryPolicy | None = None,
        scheduler: IScheduler | None = None,
        config: NotificationConfig | None = None,
        org_id: str = "default",
        agent_id: str = "orchestration-agent",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        super().__init__(audit_log, org_id, agent_id)
        self._config = config or NotificationConfig()
        self._delivery = delivery
        self._repo = repository if repository is not None else InMemoryRepository()
        self._limiter = rate_limiter or RateLimiter(self._config.rate_limits)
        self._dedup = dedup or DeduplicationCache()
        self._quiet_hours = quiet_hours or QuietHoursEvaluator(self._config.default_quiet_hours)
        self._retry = retry or RetryPolicy()
        self._scheduler = scheduler
        self._clock = clock
        self._templates: dict[str, NotificationTemplate] = {t.id: t for t in BUILTIN_TEMPLATES}

        if scheduler is not None:
            scheduler.register_handler(SCHEDULE_KIND, self._on_scheduled)

    @property
    def quiet_hours(self) -> QuietHoursEvaluator:
        return self._quiet_hours

    # Executor entry

    async def _execute(self, action: Action, context: ExecutionContext) -> ActionOutcome:
        params = action.params

        if action.type == ActionType.BULK_NOTIFICATION:
            payloads = self._bulk_payloads(params, context)
            bulk = await self.send_bulk(payloads)
            return self._outcome(
                action,
                bulk.failed == 0,
                error=(
                    ErrorInfo(
                        code=ErrorCode.TRANSIENT_DELIVERY,
                        message=f"{bulk.failed} of {bulk.total} notifications failed",
                    )
                    if bulk.failed
                    else None
                ),
                total=bulk.total,
                successful=bulk.successful,
                failed=bulk.failed,
                deduplicated=bulk.deduplicated,
                deferred=bulk.deferred,
            )

        if action.type == ActionType.ESCALATE:
            reason = params.get("reason") or "Escalated by orchestration agent"
            results = await self.notify_operators(
                subject=params.get("subject") or f"Escalation: {reason}",
                body=params.get("body") or reason,
                priority=NotificationPriority.HIGH,
                correlation_id=context.correlation_id,
                metadata=dict(params.get("metadata") or {}),
            )
            if not results:
                return self._outcome(
                    action, True, status=ActionStatus.SKIPPED, reason="no_operator_recipients"
                )
            failed = [r for r in results if not r.success]
            return self._outcome(
                action,
                not failed,
                error=failed[0].error if failed else None,
                recipients=[r.recipient for r in results],
            )

        payload = self._payload_from_params(params, context)
        result = await self.send(payload)
        return self._outcome(
            action,
            result.success,
            error=result.error,
            status=STATUS_TO_ACTION.get(result.status) if result.success else None,
            notification_id=result.notification_id,
            schedule_id=result.schedule_id,
            recipient=result.recipient,
            channel=result.channel.value,
            notification_status=result.status.value,
        )

    # Operations

    async def send(self, payload: NotificationPayload) -> NotificationResult:
        started = time.perf_counter()
        extra = log_context(payload.correlation_id, recipient=payload.recipient, channel=payload.channel.value)

        try:
            validate_payload(payload)
        except OperationError as e:
            logger.warning("Notification rejected: %s", e.info.message, extra=extra)
            return self._result(payload, NotificationStatus.FAILED, error=e.info)

        key = payload.deduplication_key
        if key and self._dedup.check_and_record(key):
            logger.info("Notification deduplicated: %s", key, extra=extra)
            return self._result(payload, NotificationStatus.DEDUPLICATED, success=True)

        try:
            result = await self._send_once(payload, extra, started)
        except Exception as e:
            logger.error(
                "Notification to %s failed unexpectedly: %s", payload.recipient, e, exc_info=True, extra=extra
            )
            result = self._result(
                payload,
                NotificationStatus.FAILED,
                error=ErrorInfo(code=ErrorCode.INTERNAL_ERROR, message=str(e)),
            )
        if key and result.status != NotificationStatus.SENT:
            self._dedup.release(key)
        return result

    async def _send_once(
        self, payload: NotificationPayload, extra: dict, started: float
    ) -> NotificationResult:
        # Quiet hours before the rate limit; deferrals spend no quota
        if payload.respect_quiet_hours:
            quiet = self._quiet_hours.check(payload.recipient, payload.priority, self._clock())
            if quiet.in_quiet_hours and quiet.resume_at is not None:
                logger.info(
                    "Deferring notification for %s until %s (quiet hours)",
                    payload.recipient,
                    quiet.resume_at.isoformat(),
                    extra=extra,
                )
                return await self._defer(
                    payload,
                    quiet.resume_at,
                    ErrorInfo(
                        code=ErrorCode.RATE_LIMITED,
                        message="Recipient is in quiet hours",
                        retryable=True,
                    ),
                )

        try:
            content = await self._content(payload)
        except OperationError as e:
            logger.warning("Notification content failed: %s", e.info.message, extra=extra)
            return self._result(payload, NotificationStatus.FAILED, error=e.info)

        # Check and record with no await in between; only delivered sends count
        decision = self._limiter.is_allowed(payload.recipient, payload.priority)
        if not decision.allowed:
            retry_after = timedelta(milliseconds=decision.retry_after_ms or 1000)
            logger.warning(
                "Rate limit (%s) reached for %s, deferring %sms",
                decision.limit,
                payload.recipient,
                decision.retry_after_ms,
                extra=extra,
            )
            return await self._defer(
                payload,
                self._clock() + retry_after,
                ErrorInfo(
                    code=ErrorCode.RATE_LIMITED,
                    message=f"Rate limit exceeded ({decision.limit})",
                    retryable=True,
                    retry_after_ms=decision.retry_after_ms,
                ),
            )
        self._limiter.record(payload.recipient)

        outcome = await self._retry.execute(
            lambda: self._deliver(payload.channel, payload.recipient, content),
            operation=f"send {payload.channel.value}",
        )

        if not outcome.success:
            logger.error(
                "Notification to %s failed after %s attempt(s): %s",
                payload.recipient,
                outcome.attempts,
                outcome.error.message if outcome.error else "unknown",
                extra=extra,
            )
            result = self._result(
                payload, NotificationStatus.FAILED, error=outcome.error, attempts=outcome.attempts
            )
        else:
            delivered: DeliveryResult = outcome.value
            result = self._result(
                payload,
                NotificationStatus.SENT,
                success=True,
                external_id=delivered.external_id,
                attempts=outcome.attempts,
            )
            logger.info(
                "Sent %s notification to %s in %.1fms",
                payload.channel.value,
                payload.recipient,
                (time.perf_counter() - started) * 1000,
                extra=extra,
            )

        result.notification_id = await self._store(payload, content, result)
        return result

    async def send_bulk(self, payloads: list[NotificationPayload]) -> BulkNotificationResult:
        """Send in chunks of ``bulk_concurrency``; each chunk runs concurrently."""
        started = time.perf_counter()
        size = max(1, self._config.bulk_concurrency)
        results: list[NotificationResult] = []

        for i in range(0, len(payloads), size):
            chunk = payloads[i:i + size]
            results.extend(await asyncio.gather(*(self.send(p) for p in chunk)))

        deduplicated = sum(1 for r in results if r.status == NotificationStatus.DEDUPLICATED)
        deferred = sum(1 for r in results if r.status == NotificationStatus.DEFERRED)
        failed = sum(1 for r in results if not r.success)
        bulk = BulkNotificationResult(
            total=len(payloads),
            successful=len(results) - failed - deduplicated - deferred,
            failed=failed,
            deduplicated=deduplicated,
            deferred=deferred,
            results=results,
            processing_time_ms=(time.perf_counter() - started) * 1000,
        )
        logger.info(
            "Bulk send: %s total, %s sent, %s failed, %s deduplicated, %s deferred",
            bulk.total,
            bulk.successful,
            bulk.failed,
            bulk.deduplicated,
            bulk.deferred,
        )
        return bulk

    async def schedule_notification(
        self, payload: NotificationPayload, send_at: datetime
    ) -> NotificationResult:
        """Queue payload for send_at. A time already passed sends immediately."""
        if send_at <= self._clock():
            return await self.send(payload)
        if self._scheduler is None:
            return self._result(
                payload,
                NotificationStatus.FAILED,
                error=ErrorInfo(code=ErrorCode.INVALID_STATE, message="No scheduler configured"),
            )
        schedule_id = await self._scheduler.schedule(
            SCHEDULE_KIND, {"notification": payload.to_dict()}, send_at
        )
        logger.info(
            "Scheduled notification %s for %s at %s",
            schedule_id,
            payload.recipient,
            send_at.isoformat(),
            extra=log_context(payload.correlation_id),
        )
        return self._result(payload, NotificationStatus.QUEUED, success=True, schedule_id=schedule_id)

    async def cancel_scheduled(self, schedule_id: str) -> bool:
        if self._scheduler is None:
            return False
        cancelled = await self._scheduler.cancel(schedule_id)
        if cancelled:
            logger.info("Cancelled scheduled notification %s", schedule_id)
        return cancelled

    async def notify_operators(
        self,
        subject: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.HIGH,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> list[NotificationResult]:
        """Send to every configured operator. Operators bypass quiet hours."""
        recipients = self._config.operator_recipients
        if not recipients:
            logger.warning(
                "No operator recipients configured for: %s", subject, extra=log_context(correlation_id)
            )
            return []
        payloads = [
            NotificationPayload(
                channel=NotificationChannel.EMAIL if "@" in r else NotificationChannel.IN_APP,
                recipient=r,
                subject=subject,
                body=body,
                priority=priority,
                metadata=dict(metadata or {}),
                org_id=self._org_id,
                notification_type="operator_alert",
                respect_quiet_hours=False,
                correlation_id=correlation_id,
            )
            for r in recipients
        ]
        return (await self.send_bulk(payloads)).results

    async def get_history(self, recipient: str, limit: int = 50) -> list[dict[str, Any]]:
        records = await self._repo.find_many("notifications", where={"recipient": recipient})
        records.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return records[:limit]

    async def mark_as_read(self, notification_id: str, user_id: str) -> bool:
        record = await self._repo.find("notifications", notification_id)
        if record is None or record.get("recipient") != user_id:
            return False
        await self._repo.update(
            "notifications",
            notification_id,
            {"read_at": self._clock().isoformat(), "status": NotificationStatus.DELIVERED.value},
        )
        return True

    async def get_unread_count(self, user_id: str) -> int:
        return await self._repo.count(
            "notifications",
            where={
                "recipient": user_id,
                "channel": NotificationChannel.IN_APP.value,
                "read_at": None,
            },
        )

    def register_template(self, template: NotificationTemplate) -> None:
        self._templates[template.id] = template

    def get_template(self, template_id: str) -> NotificationTemplate | None:
        return self._templates.get(template_id)

    def render_template(self, template_id: str, data: dict[str, Any]) -> tuple[str, str]:
        template = self._templates.get(template_id)
        if template is None:
            raise OperationError(ErrorCode.NOT_FOUND, f"Template not found: {template_id}")
        merged = {**template.default_data, **data}
        return render(template.subject, merged), render(template.body_template, merged)

    # Internals

    async def _content(self, payload: NotificationPayload) -> DeliveryContent:
        subject, body = payload.subject, payload.body
        if payload.template_id:
            subject, body = self.render_template(payload.template_id, payload.template_data)

        data = dict(payload.metadata)
        user = await self._find_user(payload.recipient)
        if user:
            name = user.get("name") or ""
            data.update(
                {
                    "user.name": name,
                    "user.first_name": name.split(" ")[0] if name else "there",
                    "user.email": user.get("email", ""),
                }
            )
        return DeliveryContent(
            subject=render(subject, data),
            body=render(body, data),
            metadata=dict(payload.metadata),
            action_url=payload.action_url,
        )

    async def _find_user(self, recipient: str) -> dict[str, Any] | None:
        user = await self._repo.find("users", recipient)
        if user is None:
            found = await self._repo.find_many("users", where={"email": recipient}, limit=1)
            user = found[0] if found else None
        return user

    async def _deliver(
        self, channel: NotificationChannel, recipient: str, content: DeliveryContent
    ) -> DeliveryResult:
        if channel == NotificationChannel.EMAIL:
            result = await self._delivery.send_email(recipient, content)
        elif channel == NotificationChannel.SMS:
            result = await self._delivery.send_sms(recipient, content)
        elif channel == NotificationChannel.PUSH:
            result = await self._delivery.send_push(recipient, content)
        else:
            result = await self._delivery.send_in_app(recipient, content)

        if not result.success:
            info = error_for_status(
                result.status_code or 500,
                result.error or f"{channel.value} delivery failed",
                retry_after_ms=result.retry_after_ms,
            )
            raise OperationError(
                info.code,
                info.message,
                retryable=info.retryable,
                retry_after_ms=info.retry_after_ms,
                details=info.details,
            )
        return result

    async def _defer(
        self, payload: NotificationPayload, run_at: datetime, reason: ErrorInfo
    ) -> NotificationResult:
        if self._scheduler is None:
            return self._result(payload, NotificationStatus.FAILED, error=reason)
        schedule_id = await self._scheduler.schedule(
            SCHEDULE_KIND, {"notification": payload.to_dict()}, run_at
        )
        return self._result(
            payload, NotificationStatus.DEFERRED, success=True, schedule_id=schedule_id
        )

    async def _on_scheduled(self, job: ScheduledJob) -> None:
        payload = NotificationPayload.from_dict(job.payload["notification"])
        result = await self.send(payload)
        if not result.success:
            raise RuntimeError(
                f"Scheduled notification {job.id} failed: "
                f"{result.error.message if result.error else 'unknown error'}"
            )

    async def _store(
        self, payload: NotificationPayload, content: DeliveryContent, result: NotificationResult
    ) -> str | None:
        try:
            record = await self._repo.create(
                "notifications",
                {
                    "id": str(uuid.uuid4()),
                    "recipient": payload.recipient,
                    "channel": payload.channel.value,
                    "subject": content.subject,
                    "body": content.body,
                    "priority": payload.priority.value,
                    "status": result.status.value,
                    "external_id": result.external_id,
                    "error": result.error.message if result.error else None,
                    "read_at": None,
                    "org_id": payload.org_id or self._org_id,
                    "correlation_id": payload.correlation_id,
                    "notification_type": payload.notification_type,
                },
            )
        except Exception as e:
            logger.warning(
                "Could not store notification record for %s: %s",
                payload.recipient,
                e,
                extra=log_context(payload.correlation_id),
            )
            return None
        return record["id"]

    def _result(
        self,
        payload: NotificationPayload,
        status: NotificationStatus,
        success: bool = False,
        error: ErrorInfo | None = None,
        **fields: Any,
    ) -> NotificationResult:
        return NotificationResult(
            success=success,
            channel=payload.channel,
            recipient=payload.recipient,
            status=status,
            timestamp=self._clock(),
            error=error,
            **fields,
        )

    def _payload_from_params(self, params: dict[str, Any], context: ExecutionContext) -> NotificationPayload:
        try:
            channel = NotificationChannel(str(params.get("channel", "email")).lower())
        except ValueError:
            raise OperationError(
                ErrorCode.VALIDATION_ERROR, f"Unsupported channel: {params.get('channel')}"
            ) from None
        return NotificationPayload(
            channel=channel,
            recipient=require_param(params, "recipient", "to", "user_id"),
            subject=params.get("subject", ""),
            body=params.get("body") or params.get("message", ""),
            priority=coerce_priority(params.get("priority")),
            metadata=dict(params.get("metadata") or {}),
            action_url=params.get("action_url"),
            template_id=params.get("template_id"),
            template_data=dict(params.get("template_data") or {}),
            org_id=context.org_id,
            notification_type=params.get("notification_type"),
            respect_quiet_hours=params.get("respect_quiet_hours", True),
            deduplication_key=params.get("deduplication_key"),
            correlation_id=context.correlation_id or None,
        )

    def _bulk_payloads(self, params: dict[str, Any], context: ExecutionContext) -> list[NotificationPayload]:
        if params.get("notifications"):
            return [self._payload_from_params(p, context) for p in params["notifications"]]
        recipients = require_param(params, "recipients")
        shared = {k: v for k, v in params.items() if k != "recipients"}
        return [self._payload_from_params({**shared, "recipient": r}, context) for r in recipients]
