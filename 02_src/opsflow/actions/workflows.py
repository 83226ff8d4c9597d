"""External workflow trigger executor."""

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
from pydantic import BaseModel, Field, ValidationError

from ..config import RateLimitConfig, RetryConfig, WorkflowConfig
from ..errors import ErrorCode, ErrorInfo, OperationError, error_for_status, parse_retry_after
from ..event_bus import IEventBus
from ..inputs.base import format_validation_errors
from ..logging_config import get_logger, log_context
from ..models import (
    Action,
    ActionOutcome,
    ActionStatus,
    ActionType,
    AutomationPayload,
    EmitContext,
    EventType,
    ExecutionContext,
    InvocationResponse,
    ScheduledJob,
    TriggerContext,
    TriggerOptions,
    TriggerResult,
    WebhookResult,
    Workflow,
    WorkflowExecutionStatus,
    WorkflowStatus,
)
from ..policies import ExecutionLog, IRateLimiter, IScheduler, RateLimiter, RetryPolicy
from ..repository import IRepository, IWorkflowInvoker
from .audit import AuditLog
from .base import BaseActionExecutor, require_param
from .calendar import parse_time

logger = get_logger(__name__)

SCHEDULE_KIND = "automation"

REMOTE_STATUSES = {
    "success": WorkflowExecutionStatus.SUCCESS,
    "completed": WorkflowExecutionStatus.SUCCESS,
    "running": WorkflowExecutionStatus.RUNNING,
    "waiting": WorkflowExecutionStatus.WAITING,
    "queued": WorkflowExecutionStatus.QUEUED,
    "error": WorkflowExecutionStatus.FAILED,
    "failed": WorkflowExecutionStatus.FAILED,
    "canceled": WorkflowExecutionStatus.CANCELLED,
    "cancelled": WorkflowExecutionStatus.CANCELLED,
}


class TriggerRequest(BaseModel):
    workflow_id: str = Field(min_length=1)
    trigger_data: dict[str, Any]
    org_id: str = Field(min_length=1)
    timeout_ms: int | None = Field(default=None, gt=0)
    retries: int | None = Field(default=None, ge=0, le=10)
    priority: int | None = Field(default=None, ge=1, le=5)
    headers: dict[str, str] = Field(default_factory=dict)


def _remote_status(body: Any) -> WorkflowExecutionStatus:
    if isinstance(body, dict):
        raw = body.get("status") or (body.get("data") or {}).get("status")
        if isinstance(raw, str):
            return REMOTE_STATUSES.get(raw.lower(), WorkflowExecutionStatus.SUCCESS)
    return WorkflowExecutionStatus.SUCCESS


def _remote_execution_id(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    for key in ("execution_id", "executionId", "id"):
        if body.get(key):
            return str(body[key])
    data = body.get("data")
    if isinstance(data, dict) and data.get("executionId"):
        return str(data["executionId"])
    return None


class AutomationTrigger(BaseActionExecutor):
    """Starts workflows on an external engine.

    Workflows are looked up in the repository ``workflows`` collection. A
    workflow with a ``webhook_url`` is posted to directly; otherwise the
    invoker resolves it by id.
    """

    handles = (ActionType.TRIGGER_AUTOMATION,)
    name = "automation_trigger"

    def __init__(
        self,
        repository: IRepository,
        invoker: IWorkflowInvoker,
        audit_log: AuditLog,
        event_bus: IEventBus | None = None,
        rate_limiter: IRateLimiter | None = None,
        retry: RetryPolicy | None = None,
        scheduler: IScheduler | None = None,
        execution_log: ExecutionLog | None = None,
        config: WorkflowConfig | None = None,
        org_id: str = "default",
        agent_id: str = "orchestration-agent",
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        super().__init__(audit_log, org_id, agent_id)
        self._config = config or WorkflowConfig()
        self._repo = repository
        self._invoker = invoker
        self._event_bus = event_bus
        self._limiter = rate_limiter or RateLimiter(
            RateLimitConfig(
                per_window=self._config.rate_limit_per_workflow,
                per_hour=None,
                per_day=None,
                urgent_burst=0,
                global_per_window=self._config.global_rate_limit,
            )
        )
        self._retry = retry or RetryPolicy()
        self._scheduler = scheduler
        self._log = execution_log or ExecutionLog()
        self._http = http_client
        self._clock = clock
        self._stats = {
            "total_triggers": 0,
            "successful_triggers": 0,
            "failed_triggers": 0,
            "rate_limited": 0,
            "scheduled": 0,
            "total_execution_time_ms": 0.0,
        }

        if scheduler is not None:
            scheduler.register_handler(SCHEDULE_KIND, self._on_scheduled)

    # Executor entry

    async def _execute(self, action: Action, context: ExecutionContext) -> ActionOutcome:
        params = action.params
        trigger_context = TriggerContext(
            org_id=context.org_id,
            user_id=context.performed_by.id,
            source_event=params.get("source_event"),
            correlation_id=context.correlation_id or None,
            metadata=dict(params.get("metadata") or {}),
        )
        options = TriggerOptions(
            timeout_ms=params.get("timeout_ms"),
            retries=params.get("retries"),
            headers=dict(params.get("headers") or {}),
            priority=action.priority,
        )
        payload = dict(params.get("payload") or params.get("data") or {})

        if params.get("run_at"):
            result = await self.schedule_automation(
                require_param(params, "workflow_id"),
                payload,
                parse_time(params["run_at"], "run_at"),
                trigger_context,
            )
        elif params.get("workflow_id"):
            result = await self.trigger(params["workflow_id"], payload, trigger_context, options)
        else:
            result = await self.trigger_by_name(
                require_param(params, "workflow_name", "name"), payload, trigger_context, options
            )

        status = None
        if result.success and result.status == WorkflowExecutionStatus.QUEUED:
            status = ActionStatus.DEFERRED if result.error else ActionStatus.QUEUED
        return self._outcome(
            action,
            result.success,
            error=None if result.success else result.error,
            status=status,
            workflow_id=result.workflow_id,
            execution_id=result.execution_id,
            schedule_id=result.schedule_id,
            workflow_status=result.status.value,
            attempts=result.attempts,
        )

    # Operations

    async def trigger(
        self,
        workflow_id: str,
        payload: dict[str, Any],
        context: TriggerContext | None = None,
        options: TriggerOptions | None = None,
    ) -> TriggerResult:
        ctx = context or TriggerContext(org_id=self._org_id)
        opts = options or TriggerOptions()
        started = time.perf_counter()
        triggered_at = self._clock()
        self._stats["total_triggers"] += 1
        extra = log_context(ctx.correlation_id, workflow_id=workflow_id)

        try:
            request = TriggerRequest(
                workflow_id=workflow_id,
                trigger_data=payload,
                org_id=ctx.org_id,
                timeout_ms=opts.timeout_ms,
                retries=opts.retries,
                priority=opts.priority,
                headers=opts.headers,
            )
        except ValidationError as e:
            return self._failed_result(
                workflow_id,
                triggered_at,
                started,
                ErrorInfo(
                    code=ErrorCode.VALIDATION_ERROR,
                    message="Invalid trigger payload",
                    details={"errors": format_validation_errors(e)},
                ),
            )

        decision = self._limiter.try_acquire(workflow_id, opts.priority)
        if not decision.allowed:
            self._stats["rate_limited"] += 1
            reason = ErrorInfo(
                code=ErrorCode.RATE_LIMITED,
                message=f"Rate limit exceeded for workflow {workflow_id} ({decision.limit})",
                retryable=True,
                retry_after_ms=decision.retry_after_ms,
            )
            if self._scheduler is None:
                logger.warning("%s", reason.message, extra=extra)
                return self._failed_result(workflow_id, triggered_at, started, reason)
            run_at = self._clock() + timedelta(milliseconds=decision.retry_after_ms or 1000)
            schedule_id = await self._scheduler.schedule(
                SCHEDULE_KIND, self._job_payload(workflow_id, payload, ctx), run_at
            )
            logger.info(
                "Workflow %s rate limited, deferred to %s", workflow_id, run_at.isoformat(), extra=extra
            )
            return TriggerResult(
                success=True,
                workflow_id=workflow_id,
                status=WorkflowExecutionStatus.QUEUED,
                triggered_at=triggered_at,
                schedule_id=schedule_id,
                error=reason,
            )

        entry = self._log.add(
            workflow_id,
            WorkflowExecutionStatus.PENDING.value,
            triggered_at=triggered_at,
            context={"correlation_id": ctx.correlation_id, "org_id": ctx.org_id, "source_event": ctx.source_event},
        )

        try:
            workflow = await self._fetch_workflow(workflow_id, ctx)
        except OperationError as e:
            self._log.complete(entry.id, WorkflowExecutionStatus.FAILED.value, error=e.info.message)
            return self._failed_result(workflow_id, triggered_at, started, e.info, execution_id=entry.id)

        self._log.complete(entry.id, WorkflowExecutionStatus.RUNNING.value)
        body = {
            **request.trigger_data,
            "_meta": {
                "execution_id": entry.id,
                "correlation_id": ctx.correlation_id,
                "org_id": ctx.org_id,
                "user_id": ctx.user_id,
                "source_event": ctx.source_event,
                "triggered_at": triggered_at.isoformat(),
            },
        }
        retry_config = RetryConfig(
            max_attempts=(request.retries if request.retries is not None else self._config.default_retries) + 1,
            base_delay_ms=self._retry.config.base_delay_ms,
            max_delay_ms=self._retry.config.max_delay_ms,
            total_timeout_ms=self._retry.config.total_timeout_ms,
        )
        outcome = await self._retry.execute(
            lambda: self._invoke(workflow, body, request.timeout_ms, request.headers),
            config=retry_config,
            operation=f"trigger {workflow_id}",
        )

        elapsed = (time.perf_counter() - started) * 1000
        if not outcome.success:
            error = outcome.error or ErrorInfo(code=ErrorCode.INTERNAL_ERROR, message="Unknown failure")
            status = (
                WorkflowExecutionStatus.TIMED_OUT
                if error.code in (ErrorCode.TIMEOUT, ErrorCode.EXECUTION_TIMEOUT)
                else WorkflowExecutionStatus.FAILED
            )
            self._log.complete(entry.id, status.value, error=error.message)
            logger.error(
                "Workflow %s failed after %s attempt(s): %s",
                workflow_id,
                outcome.attempts,
                error.message,
                extra=extra,
            )
            result = self._failed_result(
                workflow_id, triggered_at, started, error,
                status=status, execution_id=entry.id, attempts=outcome.attempts,
            )
            await self._emit(EventType.AUTOMATION_FAILED, result, ctx)
            return result

        response: InvocationResponse = outcome.value
        status = _remote_status(response.body)
        self._log.complete(entry.id, status.value)
        self._stats["successful_triggers"] += 1
        self._stats["total_execution_time_ms"] += elapsed
        result = TriggerResult(
            success=True,
            workflow_id=workflow_id,
            status=status,
            triggered_at=triggered_at,
            execution_time_ms=elapsed,
            execution_id=_remote_execution_id(response.body) or entry.id,
            data=response.body,
            attempts=outcome.attempts,
            completed_at=self._clock(),
        )
        logger.info(
            "Triggered workflow %s (%s) in %.1fms",
            workflow_id,
            status.value,
            elapsed,
            extra=log_context(ctx.correlation_id, execution_id=result.execution_id),
        )
        await self._write_audit(
            self._audit_context(ctx),
            "workflow",
            workflow_id,
            "TRIGGER_AUTOMATION",
            None,
            {"execution_id": result.execution_id, "status": status.value},
            metadata={"attempts": outcome.attempts, "source_event": ctx.source_event},
        )
        await self._emit(EventType.AUTOMATION_TRIGGERED, result, ctx)
        return result

    async def trigger_by_name(
        self,
        name: str,
        payload: dict[str, Any],
        context: TriggerContext | None = None,
        options: TriggerOptions | None = None,
    ) -> TriggerResult:
        ctx = context or TriggerContext(org_id=self._org_id)
        matches = await self._repo.find_many("workflows", where={"name": name, "org_id": ctx.org_id}, limit=1)
        if not matches:
            started = time.perf_counter()
            self._stats["total_triggers"] += 1
            return self._failed_result(
                name,
                self._clock(),
                started,
                ErrorInfo(code=ErrorCode.WORKFLOW_NOT_FOUND, message=f"Workflow not found: {name}"),
            )
        return await self.trigger(matches[0]["id"], payload, ctx, options)

    async def trigger_webhook(
        self,
        url: str,
        payload: dict[str, Any],
        options: TriggerOptions | None = None,
    ) -> WebhookResult:
        """POST payload to an arbitrary URL under the retry policy."""
        opts = options or TriggerOptions()
        started = time.perf_counter()
        triggered_at = self._clock()
        timeout = (opts.timeout_ms or self._config.default_timeout_ms) / 1000

        async def send() -> httpx.Response:
            response = await self._client().request(
                opts.method,
                url,
                json=payload,
                headers={"Content-Type": "application/json", **opts.headers},
                timeout=timeout,
            )
            if response.status_code >= 400:
                info = error_for_status(
                    response.status_code,
                    f"Webhook returned {response.status_code}: {response.reason_phrase}",
                    retry_after_ms=parse_retry_after(response.headers.get("retry-after")),
                )
                raise OperationError(
                    info.code,
                    info.message,
                    retryable=info.retryable,
                    retry_after_ms=info.retry_after_ms,
                    details=info.details,
                )
            return response

        retries = opts.retries if opts.retries is not None else self._config.default_retries
        outcome = await self._retry.execute(
            send,
            config=RetryConfig(
                max_attempts=retries + 1,
                base_delay_ms=self._retry.config.base_delay_ms,
                max_delay_ms=self._retry.config.max_delay_ms,
                total_timeout_ms=self._retry.config.total_timeout_ms,
            ),
            operation=f"webhook {url}",
        )
        elapsed = (time.perf_counter() - started) * 1000

        if not outcome.success:
            logger.warning("Webhook %s failed after %s attempt(s)", url, outcome.attempts)
            return WebhookResult(
                success=False,
                workflow_id=url,
                status=WorkflowExecutionStatus.FAILED,
                triggered_at=triggered_at,
                execution_time_ms=elapsed,
                error=outcome.error,
                attempts=outcome.attempts,
                completed_at=self._clock(),
                status_code=(outcome.error.details.get("status_code", 0) if outcome.error else 0),
            )

        response: httpx.Response = outcome.value
        try:
            data = response.json()
        except ValueError:
            data = None
        return WebhookResult(
            success=True,
            workflow_id=url,
            status=WorkflowExecutionStatus.SUCCESS,
            triggered_at=triggered_at,
            execution_time_ms=elapsed,
            execution_id=_remote_execution_id(data),
            data=data,
            attempts=outcome.attempts,
            completed_at=self._clock(),
            status_code=response.status_code,
            headers=dict(response.headers),
            raw_response=response.text,
        )

    async def schedule_automation(
        self,
        workflow_id: str,
        payload: dict[str, Any],
        run_at: datetime,
        context: TriggerContext | None = None,
    ) -> TriggerResult:
        ctx = context or TriggerContext(org_id=self._org_id)
        triggered_at = self._clock()
        if self._scheduler is None:
            return self._failed_result(
                workflow_id,
                triggered_at,
                time.perf_counter(),
                ErrorInfo(code=ErrorCode.INVALID_STATE, message="No scheduler configured"),
            )
        if run_at <= triggered_at:
            return await self.trigger(workflow_id, payload, ctx)

        schedule_id = await self._scheduler.schedule(
            SCHEDULE_KIND, self._job_payload(workflow_id, payload, ctx), run_at
        )
        self._stats["scheduled"] += 1
        logger.info(
            "Scheduled workflow %s for %s",
            workflow_id,
            run_at.isoformat(),
            extra=log_context(ctx.correlation_id, schedule_id=schedule_id),
        )
        return TriggerResult(
            success=True,
            workflow_id=workflow_id,
            status=WorkflowExecutionStatus.QUEUED,
            triggered_at=triggered_at,
            schedule_id=schedule_id,
        )

    async def cancel_scheduled(self, schedule_id: str) -> bool:
        if self._scheduler is None:
            return False
        return await self._scheduler.cancel(schedule_id)

    def get_workflow_status(self, execution_id: str) -> WorkflowStatus | None:
        entry = self._log.get(execution_id)
        if entry is None:
            return None
        return WorkflowStatus(
            execution_id=entry.id,
            workflow_id=entry.subject_id,
            status=entry.status,
            started_at=entry.triggered_at,
            finished_at=entry.completed_at,
            duration_ms=entry.duration_ms,
            error=entry.error,
        )

    def get_recent_executions(self, limit: int = 20, workflow_id: str | None = None):
        return self._log.recent(limit=limit, subject_id=workflow_id)

    async def list_workflows(self, org_id: str | None = None, active_only: bool = False) -> list[Workflow]:
        where: dict[str, Any] = {"org_id": org_id or self._org_id}
        if active_only:
            where["is_active"] = True
        return [Workflow.from_record(r) for r in await self._repo.find_many("workflows", where=where)]

    def get_stats(self) -> dict[str, Any]:
        successful = self._stats["successful_triggers"]
        return {
            "total_triggers": self._stats["total_triggers"],
            "successful_triggers": successful,
            "failed_triggers": self._stats["failed_triggers"],
            "rate_limited": self._stats["rate_limited"],
            "scheduled": self._stats["scheduled"],
            "pending_scheduled": (
                sum(1 for j in self._scheduler.list_pending() if j.kind == SCHEDULE_KIND)
                if self._scheduler is not None
                else 0
            ),
            "average_execution_time_ms": (
                self._stats["total_execution_time_ms"] / successful if successful else 0.0
            ),
            "executions": self._log.stats(),
        }

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # Internals

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def _fetch_workflow(self, workflow_id: str, ctx: TriggerContext) -> Workflow:
        record = await self._repo.find("workflows", workflow_id)
        if record is None:
            raise OperationError(ErrorCode.WORKFLOW_NOT_FOUND, f"Workflow not found: {workflow_id}")
        workflow = Workflow.from_record(record)
        if workflow.org_id != ctx.org_id:
            raise OperationError(
                ErrorCode.PERMISSION_DENIED, "Workflow does not belong to this organization"
            )
        if not workflow.is_active:
            raise OperationError(ErrorCode.WORKFLOW_INACTIVE, f"Workflow {workflow_id} is not active")
        return workflow

    async def _invoke(
        self,
        workflow: Workflow,
        body: dict[str, Any],
        timeout_ms: int | None,
        headers: dict[str, str],
    ) -> InvocationResponse:
        response = await self._invoker.invoke(
            workflow.webhook_url or workflow.id,
            body,
            timeout_ms=timeout_ms or self._config.default_timeout_ms,
            headers=headers,
        )
        if response.status_code >= 400:
            info = error_for_status(
                response.status_code,
                f"Workflow {workflow.id} returned {response.status_code}",
                retry_after_ms=parse_retry_after(response.headers.get("retry-after")),
            )
            raise OperationError(
                info.code,
                info.message,
                retryable=info.retryable,
                retry_after_ms=info.retry_after_ms,
                details=info.details,
            )
        return response

    async def _on_scheduled(self, job: ScheduledJob) -> None:
        data = job.payload
        context = TriggerContext(**data["context"])
        result = await self.trigger(data["workflow_id"], data["payload"], context)
        if not result.success:
            raise RuntimeError(
                f"Scheduled workflow {data['workflow_id']} failed: "
                f"{result.error.message if result.error else 'unknown error'}"
            )

    @staticmethod
    def _job_payload(workflow_id: str, payload: dict[str, Any], ctx: TriggerContext) -> dict[str, Any]:
        return {
            "workflow_id": workflow_id,
            "payload": payload,
            "context": {
                "org_id": ctx.org_id,
                "user_id": ctx.user_id,
                "source_event": ctx.source_event,
                "correlation_id": ctx.correlation_id,
                "metadata": dict(ctx.metadata),
            },
        }

    def _failed_result(
        self,
        workflow_id: str,
        triggered_at: datetime,
        started: float,
        error: ErrorInfo,
        status: WorkflowExecutionStatus = WorkflowExecutionStatus.FAILED,
        execution_id: str | None = None,
        attempts: int = 0,
    ) -> TriggerResult:
        self._stats["failed_triggers"] += 1
        return TriggerResult(
            success=False,
            workflow_id=workflow_id,
            status=status,
            triggered_at=triggered_at,
            execution_time_ms=(time.perf_counter() - started) * 1000,
            execution_id=execution_id,
            error=error,
            attempts=attempts,
            completed_at=self._clock(),
        )

    def _audit_context(self, ctx: TriggerContext) -> ExecutionContext:
        return ExecutionContext(
            correlation_id=ctx.correlation_id or "",
            org_id=ctx.org_id,
            performed_by=self.default_context().performed_by,
        )

    async def _emit(self, event_type: EventType, result: TriggerResult, ctx: TriggerContext) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.emit(
            event_type,
            AutomationPayload(
                job_id=result.execution_id or str(uuid.uuid4()),
                workflow_id=result.workflow_id,
                status=result.status.value,
                result=result.data,
                error=result.error.message if result.error else None,
                attempts_made=result.attempts,
                permanent_failure=not result.success and not result.retryable,
                data={"source_event": ctx.source_event},
            ),
            EmitContext(
                source="agent",
                correlation_id=ctx.correlation_id,
                org_id=ctx.org_id,
                metadata={"executor": self.name},
            ),
        )
