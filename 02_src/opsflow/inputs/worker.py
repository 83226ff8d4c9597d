"""Background-job lifecycle adapter (completed/failed/progress/scheduled...)."""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ..event_bus import IEventBus
from ..logging_config import get_logger, log_context
from ..models import (
    AdapterStats,
    AutomationPayload,
    CalendarPayload,
    CustomPayload,
    EventPayload,
    EventType,
    InputMetadata,
    InputSource,
    ProcessingResult,
    SchedulePayload,
    ValidationResult,
)
from ..models.events import normalize_event_type, payload_type_for
from .base import BaseInputAdapter, format_validation_errors

logger = get_logger(__name__)

WorkerEventKind = Literal[
    "completed", "failed", "progress", "scheduled", "stalled", "active", "delayed", "waiting"
]

ALWAYS_EMITTED = ("completed", "failed", "scheduled", "stalled")
AUTOMATION_QUEUES = ("automation", "email", "notifications", "reports", "sync")

_COMPLETED = EventType.AUTOMATION_COMPLETED.value
_FAILED = EventType.AUTOMATION_FAILED.value
_TRIGGERED = EventType.AUTOMATION_TRIGGERED.value
_SCHEDULED = EventType.SCHEDULE_TRIGGERED.value
_REMINDER = EventType.CALENDAR_REMINDER_DUE.value

QUEUE_EVENT_MAP: dict[str, dict[str, str]] = {
    "email": {"completed": _COMPLETED, "failed": _FAILED, "progress": _TRIGGERED, "scheduled": _SCHEDULED},
    "notifications": {"completed": _COMPLETED, "failed": _FAILED, "progress": _TRIGGERED, "scheduled": _SCHEDULED},
    "automation": {"completed": _COMPLETED, "failed": _FAILED, "progress": _TRIGGERED, "scheduled": _TRIGGERED},
    "reports": {"completed": _COMPLETED, "failed": _FAILED, "progress": _TRIGGERED, "scheduled": _SCHEDULED},
    "reminders": {"completed": _REMINDER, "failed": _FAILED, "scheduled": _REMINDER},
    "sync": {"completed": _COMPLETED, "failed": _FAILED, "progress": _TRIGGERED},
    "cleanup": {"completed": _COMPLETED, "failed": _FAILED},
    "analytics": {"completed": _COMPLETED, "failed": _FAILED, "progress": _TRIGGERED},
}

DEFAULT_EVENT_MAP: dict[str, str] = {
    "completed": _COMPLETED,
    "failed": _FAILED,
    "progress": _TRIGGERED,
    "scheduled": _SCHEDULED,
    "stalled": _FAILED,
    "active": _TRIGGERED,
    "delayed": _TRIGGERED,
    "waiting": _TRIGGERED,
}

SUPPORTED_PAYLOADS = (AutomationPayload, CalendarPayload, SchedulePayload, CustomPayload)


class WorkerJob(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    return_value: Any = Field(default=None, validation_alias=AliasChoices("return_value", "returnValue"))
    failed_reason: str | None = Field(
        default=None, validation_alias=AliasChoices("failed_reason", "failedReason")
    )
    stacktrace: str | None = None
    progress: float | dict[str, Any] | None = None
    timestamp: float | None = None
    attempts_made: int | None = Field(
        default=None, validation_alias=AliasChoices("attempts_made", "attemptsMade")
    )
    opts: dict[str, Any] = Field(default_factory=dict)
    repeat_job_key: str | None = Field(
        default=None, validation_alias=AliasChoices("repeat_job_key", "repeatJobKey")
    )


class WorkerEvent(BaseModel):
    event_type: WorkerEventKind = Field(validation_alias=AliasChoices("event_type", "eventType"))
    queue_name: str = Field(min_length=1, validation_alias=AliasChoices("queue_name", "queueName"))
    job: WorkerJob
    worker_id: str | None = Field(default=None, validation_alias=AliasChoices("worker_id", "workerId"))


def progress_value(progress: Any) -> float:
    if isinstance(progress, (int, float)):
        return float(progress)
    if isinstance(progress, dict):
        for key in ("percent", "percentage", "value"):
            if isinstance(progress.get(key), (int, float)):
                return float(progress[key])
    return 0.0


def _ms_to_datetime(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return None


class WorkerEventAdapter(BaseInputAdapter):
    """Turns job-queue lifecycle notifications into automation/schedule/reminder events."""

    source = InputSource.WORKER_EVENT
    name = "worker"

    def __init__(
        self,
        event_bus: IEventBus,
        org_id: str | None = None,
        queue_event_map: dict[str, dict[str, str]] | None = None,
        emit_progress_events: bool = False,
        progress_threshold: float = 10,
        track_retries: bool = True,
        max_retries_for_permanent_failure: int = 3,
        debug: bool = False,
    ):
        super().__init__(event_bus, org_id)
        self._queue_map = {queue: dict(events) for queue, events in QUEUE_EVENT_MAP.items()}
        for queue, events in (queue_event_map or {}).items():
            self.add_queue_mapping(queue, events)
        self._emit_progress = emit_progress_events
        self._progress_threshold = progress_threshold
        self._track_retries = track_retries
        self._max_retries = max_retries_for_permanent_failure
        self._debug = debug

        self._progress: dict[str, float] = {}
        self._retries: dict[str, int] = {}
        self._worker_stats = self._empty_worker_stats()

    @staticmethod
    def _empty_worker_stats() -> dict[str, Any]:
        return {
            "completed_jobs": 0,
            "failed_jobs": 0,
            "progress_updates": 0,
            "scheduled_triggers": 0,
            "stalled_jobs": 0,
            "permanent_failures": 0,
            "retried_jobs": 0,
            "by_queue": {},
        }

    def validate(self, raw: Any) -> ValidationResult:
        if not isinstance(raw, dict):
            return ValidationResult(is_valid=False, errors=["Input must be a non-null object"])
        try:
            event = WorkerEvent.model_validate(raw)
        except ValidationError as e:
            return ValidationResult(is_valid=False, errors=format_validation_errors(e))

        warnings = []
        if event.job.timestamp is None:
            warnings.append("Missing job.timestamp, will use current time")
        if event.event_type == "failed" and not event.job.failed_reason:
            warnings.append("Failed job missing failed_reason")
        if event.event_type == "progress" and event.job.progress is None:
            warnings.append("Progress event missing progress value")

        return ValidationResult(is_valid=True, warnings=warnings, sanitized=event)

    def event_type_for(self, queue_name: str, event_type: str) -> str:
        mapping = self._queue_map.get(queue_name.lower(), {})
        return mapping.get(event_type) or DEFAULT_EVENT_MAP.get(event_type, _TRIGGERED)

    def add_queue_mapping(self, queue_name: str, events: dict[str, str]) -> None:
        normalized = {}
        for lifecycle, event_type in events.items():
            canonical = normalize_event_type(event_type)
            if payload_type_for(canonical) not in SUPPORTED_PAYLOADS:
                raise ValueError(f"Worker events cannot publish {canonical}")
            normalized[lifecycle] = canonical
        self._queue_map.setdefault(queue_name.lower(), {}).update(normalized)

    async def _process(
        self, event: WorkerEvent, validation: ValidationResult, started: float
    ) -> ProcessingResult:
        job = event.job
        queue = event.queue_name.lower()
        job_id = job.id or f"{queue}_{int(datetime.now(timezone.utc).timestamp() * 1000)}"
        job_key = f"{queue}:{job_id}"

        self._update_worker_stats(event, queue, job_key)

        related = {"job_id": job_id, "queue_name": event.queue_name}
        for field_name, key in (("entityId", "entity_id"), ("workflowId", "workflow_id")):
            if job.data.get(field_name):
                related[key] = str(job.data[field_name])

        agent_input = self.normalize_input(
            event.model_dump(mode="json"),
            f"worker:{event.queue_name}:{event.event_type}",
            metadata=InputMetadata(
                tags=("worker", event.queue_name, event.event_type, job.name),
                related_entity_ids=related,
                extra={"worker_id": event.worker_id} if event.worker_id else {},
            ),
            timestamp=_ms_to_datetime(job.timestamp),
        )

        if not self._should_emit(event, job_key):
            return self._skipped_result(agent_input, "filtered", started, validation.warnings)

        permanent = False
        if event.event_type == "failed" and self._track_retries:
            permanent = self._track_failure(event, job_key)

        event_type = self.event_type_for(queue, event.event_type)
        payload = self._build_payload(event_type, event, job_id, permanent)
        emit_result = await self.emit_event(event_type, payload, agent_input)

        return self._success_result(agent_input, emit_result, started, validation.warnings)

    def _should_emit(self, event: WorkerEvent, job_key: str) -> bool:
        if event.event_type in ALWAYS_EMITTED:
            return True
        if event.event_type == "progress":
            if not self._emit_progress:
                return False
            current = progress_value(event.job.progress)
            if abs(current - self._progress.get(job_key, 0.0)) >= self._progress_threshold:
                self._progress[job_key] = current
                return True
            return False
        return self._debug

    def _track_failure(self, event: WorkerEvent, job_key: str) -> bool:
        """Count the retry and report whether the job has now failed for good."""
        retries = self._retries.get(job_key, 0) + 1
        self._retries[job_key] = retries
        self._worker_stats["retried_jobs"] += 1

        max_attempts = event.job.opts.get("attempts") or self._max_retries
        attempts_made = event.job.attempts_made if event.job.attempts_made is not None else retries
        if attempts_made < max_attempts:
            return False

        self._worker_stats["permanent_failures"] += 1
        self._retries.pop(job_key, None)
        logger.warning(
            "Job %s on %s permanently failed after %s attempts: %s",
            event.job.name,
            event.queue_name,
            attempts_made,
            event.job.failed_reason,
            extra=log_context(None, job_key=job_key, max_attempts=max_attempts),
        )
        return True

    def _build_payload(
        self, event_type: str, event: WorkerEvent, job_id: str, permanent: bool
    ) -> EventPayload:
        job = event.job
        data = job.data
        payload_type = payload_type_for(event_type)

        if payload_type is CalendarPayload:
            due = _ms_to_datetime(data.get("dueAt")) or _ms_to_datetime(job.timestamp)
            return CalendarPayload(
                event_id=data.get("eventId"),
                title=data.get("message") or f"Reminder: {job.name}",
                start_time=due.isoformat() if due else None,
                reminder_id=data.get("reminderId") or job_id,
                data={"recipient_ids": list(data.get("recipientIds") or []), "queue_name": event.queue_name},
            )

        if payload_type is SchedulePayload:
            scheduled_for = _ms_to_datetime(job.timestamp)
            return SchedulePayload(
                job_id=job_id,
                queue_name=event.queue_name,
                job_name=job.name,
                scheduled_for=scheduled_for.isoformat() if scheduled_for else None,
                data={**data, "repeat_job_key": job.repeat_job_key, "repeat": job.opts.get("repeat")},
            )

        if payload_type is CustomPayload:
            return CustomPayload(name=event_type.split(":", 1)[1], data=dict(data))

        execution_time_ms = 0
        if isinstance(data.get("processedOn"), (int, float)) and isinstance(data.get("finishedOn"), (int, float)):
            execution_time_ms = data["finishedOn"] - data["processedOn"]

        failed = event.event_type in ("failed", "stalled")
        return AutomationPayload(
            job_id=job_id,
            queue_name=event.queue_name,
            job_name=job.name,
            workflow_id=data.get("workflowId") or job.name,
            status="failure" if failed else "success",
            result=job.return_value if event.event_type == "completed" else None,
            error=job.failed_reason,
            attempts_made=job.attempts_made or 0,
            max_attempts=job.opts.get("attempts") or self._max_retries,
            permanent_failure=permanent,
            data={
                **({} if event.queue_name.lower() in AUTOMATION_QUEUES else {"job_data": data}),
                "workflow_name": data.get("workflowName") or job.name,
                "execution_time_ms": execution_time_ms,
                "event_type": event.event_type,
            },
        )

    def _update_worker_stats(self, event: WorkerEvent, queue: str, job_key: str) -> None:
        stats = self._worker_stats
        per_queue = stats["by_queue"].setdefault(queue, {"completed": 0, "failed": 0})

        if event.event_type == "completed":
            stats["completed_jobs"] += 1
            per_queue["completed"] += 1
            self._progress.pop(job_key, None)
            self._retries.pop(job_key, None)
        elif event.event_type == "failed":
            stats["failed_jobs"] += 1
            per_queue["failed"] += 1
        elif event.event_type == "progress":
            stats["progress_updates"] += 1
        elif event.event_type == "scheduled":
            stats["scheduled_triggers"] += 1
        elif event.event_type == "stalled":
            stats["stalled_jobs"] += 1
            per_queue["failed"] += 1

    def get_stats(self) -> AdapterStats:
        stats = super().get_stats()
        stats.extra.update({k: v for k, v in self._worker_stats.items() if k != "by_queue"})
        stats.extra["by_queue"] = {q: dict(c) for q, c in self._worker_stats["by_queue"].items()}
        return stats

    def get_job_retry_count(self, queue_name: str, job_id: str) -> int:
        return self._retries.get(f"{queue_name.lower()}:{job_id}", 0)

    def clear_job_tracking(self, queue_name: str, job_id: str) -> None:
        key = f"{queue_name.lower()}:{job_id}"
        self._progress.pop(key, None)
        self._retries.pop(key, None)

    def reset_stats(self) -> None:
        super().reset_stats()
        self._worker_stats = self._empty_worker_stats()
        self._progress.clear()
        self._retries.clear()
