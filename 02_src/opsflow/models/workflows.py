"""External workflow trigger models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import ErrorInfo


class WorkflowExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    WAITING = "waiting"
    TIMED_OUT = "timed_out"
    QUEUED = "queued"


@dataclass
class Workflow:
    id: str
    name: str
    org_id: str
    is_active: bool = True
    webhook_url: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: dict) -> "Workflow":
        return cls(
            id=record["id"],
            name=record.get("name", record["id"]),
            org_id=record.get("org_id", "default"),
            is_active=record.get("is_active", True),
            webhook_url=record.get("webhook_url"),
            description=record.get("description"),
            tags=list(record.get("tags", [])),
        )


@dataclass
class TriggerContext:
    org_id: str = "default"
    user_id: str | None = None
    source_event: str | None = None
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TriggerOptions:
    timeout_ms: int | None = None
    retries: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    priority: int | None = None
    method: str = "POST"


@dataclass
class TriggerResult:
    success: bool
    workflow_id: str
    status: WorkflowExecutionStatus
    triggered_at: datetime
    execution_time_ms: float = 0.0
    execution_id: str | None = None
    data: Any = None
    error: ErrorInfo | None = None
    attempts: int = 0
    schedule_id: str | None = None
    completed_at: datetime | None = None

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)


@dataclass
class WebhookResult(TriggerResult):
    status_code: int = 0
    headers: dict[str, str] = field(default_factory=dict)
    raw_response: str | None = None


@dataclass
class InvocationResponse:
    """What an external workflow engine answered."""

    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class WorkflowStatus:
    execution_id: str
    workflow_id: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: float | None = None
    error: str | None = None
