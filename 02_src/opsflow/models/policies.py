"""Models shared by the execution policies."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int | None = None
    limit: str | None = None  # which window refused


@dataclass
class QuietHoursResult:
    in_quiet_hours: bool
    resume_at: datetime | None = None


@dataclass
class ExecutionLogEntry:
    id: str
    subject_id: str
    status: str
    triggered_at: datetime
    completed_at: datetime | None = None
    duration_ms: float | None = None
    error: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class ScheduledJob:
    """A unit of delayed work, persisted as JSON so it can be re-armed after restart."""

    id: str
    kind: str
    payload: dict[str, Any]
    run_at: datetime
    created_at: datetime
    status: JobStatus = JobStatus.PENDING
    error: str | None = None


@dataclass
class AssigneeCandidate:
    id: str
    workload: int = 0
    name: str | None = None
    available: bool = True
