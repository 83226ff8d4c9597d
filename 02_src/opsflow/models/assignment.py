"""Pipeline assignment models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ..errors import ErrorInfo


class IntakeStatus(str, Enum):
    NEW = "NEW"
    ROUTING = "ROUTING"
    ASSIGNED = "ASSIGNED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


CLOSED_INTAKE_STATUSES = {IntakeStatus.COMPLETED.value, IntakeStatus.REJECTED.value}


class ItemStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"


@dataclass
class AssignmentState:
    """Snapshot captured before and after every assignment mutation."""

    pipeline_id: str | None = None
    pipeline_name: str | None = None
    stage_id: str | None = None
    stage_name: str | None = None
    assignee_id: str | None = None
    priority: int | None = None
    tags: list[str] = field(default_factory=list)
    status: str | None = None

    def to_dict(self) -> dict:
        return {
            "pipeline_id": self.pipeline_id,
            "pipeline_name": self.pipeline_name,
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "assignee_id": self.assignee_id,
            "priority": self.priority,
            "tags": list(self.tags),
            "status": self.status,
        }


@dataclass
class AssignmentResult:
    success: bool
    item_id: str
    timestamp: datetime
    previous_state: AssignmentState = field(default_factory=AssignmentState)
    new_state: AssignmentState = field(default_factory=AssignmentState)
    audit_log_id: str | None = None
    pipeline_item_id: str | None = None
    error: ErrorInfo | None = None
    warnings: list[str] = field(default_factory=list)
