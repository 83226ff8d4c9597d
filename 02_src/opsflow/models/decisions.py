"""Decision, action and coordinator state models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import ErrorInfo
from .audit import PerformedBy
from .inputs import AgentInput


class ActionType(str, Enum):
    """Declarative instructions an executor can carry out."""

    ASSIGN_PIPELINE = "assign_pipeline"
    REASSIGN_PIPELINE = "reassign_pipeline"
    MOVE_TO_STAGE = "move_to_stage"
    SET_ASSIGNEE = "set_assignee"
    SET_PRIORITY = "set_priority"
    ADD_TAGS = "add_tags"
    CREATE_EVENT = "create_event"
    UPDATE_EVENT = "update_event"
    RESCHEDULE_EVENT = "reschedule_event"
    CANCEL_EVENT = "cancel_event"
    SEND_NOTIFICATION = "send_notification"
    BULK_NOTIFICATION = "bulk_notification"
    TRIGGER_AUTOMATION = "trigger_automation"
    ESCALATE = "escalate"
    NO_ACTION = "no_action"


@dataclass
class Action:
    type: ActionType
    params: dict[str, Any] = field(default_factory=dict)
    priority: int = 3
    requires_confirmation: bool = False


@dataclass
class Decision:
    """Produced by the external decision provider."""

    intent: str
    confidence: float
    urgency: int = 3
    actions: list[Action] = field(default_factory=list)
    requires_approval: bool = False
    approval_reason: str | None = None
    reasoning: str | None = None
    warnings: list[str] = field(default_factory=list)


class DecisionState(str, Enum):
    RECEIVED = "received"
    DECISION_REQUESTED = "decision_requested"
    DECISION_RECEIVED = "decision_received"
    AUTO_EXECUTE = "auto_execute"
    PENDING_APPROVAL = "pending_approval"
    ESCALATED = "escalated"
    EXECUTED = "executed"
    REJECTED = "rejected"
    FAILED = "failed"


class GateRoute(str, Enum):
    AUTO_EXECUTE = "auto_execute"
    REQUIRE_APPROVAL = "require_approval"
    ESCALATE = "escalate"


@dataclass
class GateResult:
    route: GateRoute
    reason: str


class ActionStatus(str, Enum):
    EXECUTED = "executed"
    QUEUED = "queued"
    DEFERRED = "deferred"
    DEDUPLICATED = "deduplicated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ExecutionContext:
    """Per-dispatch context handed to executors."""

    correlation_id: str
    org_id: str
    performed_by: PerformedBy
    dry_run: bool = False


@dataclass
class ActionOutcome:
    action_type: ActionType
    success: bool
    status: ActionStatus
    error: ErrorInfo | None = None
    audit_log_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)


@dataclass
class StateTransition:
    state: DecisionState
    at: datetime
    note: str | None = None


@dataclass
class DecisionRecord:
    """Everything the coordinator did for one input."""

    id: str
    correlation_id: str
    input_type: str
    input_source: str
    state: DecisionState
    created_at: datetime
    transitions: list[StateTransition] = field(default_factory=list)
    decision: Decision | None = None
    gate_reason: str | None = None
    outcomes: list[ActionOutcome] = field(default_factory=list)
    error: ErrorInfo | None = None
    completed_at: datetime | None = None


@dataclass
class PendingDecision:
    id: str
    record: DecisionRecord
    input: AgentInput
    decision: Decision
    created_at: datetime
    expires_at: datetime
