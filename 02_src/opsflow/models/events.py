"""Event bus models: event types, payload variants and emit results."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

CUSTOM_PREFIX = "custom:"
WILDCARD = "*"


class EventType(str, Enum):
    """Known event types on the bus. Dynamic ``custom:<name>`` types are allowed too."""

    INTAKE_CREATED = "intake:created"
    INTAKE_UPDATED = "intake:updated"
    INTAKE_ASSIGNED = "intake:assigned"
    INTAKE_ESCALATED = "intake:escalated"
    INTAKE_ROUTING_FAILED = "intake:routing_failed"

    FORM_SUBMITTED = "webhook:form_submitted"
    BOOKING_REQUESTED = "webhook:booking_requested"
    CALLBACK_RECEIVED = "webhook:callback_received"

    EMAIL_RECEIVED = "email:received"
    EMAIL_REPLIED = "email:replied"

    PIPELINE_STAGE_CHANGED = "pipeline:stage_changed"
    PIPELINE_COMPLETED = "pipeline:completed"
    PIPELINE_ITEM_CREATED = "pipeline:item_created"
    PIPELINE_ITEM_UPDATED = "pipeline:item_updated"

    CALENDAR_EVENT_CREATED = "calendar:event_created"
    CALENDAR_EVENT_UPDATED = "calendar:event_updated"
    CALENDAR_EVENT_CANCELLED = "calendar:event_cancelled"
    CALENDAR_REMINDER_DUE = "calendar:reminder_due"

    AUTOMATION_TRIGGERED = "automation:triggered"
    AUTOMATION_COMPLETED = "automation:completed"
    AUTOMATION_FAILED = "automation:failed"

    AGENT_DECISION_MADE = "agent:decision_made"
    AGENT_ACTION_EXECUTED = "agent:action_executed"
    AGENT_ERROR = "agent:error"

    SCHEDULE_TRIGGERED = "schedule:triggered"


# Payload variants, one per event family


@dataclass
class IntakePayload:
    intake_id: str
    title: str | None = None
    status: str | None = None
    priority: int | None = None
    source: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class FormSubmittedPayload:
    submission_id: str
    form_source: str
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class BookingRequestedPayload:
    booking_id: str
    date: str | None = None
    time: str | None = None
    guest_email: str | None = None
    guest_name: str | None = None
    duration_minutes: int | None = None
    notes: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class CallbackRequestedPayload:
    callback_id: str
    phone: str | None = None
    email: str | None = None
    name: str | None = None
    preferred_time: str | None = None
    reason: str | None = None


@dataclass
class EmailPayload:
    email_id: str
    from_address: str
    to: list[str]
    subject: str
    body: str
    email_type: str
    thread_id: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelinePayload:
    pipeline_id: str | None = None
    item_id: str | None = None
    stage_id: str | None = None
    previous_stage_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class CalendarPayload:
    event_id: str | None = None
    title: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    reminder_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class AutomationPayload:
    job_id: str | None = None
    queue_name: str | None = None
    job_name: str | None = None
    workflow_id: str | None = None
    status: str | None = None
    result: Any = None
    error: str | None = None
    attempts_made: int = 0
    max_attempts: int | None = None
    permanent_failure: bool = False
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class SchedulePayload:
    job_id: str | None = None
    queue_name: str | None = None
    job_name: str | None = None
    scheduled_for: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentPayload:
    decision_id: str
    state: str
    intent: str | None = None
    confidence: float | None = None
    action_types: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class CustomPayload:
    name: str
    data: dict[str, Any] = field(default_factory=dict)


EventPayload = Union[
    IntakePayload,
    FormSubmittedPayload,
    BookingRequestedPayload,
    CallbackRequestedPayload,
    EmailPayload,
    PipelinePayload,
    CalendarPayload,
    AutomationPayload,
    SchedulePayload,
    AgentPayload,
    CustomPayload,
]

PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.INTAKE_CREATED: IntakePayload,
    EventType.INTAKE_UPDATED: IntakePayload,
    EventType.INTAKE_ASSIGNED: IntakePayload,
    EventType.INTAKE_ESCALATED: IntakePayload,
    EventType.INTAKE_ROUTING_FAILED: IntakePayload,
    EventType.FORM_SUBMITTED: FormSubmittedPayload,
    EventType.BOOKING_REQUESTED: BookingRequestedPayload,
    EventType.CALLBACK_RECEIVED: CallbackRequestedPayload,
    EventType.EMAIL_RECEIVED: EmailPayload,
    EventType.EMAIL_REPLIED: EmailPayload,
    EventType.PIPELINE_STAGE_CHANGED: PipelinePayload,
    EventType.PIPELINE_COMPLETED: PipelinePayload,
    EventType.PIPELINE_ITEM_CREATED: PipelinePayload,
    EventType.PIPELINE_ITEM_UPDATED: PipelinePayload,
    EventType.CALENDAR_EVENT_CREATED: CalendarPayload,
    EventType.CALENDAR_EVENT_UPDATED: CalendarPayload,
    EventType.CALENDAR_EVENT_CANCELLED: CalendarPayload,
    EventType.CALENDAR_REMINDER_DUE: CalendarPayload,
    EventType.AUTOMATION_TRIGGERED: AutomationPayload,
    EventType.AUTOMATION_COMPLETED: AutomationPayload,
    EventType.AUTOMATION_FAILED: AutomationPayload,
    EventType.AGENT_DECISION_MADE: AgentPayload,
    EventType.AGENT_ACTION_EXECUTED: AgentPayload,
    EventType.AGENT_ERROR: AgentPayload,
    EventType.SCHEDULE_TRIGGERED: SchedulePayload,
}


def normalize_event_type(event_type: "EventType | str") -> str:
    """Return the canonical string for a known or custom event type.

    Raises ValueError for strings that are neither.
    """
    if isinstance(event_type, EventType):
        return event_type.value
    if event_type == WILDCARD or event_type.startswith(CUSTOM_PREFIX):
        return event_type
    return EventType(event_type).value


def payload_type_for(event_type: str) -> type:
    if event_type.startswith(CUSTOM_PREFIX):
        return CustomPayload
    return PAYLOAD_TYPES[EventType(event_type)]


@dataclass
class EmitContext:
    source: str = "system"
    correlation_id: str | None = None
    org_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Event:
    """A broadcast on the bus."""

    id: str
    type: str
    payload: EventPayload
    source: str
    correlation_id: str
    timestamp: datetime
    org_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class HandlerResult:
    subscription_id: str
    success: bool
    execution_time_ms: float
    error: str | None = None


@dataclass
class EmitResult:
    event_id: str
    event_type: str
    timestamp: datetime
    handlers_invoked: int = 0
    results: list[HandlerResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class EventHistoryEntry:
    event: Event
    handlers_invoked: int
    errors: list[str] = field(default_factory=list)
    processed: bool = True


@dataclass
class BusStats:
    total_events_emitted: int
    total_handlers_invoked: int
    total_errors: int
    event_counts: dict[str, int]
    subscription_counts: dict[str, int]
    history_size: int
