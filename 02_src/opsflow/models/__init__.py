"""Core data models for opsflow."""

from .inputs import (
    AdapterStats,
    AgentInput,
    InputMetadata,
    InputSource,
    ProcessingResult,
    ValidationResult,
)
from .events import (
    AgentPayload,
    AutomationPayload,
    BookingRequestedPayload,
    BusStats,
    CalendarPayload,
    CallbackRequestedPayload,
    CustomPayload,
    EmailPayload,
    EmitContext,
    EmitResult,
    Event,
    EventHistoryEntry,
    EventPayload,
    EventType,
    FormSubmittedPayload,
    HandlerResult,
    IntakePayload,
    PipelinePayload,
    SchedulePayload,
)
from .audit import ActorType, AuditLogEntry, PerformedBy, TraceEvent
from .decisions import (
    Action,
    ActionOutcome,
    ActionStatus,
    ActionType,
    Decision,
    DecisionRecord,
    DecisionState,
    ExecutionContext,
    GateResult,
    GateRoute,
    PendingDecision,
    StateTransition,
)
from .policies import (
    AssigneeCandidate,
    ExecutionLogEntry,
    JobStatus,
    QuietHoursResult,
    RateLimitDecision,
    ScheduledJob,
)
from .assignment import (
    AssignmentResult,
    AssignmentState,
    IntakeStatus,
    ItemStatus,
)
from .notifications import (
    BulkNotificationResult,
    DeliveryContent,
    DeliveryResult,
    NotificationChannel,
    NotificationPayload,
    NotificationPriority,
    NotificationResult,
    NotificationStatus,
    NotificationTemplate,
)
from .workflows import (
    InvocationResponse,
    TriggerContext,
    TriggerOptions,
    TriggerResult,
    WebhookResult,
    Workflow,
    WorkflowExecutionStatus,
    WorkflowStatus,
)
from .calendar import (
    Attendee,
    CalendarEventStatus,
    CalendarResult,
    ConflictingEvent,
    ConflictResult,
    ConflictType,
    CreateEventRequest,
    ReminderSpec,
    TimeSlot,
)

__all__ = [
    # Inputs
    "AdapterStats",
    "AgentInput",
    "InputMetadata",
    "InputSource",
    "ProcessingResult",
    "ValidationResult",
    # Events
    "AgentPayload",
    "AutomationPayload",
    "BookingRequestedPayload",
    "BusStats",
    "CalendarPayload",
    "CallbackRequestedPayload",
    "CustomPayload",
    "EmailPayload",
    "EmitContext",
    "EmitResult",
    "Event",
    "EventHistoryEntry",
    "EventPayload",
    "EventType",
    "FormSubmittedPayload",
    "HandlerResult",
    "IntakePayload",
    "PipelinePayload",
    "SchedulePayload",
    # Audit / tracing
    "ActorType",
    "AuditLogEntry",
    "PerformedBy",
    "TraceEvent",
    # Decisions
    "Action",
    "ActionOutcome",
    "ActionStatus",
    "ActionType",
    "Decision",
    "DecisionRecord",
    "DecisionState",
    "ExecutionContext",
    "GateResult",
    "GateRoute",
    "PendingDecision",
    "StateTransition",
    # Policies
    "AssigneeCandidate",
    "ExecutionLogEntry",
    "JobStatus",
    "QuietHoursResult",
    "RateLimitDecision",
    "ScheduledJob",
    # Assignment
    "AssignmentResult",
    "AssignmentState",
    "IntakeStatus",
    "ItemStatus",
    # Notifications
    "BulkNotificationResult",
    "DeliveryContent",
    "DeliveryResult",
    "NotificationChannel",
    "NotificationPayload",
    "NotificationPriority",
    "NotificationResult",
    "NotificationStatus",
    "NotificationTemplate",
    # Workflows
    "InvocationResponse",
    "TriggerContext",
    "TriggerOptions",
    "TriggerResult",
    "WebhookResult",
    "Workflow",
    "WorkflowExecutionStatus",
    "WorkflowStatus",
    # Calendar
    "Attendee",
    "CalendarEventStatus",
    "CalendarResult",
    "ConflictingEvent",
    "ConflictResult",
    "ConflictType",
    "CreateEventRequest",
    "ReminderSpec",
    "TimeSlot",
]
