"""Opsflow: event-driven operations automation runtime."""

from .actions import (
    AuditLog,
    AutomationTrigger,
    CalendarManager,
    NotificationDispatcher,
    PipelineAssigner,
)
from .agent import ConfidenceGate, OrchestrationAgent
from .app import Application, IApplication
from .config import RuntimeConfig
from .decision import ILLMProvider, LLMDecisionProvider, LLMProvider
from .errors import ErrorCode, ErrorInfo, OperationError
from .event_bus import EventBus, IEventBus
from .inputs import DBTriggerAdapter, EmailAdapter, WebhookAdapter, WorkerEventAdapter
from .models import (
    Action,
    ActionType,
    AgentInput,
    Decision,
    DecisionRecord,
    Event,
    EventType,
    TraceEvent,
)
from .policies import (
    AsyncioScheduler,
    DeduplicationCache,
    QuietHoursEvaluator,
    RateLimiter,
    RetryPolicy,
)
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker

__all__ = [
    # Application
    "Application",
    "IApplication",
    "RuntimeConfig",
    # Models
    "Action",
    "ActionType",
    "AgentInput",
    "Decision",
    "DecisionRecord",
    "Event",
    "EventType",
    "TraceEvent",
    # Errors
    "ErrorCode",
    "ErrorInfo",
    "OperationError",
    # Components
    "IStorage",
    "Storage",
    "IEventBus",
    "EventBus",
    "ITracker",
    "Tracker",
    "ILLMProvider",
    "LLMProvider",
    "LLMDecisionProvider",
    # Inputs
    "DBTriggerAdapter",
    "EmailAdapter",
    "WebhookAdapter",
    "WorkerEventAdapter",
    # Policies
    "AsyncioScheduler",
    "DeduplicationCache",
    "QuietHoursEvaluator",
    "RateLimiter",
    "RetryPolicy",
    # Executors and agent
    "AuditLog",
    "AutomationTrigger",
    "CalendarManager",
    "NotificationDispatcher",
    "PipelineAssigner",
    "ConfidenceGate",
    "OrchestrationAgent",
]
