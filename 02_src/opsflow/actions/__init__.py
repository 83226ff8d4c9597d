"""Action executors and the audit log they share."""

from .assignment import PipelineAssigner
from .audit import AuditLog, IAuditStore
from .base import BaseActionExecutor, IActionExecutor, require_param
from .calendar import REMINDER_PRESETS, CalendarManager, recommended_reminders
from .notifications import BUILTIN_TEMPLATES, NotificationDispatcher, render
from .workflows import AutomationTrigger

__all__ = [
    "AuditLog",
    "AutomationTrigger",
    "BUILTIN_TEMPLATES",
    "BaseActionExecutor",
    "CalendarManager",
    "IActionExecutor",
    "IAuditStore",
    "NotificationDispatcher",
    "PipelineAssigner",
    "REMINDER_PRESETS",
    "recommended_reminders",
    "render",
    "require_param",
]
