"""Calendar operation models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import ErrorInfo


class CalendarEventStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ConflictType(str, Enum):
    OVERLAP = "OVERLAP"
    BUFFER_VIOLATION = "BUFFER_VIOLATION"
    DAILY_LIMIT = "DAILY_LIMIT"
    OUTSIDE_HOURS = "OUTSIDE_HOURS"
    LUNCH_CONFLICT = "LUNCH_CONFLICT"


CONFLICT_SEVERITY = {
    ConflictType.OVERLAP: 5,
    ConflictType.DAILY_LIMIT: 3,
    ConflictType.BUFFER_VIOLATION: 2,
    ConflictType.OUTSIDE_HOURS: 2,
    ConflictType.LUNCH_CONFLICT: 1,
}


@dataclass
class Attendee:
    email: str
    name: str | None = None
    id: str | None = None  # None for external attendees
    is_required: bool = True

    @property
    def is_external(self) -> bool:
        return self.id is None


@dataclass
class ReminderSpec:
    minutes_before: int
    method: str = "email"


@dataclass
class CreateEventRequest:
    user_id: str
    title: str
    start_time: datetime
    end_time: datetime
    org_id: str | None = None
    description: str | None = None
    location: str | None = None
    timezone: str | None = None
    attendees: list[Attendee] = field(default_factory=list)
    reminders: list[ReminderSpec] | None = None
    priority: int | None = None
    allow_conflicts: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConflictingEvent:
    event_id: str
    title: str
    start: datetime
    end: datetime
    conflict_type: ConflictType


@dataclass
class ConflictResult:
    has_conflicts: bool
    conflicts: list[ConflictingEvent] = field(default_factory=list)
    summary: str = "No conflicts detected"
    suggested_resolutions: list[str] = field(default_factory=list)
    severity: int = 0

    @property
    def has_overlap(self) -> bool:
        return any(c.conflict_type == ConflictType.OVERLAP for c in self.conflicts)


@dataclass
class TimeSlot:
    start: datetime
    end: datetime
    score: float
    reasoning: str = "Available slot"
    within_business_hours: bool = True
    during_lunch: bool = False


@dataclass
class CalendarResult:
    """Result of a calendar mutation, shaped like the assignment result."""

    success: bool
    event_id: str | None
    timestamp: datetime
    previous_state: dict | None = None
    new_state: dict | None = None
    audit_log_id: str | None = None
    conflicts: ConflictResult | None = None
    reminder_ids: list[str] = field(default_factory=list)
    error: ErrorInfo | None = None
    warnings: list[str] = field(default_factory=list)
