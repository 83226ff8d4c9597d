"""Audit and tracing models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ActorType(str, Enum):
    AGENT = "agent"
    HUMAN = "human"
    SYSTEM = "system"


@dataclass
class PerformedBy:
    type: ActorType
    id: str


@dataclass
class AuditLogEntry:
    """One state-changing operation, written whether or not downstream steps succeed."""

    entity_type: str
    entity_id: str
    action: str
    performed_by: PerformedBy
    timestamp: datetime
    previous_state: dict | None = None
    new_state: dict | None = None
    reason: str | None = None
    correlation_id: str | None = None
    org_id: str | None = None
    metadata: dict = field(default_factory=dict)
    id: str | None = None


@dataclass
class TraceEvent:
    """Observability trace event."""

    id: str
    event_type: str
    actor: str
    data: dict
    timestamp: datetime
