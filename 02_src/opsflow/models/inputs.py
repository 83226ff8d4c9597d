"""Normalized input envelope and adapter result models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import ErrorInfo


class InputSource(str, Enum):
    """Where an AgentInput came from."""

    WEBHOOK = "webhook"
    EMAIL = "email"
    WORKER_EVENT = "worker_event"
    DB_TRIGGER = "db_trigger"
    API = "api"
    SCHEDULE = "schedule"


@dataclass(frozen=True)
class InputMetadata:
    """Routing hints attached at normalization."""

    tags: tuple[str, ...] = ()
    related_entity_ids: dict[str, str] = field(default_factory=dict)
    priority_hint: int | None = None
    sender_email: str | None = None
    sender_name: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "tags": list(self.tags),
            "related_entity_ids": dict(self.related_entity_ids),
            "priority_hint": self.priority_hint,
            "sender_email": self.sender_email,
            "sender_name": self.sender_name,
            "headers": dict(self.headers),
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class AgentInput:
    """Uniform decision request built by an input adapter.

    Immutable once published; correlation_id is assigned here and nowhere else.
    """

    source: InputSource
    type: str
    raw_content: str
    correlation_id: str
    timestamp: datetime
    structured_data: dict[str, Any] | None = None
    metadata: InputMetadata = field(default_factory=InputMetadata)

    def to_dict(self) -> dict:
        return {
            "source": self.source.value,
            "type": self.type,
            "raw_content": self.raw_content,
            "structured_data": self.structured_data,
            "metadata": self.metadata.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    sanitized: Any = None


@dataclass
class ProcessingResult:
    """Outcome of ``handle_input``. Never raised, always returned."""

    success: bool
    correlation_id: str | None = None
    input: AgentInput | None = None
    event_type: str | None = None
    event_id: str | None = None
    handlers_invoked: int = 0
    skipped: bool = False
    skip_reason: str | None = None
    warnings: list[str] = field(default_factory=list)
    error: ErrorInfo | None = None
    processing_time_ms: float = 0.0

    @property
    def event_emitted(self) -> bool:
        return self.event_id is not None


@dataclass
class AdapterStats:
    """Per-adapter counters."""

    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    validation_errors: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
