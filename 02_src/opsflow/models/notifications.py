"""Notification dispatch models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import ErrorInfo


class NotificationChannel(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"
    SMS = "sms"
    PUSH = "push"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DEDUPLICATED = "deduplicated"
    DEFERRED = "deferred"


@dataclass
class NotificationPayload:
    channel: NotificationChannel
    recipient: str
    subject: str = ""
    body: str = ""
    priority: NotificationPriority = NotificationPriority.NORMAL
    metadata: dict[str, Any] = field(default_factory=dict)
    action_url: str | None = None
    template_id: str | None = None
    template_data: dict[str, Any] = field(default_factory=dict)
    org_id: str | None = None
    notification_type: str | None = None
    respect_quiet_hours: bool = True
    deduplication_key: str | None = None
    correlation_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "channel": self.channel.value,
            "recipient": self.recipient,
            "subject": self.subject,
            "body": self.body,
            "priority": self.priority.value,
            "metadata": dict(self.metadata),
            "action_url": self.action_url,
            "template_id": self.template_id,
            "template_data": dict(self.template_data),
            "org_id": self.org_id,
            "notification_type": self.notification_type,
            "respect_quiet_hours": self.respect_quiet_hours,
            "deduplication_key": self.deduplication_key,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationPayload":
        values = dict(data)
        values["channel"] = NotificationChannel(values["channel"])
        values["priority"] = NotificationPriority(
            values.get("priority", NotificationPriority.NORMAL.value)
        )
        return cls(**values)


@dataclass
class NotificationResult:
    success: bool
    channel: NotificationChannel
    recipient: str
    status: NotificationStatus
    timestamp: datetime
    notification_id: str | None = None
    external_id: str | None = None
    schedule_id: str | None = None
    error: ErrorInfo | None = None
    attempts: int = 0

    @property
    def deduplicated(self) -> bool:
        return self.status == NotificationStatus.DEDUPLICATED

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)


@dataclass
class BulkNotificationResult:
    total: int
    successful: int
    failed: int
    deduplicated: int
    deferred: int
    results: list[NotificationResult]
    processing_time_ms: float


@dataclass
class NotificationTemplate:
    id: str
    name: str
    channel: NotificationChannel
    subject: str
    body_template: str
    default_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryContent:
    subject: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)
    action_url: str | None = None


@dataclass
class DeliveryResult:
    """Returned by a delivery collaborator for one send."""

    success: bool
    external_id: str | None = None
    status_code: int | None = None
    error: str | None = None
    retry_after_ms: int | None = None
