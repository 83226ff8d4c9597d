"""Database change-notification adapter.

Receives ``{model, action, before, after, timestamp?, triggered_by?}`` records
from an ORM hook or CDC feed, works out which fields changed and whether any
of them matter, and publishes one typed event per significant change.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ..event_bus import IEventBus
from ..logging_config import get_logger, log_context
from ..models import (
    AdapterStats,
    BookingRequestedPayload,
    CalendarPayload,
    CustomPayload,
    EventPayload,
    EventType,
    InputMetadata,
    InputSource,
    IntakePayload,
    PipelinePayload,
    ProcessingResult,
    ValidationResult,
)
from ..models.events import payload_type_for
from .base import BaseInputAdapter, format_validation_errors

logger = get_logger(__name__)


class ChangeType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityType(str, Enum):
    INTAKE = "Intake"
    PIPELINE = "Pipeline"
    PIPELINE_ITEM = "PipelineItem"
    PIPELINE_STAGE = "PipelineStage"
    CALENDAR_EVENT = "CalendarEvent"
    BOOKING = "Booking"
    USER = "User"
    CONTACT = "Contact"
    ORGANIZATION = "Organization"
    NOTIFICATION = "Notification"
    TASK = "Task"


DEFAULT_IGNORED_FIELDS = (
    "updatedAt",
    "createdAt",
    "version",
    "lastModified",
    "modifiedAt",
    "lastAccessed",
    "accessedAt",
    "viewCount",
    "impressions",
    "checksum",
    "hash",
    "etag",
)

DEFAULT_SIGNIFICANT_FIELDS: dict[str, list[str]] = {
    EntityType.INTAKE.value: [
        "status", "priority", "assignedTo", "assignedToId", "pipelineId", "stageId", "category", "urgency",
    ],
    EntityType.PIPELINE.value: ["name", "isActive", "isArchived"],
    EntityType.PIPELINE_ITEM.value: ["stageId", "pipelineId", "assignedToId", "status", "priority", "dueDate"],
    EntityType.PIPELINE_STAGE.value: ["name", "order", "isActive"],
    EntityType.CALENDAR_EVENT.value: ["startTime", "endTime", "title", "status", "isCancelled", "attendees"],
    EntityType.BOOKING.value: ["status", "date", "time", "duration", "isCancelled", "isConfirmed"],
    EntityType.USER.value: ["role", "isActive", "permissions"],
    EntityType.CONTACT.value: ["email", "status", "tags"],
    EntityType.TASK.value: ["status", "priority", "assignedToId", "dueDate", "completedAt"],
}

ACTION_TO_CHANGE_TYPE: dict[str, ChangeType] = {
    "create": ChangeType.CREATE,
    "createMany": ChangeType.CREATE,
    "update": ChangeType.UPDATE,
    "updateMany": ChangeType.UPDATE,
    "upsert": ChangeType.UPDATE,
    "delete": ChangeType.DELETE,
    "deleteMany": ChangeType.DELETE,
}

# None means the change is recorded but nothing is published.
EVENT_MAPPINGS: dict[str, dict[ChangeType, str | None]] = {
    EntityType.INTAKE.value: {
        ChangeType.CREATE: EventType.INTAKE_CREATED.value,
        ChangeType.UPDATE: EventType.INTAKE_UPDATED.value,
        ChangeType.DELETE: None,
    },
    EntityType.PIPELINE_ITEM.value: {
        ChangeType.CREATE: EventType.INTAKE_CREATED.value,
        ChangeType.UPDATE: EventType.PIPELINE_STAGE_CHANGED.value,
        ChangeType.DELETE: None,
    },
    EntityType.CALENDAR_EVENT.value: {
        ChangeType.CREATE: EventType.CALENDAR_EVENT_CREATED.value,
        ChangeType.UPDATE: EventType.CALENDAR_EVENT_UPDATED.value,
        ChangeType.DELETE: EventType.CALENDAR_EVENT_CANCELLED.value,
    },
    EntityType.BOOKING.value: {
        ChangeType.CREATE: EventType.BOOKING_REQUESTED.value,
        ChangeType.UPDATE: EventType.BOOKING_REQUESTED.value,
        ChangeType.DELETE: EventType.CALENDAR_EVENT_CANCELLED.value,
    },
    EntityType.PIPELINE.value: {
        ChangeType.CREATE: None,
        ChangeType.UPDATE: EventType.PIPELINE_COMPLETED.value,
        ChangeType.DELETE: None,
    },
}

ID_FIELDS = ("id", "Id", "_id", "uuid", "uid")
STAGE_FIELDS = ("stageId", "pipelineStageId", "stage")


@dataclass
class FieldChange:
    field: str
    old_value: Any
    new_value: Any
    is_significant: bool

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "is_significant": self.is_significant,
        }


@dataclass
class ChangeDetection:
    change_type: ChangeType
    entity_type: str
    changes: list[FieldChange] = field(default_factory=list)
    significant_fields: list[str] = field(default_factory=list)
    summary: str = ""

    @property
    def has_significant_changes(self) -> bool:
        return bool(self.significant_fields) or self.change_type == ChangeType.DELETE


@dataclass
class EventMapping:
    event_type: str | None
    should_emit: bool
    skip_reason: str | None = None


class DBChange(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = Field(min_length=1)
    action: str = Field(min_length=1)
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    args: dict[str, Any] | None = None
    timestamp: datetime | None = None
    triggered_by: str | None = Field(
        default=None, validation_alias=AliasChoices("triggered_by", "triggeredBy")
    )


def change_type_for(action: str) -> ChangeType:
    return ACTION_TO_CHANGE_TYPE.get(action, ChangeType.UPDATE)


def entity_id_of(change: DBChange) -> str | None:
    data = change.after or change.before
    if not data:
        return None
    for name in ID_FIELDS:
        if data.get(name) is not None:
            return str(data[name])
    return None


def is_inherently_significant(field_name: str, value: Any) -> bool:
    if field_name.endswith("Id") and value is not None:
        return True
    if field_name in ("status", "priority"):
        return True
    return field_name.startswith("is") and isinstance(value, bool)


def is_change_significant(field_name: str, old: Any, new: Any) -> bool:
    if (old is None) != (new is None):
        if not any(marker in field_name for marker in ("At", "Date", "Time")):
            return True
    if field_name == "status" or "Status" in field_name:
        return True
    if field_name == "priority" or "Priority" in field_name:
        return True
    return "assignee" in field_name or "Assigned" in field_name


def _format_date(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    try:
        return datetime.fromisoformat(str(value)).date().isoformat()
    except ValueError:
        return str(value)


def _format_time(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%H:%M")
    try:
        return datetime.fromisoformat(str(value)).strftime("%H:%M")
    except ValueError:
        return str(value)


class DBTriggerAdapter(BaseInputAdapter):
    source = InputSource.DB_TRIGGER
    name = "db_trigger"

    def __init__(
        self,
        event_bus: IEventBus,
        org_id: str | None = None,
        ignored_fields: list[str] | None = None,
        significant_fields: dict[str, list[str]] | None = None,
        process_batch_operations: bool = False,
    ):
        super().__init__(event_bus, org_id)
        self._ignored = set(DEFAULT_IGNORED_FIELDS) | set(ignored_fields or [])
        self._significant = {k: list(v) for k, v in DEFAULT_SIGNIFICANT_FIELDS.items()}
        self._significant.update(significant_fields or {})
        self._process_batch = process_batch_operations

        self._by_entity: dict[str, int] = {}
        self._by_change: dict[str, int] = {}
        self._significant_count = 0
        self._filtered_count = 0

    def validate(self, raw: Any) -> ValidationResult:
        if not isinstance(raw, dict):
            return ValidationResult(is_valid=False, errors=["Input must be a non-null object"])

        errors = []
        if "before" not in raw and "after" not in raw:
            errors.append("At least one of before or after must be provided")
        try:
            change = DBChange.model_validate(raw)
        except ValidationError as e:
            return ValidationResult(is_valid=False, errors=errors + format_validation_errors(e))
        if errors:
            return ValidationResult(is_valid=False, errors=errors)

        warnings = []
        if change.action not in ACTION_TO_CHANGE_TYPE:
            warnings.append(f'Unknown action "{change.action}", will attempt to process')
        if not self._process_batch and "Many" in change.action:
            warnings.append(
                f'Batch operation "{change.action}" detected. '
                "Set process_batch_operations=True to enable."
            )
        return ValidationResult(is_valid=True, warnings=warnings, sanitized=change)

    # Change detection

    def detect_entity_type(self, model: str) -> str:
        for entity in EntityType:
            if model.lower() == entity.value.lower():
                return entity.value
        return model

    def detect_changes(self, change: DBChange, entity_type: str) -> ChangeDetection:
        change_type = change_type_for(change.action)
        significant_for_entity = self._significant.get(entity_type, [])
        result = ChangeDetection(change_type=change_type, entity_type=entity_type)

        if change_type == ChangeType.CREATE and change.after:
            for name, value in change.after.items():
                if name in self._ignored:
                    continue
                significant = name in significant_for_entity or is_inherently_significant(name, value)
                result.changes.append(FieldChange(name, None, value, significant))

        elif change_type == ChangeType.DELETE and change.before:
            for name, value in change.before.items():
                if name in self._ignored:
                    continue
                result.changes.append(FieldChange(name, value, None, True))

        elif change_type == ChangeType.UPDATE and change.before is not None and change.after is not None:
            names = list(dict.fromkeys([*change.before, *change.after]))
            for name in names:
                if name in self._ignored:
                    continue
                old, new = change.before.get(name), change.after.get(name)
                if old == new:
                    continue
                significant = name in significant_for_entity or is_change_significant(name, old, new)
                result.changes.append(FieldChange(name, old, new, significant))

        result.significant_fields = [c.field for c in result.changes if c.is_significant]
        result.summary = self.summarize(result)
        return result

    @staticmethod
    def summarize(result: ChangeDetection) -> str:
        verb = {ChangeType.CREATE: "Created", ChangeType.DELETE: "Deleted"}.get(
            result.change_type, "Updated"
        )
        summary = f"{verb} {result.entity_type}"
        if result.change_type == ChangeType.UPDATE and result.changes:
            names = [c.field for c in result.changes]
            summary += ": " + ", ".join(names[:5])
            if len(names) > 5:
                summary += f" (+{len(names) - 5} more)"
            if result.significant_fields:
                summary += f" [significant: {', '.join(result.significant_fields)}]"
        return summary

    def map_to_event(self, entity_type: str, result: ChangeDetection) -> EventMapping:
        mappings = EVENT_MAPPINGS.get(entity_type)
        if mappings is None:
            event_type = f"custom:db_{entity_type.lower()}_{result.change_type.value.lower()}"
            if result.has_significant_changes:
                return EventMapping(event_type, True)
            return EventMapping(event_type, False, "no_significant_changes")

        event_type = mappings[result.change_type]
        if event_type is None:
            return EventMapping(None, False, "unmapped_change")

        if result.change_type == ChangeType.UPDATE and not result.has_significant_changes:
            return EventMapping(event_type, False, "no_significant_changes")
        return EventMapping(event_type, True)

    # Processing

    async def _process(
        self, change: DBChange, validation: ValidationResult, started: float
    ) -> ProcessingResult:
        entity_type = self.detect_entity_type(change.model)
        result = self.detect_changes(change, entity_type)
        change_name = result.change_type.value.lower()

        self._by_entity[entity_type] = self._by_entity.get(entity_type, 0) + 1
        self._by_change[result.change_type.value] = self._by_change.get(result.change_type.value, 0) + 1
        if result.has_significant_changes:
            self._significant_count += 1

        entity_id = entity_id_of(change)
        related = {"entity_type": entity_type}
        if entity_id:
            related["entity_id"] = entity_id

        agent_input = self.normalize_input(
            change.model_dump(mode="json"),
            f"db_{entity_type.lower()}_{change_name}",
            metadata=InputMetadata(
                tags=("db", entity_type.lower(), change_name),
                related_entity_ids=related,
                extra={
                    "summary": result.summary,
                    "significant_fields": list(result.significant_fields),
                    "triggered_by": change.triggered_by,
                },
            ),
            timestamp=change.timestamp if change.timestamp and change.timestamp.tzinfo else None,
        )

        if "Many" in change.action and not self._process_batch:
            self._filtered_count += 1
            return self._skipped_result(agent_input, "batch_operation", started, validation.warnings)

        mapping = self.map_to_event(entity_type, result)
        if not mapping.should_emit:
            self._filtered_count += 1
            return self._skipped_result(
                agent_input, mapping.skip_reason or "filtered", started, validation.warnings
            )

        payload = self._build_payload(mapping.event_type, change, entity_type, entity_id, result)
        emit_result = await self.emit_event(mapping.event_type, payload, agent_input)

        logger.info(
            "DB change %s",
            result.summary,
            extra=log_context(agent_input.correlation_id, entity_id=entity_id),
        )
        return self._success_result(agent_input, emit_result, started, validation.warnings)

    def _build_payload(
        self,
        event_type: str,
        change: DBChange,
        entity_type: str,
        entity_id: str | None,
        result: ChangeDetection,
    ) -> EventPayload:
        data = dict(change.after or change.before or {})
        entity_id = entity_id or ""
        change_info = {
            "entity_type": entity_type,
            "change_type": result.change_type.value,
            "changed_fields": [c.field for c in result.changes],
            "significant_fields": list(result.significant_fields),
            "triggered_by": change.triggered_by,
            "model": change.model,
            "action": change.action,
        }
        payload_type = payload_type_for(event_type)

        if payload_type is IntakePayload:
            contact = {
                "email": data.get("email") or data.get("contactEmail") or data.get("senderEmail"),
                "name": data.get("name") or data.get("contactName") or data.get("fullName"),
                "phone": data.get("phone") or data.get("phoneNumber") or data.get("contactPhone"),
            }
            return IntakePayload(
                intake_id=entity_id,
                title=data.get("title") or data.get("type") or data.get("category") or "unknown",
                status=data.get("status"),
                priority=data.get("priority") if isinstance(data.get("priority"), int) else None,
                source=InputSource.DB_TRIGGER.value,
                data={
                    **data,
                    "changes": [c.to_dict() for c in result.changes],
                    "contact": contact if any(contact.values()) else None,
                    "change": change_info,
                },
            )

        if payload_type is PipelinePayload:
            stage_change = next((c for c in result.changes if c.field in STAGE_FIELDS), None)
            return PipelinePayload(
                pipeline_id=data.get("pipelineId"),
                item_id=entity_id,
                stage_id=(stage_change.new_value if stage_change else None) or data.get("stageId"),
                previous_stage_id=stage_change.old_value if stage_change else None,
                data={**change_info, "entity_kind": data.get("entityType") or "intake"},
            )

        if payload_type is BookingRequestedPayload:
            return BookingRequestedPayload(
                booking_id=entity_id,
                date=_format_date(data.get("date") or data.get("startTime") or data.get("startDate")),
                time=_format_time(data.get("time") or data.get("startTime")),
                guest_email=data.get("guestEmail") or data.get("email"),
                guest_name=data.get("guestName") or data.get("name"),
                duration_minutes=data.get("duration") or data.get("durationMinutes"),
                notes=data.get("purpose") or data.get("title") or data.get("description"),
                fields={**data, "change": change_info},
            )

        if payload_type is CalendarPayload:
            cancelled = (
                result.change_type == ChangeType.DELETE
                or data.get("isCancelled") is True
                or data.get("status") == "cancelled"
            )
            return CalendarPayload(
                event_id=entity_id,
                title=data.get("title") or data.get("purpose"),
                start_time=str(data["startTime"]) if data.get("startTime") else None,
                end_time=str(data["endTime"]) if data.get("endTime") else None,
                data={**change_info, "cancelled": cancelled},
            )

        if payload_type is CustomPayload:
            return CustomPayload(
                name=event_type.split(":", 1)[1],
                data={"id": entity_id, "record": data, **change_info},
            )

        raise ValueError(f"No payload builder for {event_type}")

    # Configuration and stats

    def add_ignored_fields(self, *fields: str) -> None:
        self._ignored.update(fields)

    def remove_ignored_fields(self, *fields: str) -> None:
        self._ignored.difference_update(fields)

    def set_significant_fields(self, entity_type: str, fields: list[str]) -> None:
        self._significant[entity_type] = list(fields)

    def get_significant_fields(self, entity_type: str) -> list[str]:
        return list(self._significant.get(entity_type, []))

    def get_stats(self) -> AdapterStats:
        stats = super().get_stats()
        stats.extra.update(
            by_entity_type=dict(self._by_entity),
            by_change_type=dict(self._by_change),
            significant_changes=self._significant_count,
            filtered_changes=self._filtered_count,
        )
        return stats

    def reset_stats(self) -> None:
        super().reset_stats()
        self._by_entity = {}
        self._by_change = {}
        self._significant_count = 0
        self._filtered_count = 0
