"""Calendar executor with conflict detection and reminders.

Repository collections used:

- ``calendar_events``: id, user_id, org_id, title, description, start_time,
  end_time (ISO 8601), timezone, location, attendees, status, priority,
  metadata
- ``event_reminders``: id, event_id, reminder_time, minutes_before, method,
  status
"""

import re
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from ..config import CalendarConfig
from ..errors import ErrorCode, ErrorInfo, OperationError
from ..event_bus import IEventBus
from ..logging_config import get_logger, log_context
from ..models import (
    Action,
    ActionOutcome,
    ActionType,
    Attendee,
    CalendarEventStatus,
    CalendarPayload,
    CalendarResult,
    ConflictingEvent,
    ConflictResult,
    ConflictType,
    CreateEventRequest,
    EmitContext,
    EventType,
    ExecutionContext,
    ReminderSpec,
    TimeSlot,
)
from ..models.calendar import CONFLICT_SEVERITY
from ..repository import IRepository
from .audit import AuditLog
from .base import BaseActionExecutor, require_param

logger = get_logger(__name__)

REMINDER_PRESETS = {
    "standard": [ReminderSpec(60, "email"), ReminderSpec(15, "popup")],
    "important": [ReminderSpec(1440, "email"), ReminderSpec(60, "email"), ReminderSpec(15, "popup")],
    "quick": [ReminderSpec(5, "popup")],
    "external": [ReminderSpec(1440, "email"), ReminderSpec(120, "email"), ReminderSpec(30, "popup")],
}

SLOT_STEP_MINUTES = 15
MAX_TITLE_LENGTH = 200
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UPDATABLE_FIELDS = ("title", "description", "location", "timezone", "status", "metadata")


def recommended_reminders(has_external: bool, high_priority: bool, duration_minutes: float) -> list[ReminderSpec]:
    """Default reminder preset for an event that did not ask for any."""
    if has_external:
        preset = "external"
    elif high_priority:
        preset = "important"
    elif duration_minutes <= 15:
        preset = "quick"
    else:
        preset = "standard"
    return [ReminderSpec(r.minutes_before, r.method) for r in REMINDER_PRESETS[preset]]


def parse_time(value: Any, field_name: str = "time") -> datetime:
    """Accept datetimes or ISO 8601 strings; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise OperationError(
                ErrorCode.VALIDATION_ERROR, f"Invalid {field_name}: {value}"
            ) from None
    else:
        raise OperationError(ErrorCode.VALIDATION_ERROR, f"Invalid {field_name}: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def conflict_severity(conflicts: list[ConflictingEvent]) -> int:
    if not conflicts:
        return 0
    return min(5, max(CONFLICT_SEVERITY.get(c.conflict_type, 1) for c in conflicts))


class CalendarManager(BaseActionExecutor):
    """Creates, moves and cancels calendar events for users."""

    handles = (
        ActionType.CREATE_EVENT,
        ActionType.UPDATE_EVENT,
        ActionType.RESCHEDULE_EVENT,
        ActionType.CANCEL_EVENT,
    )
    name = "calendar_manager"

    def __init__(
        self,
        repository: IRepository,
        audit_log: AuditLog,
        event_bus: IEventBus | None = None,
        config: CalendarConfig | None = None,
        org_id: str = "default",
        agent_id: str = "orchestration-agent",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        super().__init__(audit_log, org_id, agent_id)
        self._repo = repository
        self._event_bus = event_bus
        self._config = config or CalendarConfig()
        self._zone = ZoneInfo(self._config.default_timezone)
        self._clock = clock

    @property
    def config(self) -> CalendarConfig:
        return self._config

    # Executor entry

    async def _execute(self, action: Action, context: ExecutionContext) -> ActionOutcome:
        params = action.params

        if action.type == ActionType.CREATE_EVENT:
            start = parse_time(require_param(params, "start_time", "start"), "start_time")
            if params.get("end_time") or params.get("end"):
                end = parse_time(params.get("end_time") or params.get("end"), "end_time")
            else:
                end = start + timedelta(minutes=int(params.get("duration_minutes", 30)))
            reminders = params.get("reminders")
            request = CreateEventRequest(
                user_id=require_param(params, "user_id", "assignee_id"),
                title=require_param(params, "title"),
                start_time=start,
                end_time=end,
                org_id=context.org_id,
                description=params.get("description"),
                location=params.get("location"),
                timezone=params.get("timezone"),
                attendees=[_attendee(a) for a in params.get("attendees") or []],
                reminders=[_reminder(r) for r in reminders] if reminders is not None else None,
                priority=params.get("priority"),
                allow_conflicts=bool(params.get("allow_conflicts", False)),
                metadata=dict(params.get("metadata") or {}),
            )
            result = await self.create_event(request, context=context)
        elif action.type == ActionType.UPDATE_EVENT:
            event_id = require_param(params, "event_id")
            updates = {k: v for k, v in params.items() if k != "event_id"}
            result = await self.update_event(event_id, updates, context=context)
        elif action.type == ActionType.RESCHEDULE_EVENT:
            result = await self.reschedule_event(
                require_param(params, "event_id"),
                parse_time(require_param(params, "start_time", "new_start"), "start_time"),
                parse_time(require_param(params, "end_time", "new_end"), "end_time"),
                context=context,
            )
        else:
            result = await self.cancel_event(
                require_param(params, "event_id"), reason=params.get("reason"), context=context
            )

        detail: dict[str, Any] = {
            "event_id": result.event_id,
            "previous_state": result.previous_state,
            "new_state": result.new_state,
            "reminder_ids": list(result.reminder_ids),
            "warnings": list(result.warnings),
        }
        if result.conflicts is not None:
            detail["conflict_summary"] = result.conflicts.summary
            detail["conflict_severity"] = result.conflicts.severity
        return self._outcome(
            action, result.success, error=result.error, audit_log_id=result.audit_log_id, **detail
        )

    # Operations

    async def create_event(
        self, request: CreateEventRequest, context: ExecutionContext | None = None
    ) -> CalendarResult:
        ctx = context or self.default_context()

        async def run() -> CalendarResult:
            self._validate_request(request)
            conflicts = await self.check_conflicts(request.user_id, request.start_time, request.end_time)
            if conflicts.has_overlap and self._config.block_on_overlap and not request.allow_conflicts:
                raise OperationError(
                    ErrorCode.CONFLICT,
                    f"Cannot create event: {conflicts.summary}",
                    details={"conflicts": [_conflict_dict(c) for c in conflicts.conflicts]},
                )

            record = await self._repo.create(
                "calendar_events",
                {
                    "user_id": request.user_id,
                    "org_id": request.org_id or ctx.org_id,
                    "title": request.title,
                    "description": request.description,
                    "start_time": request.start_time.isoformat(),
                    "end_time": request.end_time.isoformat(),
                    "timezone": request.timezone or self._config.default_timezone,
                    "location": request.location,
                    "attendees": [
                        {"id": a.id, "email": a.email, "name": a.name, "is_required": a.is_required}
                        for a in request.attendees
                    ],
                    "status": CalendarEventStatus.SCHEDULED.value,
                    "priority": request.priority,
                    "metadata": dict(request.metadata),
                },
            )
            new_state = _event_state(record)

            specs = request.reminders
            if specs is None:
                duration = (request.end_time - request.start_time).total_seconds() / 60
                specs = recommended_reminders(
                    any(a.is_external for a in request.attendees), request.priority == 5, duration
                )

            warnings = [f"Scheduling conflict: {c.conflict_type.value}" for c in conflicts.conflicts]
            reminder_ids: list[str] = []
            try:
                reminder_ids = await self.create_reminders(record["id"], specs)
            except Exception as e:
                logger.warning(
                    "Event %s created but reminder creation failed: %s",
                    record["id"],
                    e,
                    extra=log_context(ctx.correlation_id, event_id=record["id"]),
                )
                warnings.append(f"Reminder creation failed: {e}")

            audit_id = await self._write_audit(
                ctx,
                "calendar_event",
                record["id"],
                "CREATE_EVENT",
                None,
                new_state,
                metadata={"reminder_count": len(reminder_ids), "conflict_severity": conflicts.severity},
            )
            await self._emit(EventType.CALENDAR_EVENT_CREATED, record, ctx)
            return CalendarResult(
                success=True,
                event_id=record["id"],
                timestamp=self._clock(),
                previous_state=None,
                new_state=new_state,
                audit_log_id=audit_id,
                conflicts=conflicts,
                reminder_ids=reminder_ids,
                warnings=warnings,
            )

        return await self._run("create_event", request.title, ctx, run)

    async def update_event(
        self, event_id: str, updates: dict[str, Any], context: ExecutionContext | None = None
    ) -> CalendarResult:
        """Apply field updates. Moving the times goes through the same checks as creation."""
        ctx = context or self.default_context()

        async def run() -> CalendarResult:
            event = await self._fetch_event(event_id, ctx)
            start = _event_start(event)
            end = _event_end(event)

            changes: dict[str, Any] = {}
            if updates.get("start_time") is not None:
                start = parse_time(updates["start_time"], "start_time")
                changes["start_time"] = start.isoformat()
            if updates.get("end_time") is not None:
                end = parse_time(updates["end_time"], "end_time")
                changes["end_time"] = end.isoformat()
            if end <= start:
                raise OperationError(ErrorCode.VALIDATION_ERROR, "End time must be after start time")

            for name in UPDATABLE_FIELDS:
                if name in updates:
                    changes[name] = updates[name]
            if "title" in changes:
                self._validate_title(changes["title"])
            if "status" in changes:
                try:
                    changes["status"] = CalendarEventStatus(str(changes["status"]).lower()).value
                except ValueError:
                    raise OperationError(
                        ErrorCode.VALIDATION_ERROR, f"Invalid event status: {changes['status']}"
                    ) from None
            if "attendees" in updates:
                changes["attendees"] = [
                    {"id": a.id, "email": a.email, "name": a.name, "is_required": a.is_required}
                    for a in (_attendee(a) for a in updates["attendees"] or [])
                ]
            if not changes and updates.get("reminders") is None:
                raise OperationError(ErrorCode.VALIDATION_ERROR, "No updatable fields provided")

            previous = _event_state(event)
            updated = await self._repo.update("calendar_events", event_id, changes) if changes else event
            new_state = _event_state(updated or event)

            warnings: list[str] = []
            reminder_ids: list[str] = []
            if updates.get("reminders") is not None:
                try:
                    await self._delete_reminders(event_id)
                    reminder_ids = await self.create_reminders(
                        event_id, [_reminder(r) for r in updates["reminders"]]
                    )
                except Exception as e:
                    logger.warning(
                        "Event %s updated but reminder replacement failed: %s",
                        event_id,
                        e,
                        extra=log_context(ctx.correlation_id, event_id=event_id),
                    )
                    warnings.append(f"Reminder update failed: {e}")

            audit_id = await self._write_audit(
                ctx, "calendar_event", event_id, "UPDATE_EVENT", previous, new_state,
                metadata={"changed_fields": sorted(changes)},
            )
            await self._emit(EventType.CALENDAR_EVENT_UPDATED, updated or event, ctx)
            return CalendarResult(
                success=True,
                event_id=event_id,
                timestamp=self._clock(),
                previous_state=previous,
                new_state=new_state,
                audit_log_id=audit_id,
                reminder_ids=reminder_ids,
                warnings=warnings,
            )

        return await self._run("update_event", event_id, ctx, run)

    async def cancel_event(
        self, event_id: str, reason: str | None = None, context: ExecutionContext | None = None
    ) -> CalendarResult:
        """Mark an event cancelled and drop its pending reminders."""
        ctx = context or self.default_context()

        async def run() -> CalendarResult:
            event = await self._fetch_event(event_id, ctx)
            if event.get("status") == CalendarEventStatus.CANCELLED.value:
                raise OperationError(
                    ErrorCode.INVALID_STATE, f"Event already cancelled: {event_id}"
                )

            previous = _event_state(event)
            metadata = dict(event.get("metadata") or {})
            metadata.update(cancellation_reason=reason, cancelled_at=self._clock().isoformat())
            updated = await self._repo.update(
                "calendar_events",
                event_id,
                {"status": CalendarEventStatus.CANCELLED.value, "metadata": metadata},
            )
            new_state = _event_state(updated or event)

            warnings: list[str] = []
            try:
                await self._delete_reminders(event_id, pending_only=True)
            except Exception as e:
                logger.warning(
                    "Event %s cancelled but reminder cleanup failed: %s",
                    event_id,
                    e,
                    extra=log_context(ctx.correlation_id, event_id=event_id),
                )
                warnings.append(f"Reminder cleanup failed: {e}")

            audit_id = await self._write_audit(
                ctx, "calendar_event", event_id, "CANCEL_EVENT", previous, new_state, reason=reason
            )
            await self._emit(EventType.CALENDAR_EVENT_CANCELLED, updated or event, ctx, reason=reason)
            return CalendarResult(
                success=True,
                event_id=event_id,
                timestamp=self._clock(),
                previous_state=previous,
                new_state=new_state,
                audit_log_id=audit_id,
                warnings=warnings,
            )

        return await self._run("cancel_event", event_id, ctx, run)

    async def reschedule_event(
        self,
        event_id: str,
        new_start: datetime,
        new_end: datetime,
        context: ExecutionContext | None = None,
    ) -> CalendarResult:
        """Move an event. Any conflict rejects the move; reminders keep their offsets."""
        ctx = context or self.default_context()

        async def run() -> CalendarResult:
            if new_end <= new_start:
                raise OperationError(ErrorCode.VALIDATION_ERROR, "End time must be after start time")
            event = await self._fetch_event(event_id, ctx)
            if event.get("status") == CalendarEventStatus.CANCELLED.value:
                raise OperationError(
                    ErrorCode.INVALID_STATE, f"Cannot reschedule cancelled event: {event_id}"
                )

            conflicts = await self.check_conflicts(
                event["user_id"], new_start, new_end, exclude_event_id=event_id
            )
            if conflicts.has_conflicts:
                raise OperationError(
                    ErrorCode.CONFLICT,
                    f"Cannot reschedule: {conflicts.summary}",
                    details={
                        "event_id": event_id,
                        "conflicts": [_conflict_dict(c) for c in conflicts.conflicts],
                        "suggested_resolutions": conflicts.suggested_resolutions,
                    },
                )

            previous = _event_state(event)
            old_start = _event_start(event)
            updated = await self._repo.update(
                "calendar_events",
                event_id,
                {"start_time": new_start.isoformat(), "end_time": new_end.isoformat()},
            )
            new_state = _event_state(updated or event)

            warnings: list[str] = []
            reminder_ids: list[str] = []
            try:
                existing = await self._repo.find_many("event_reminders", where={"event_id": event_id})
                specs = [
                    ReminderSpec(
                        r.get("minutes_before")
                        or round((old_start - parse_time(r["reminder_time"])).total_seconds() / 60),
                        r.get("method", "email"),
                    )
                    for r in existing
                ]
                await self._delete_reminders(event_id)
                reminder_ids = await self.create_reminders(event_id, specs)
            except Exception as e:
                logger.warning(
                    "Event %s rescheduled but reminder shift failed: %s",
                    event_id,
                    e,
                    extra=log_context(ctx.correlation_id, event_id=event_id),
                )
                warnings.append(f"Reminder shift failed: {e}")

            audit_id = await self._write_audit(
                ctx, "calendar_event", event_id, "RESCHEDULE_EVENT", previous, new_state
            )
            await self._emit(
                EventType.CALENDAR_EVENT_UPDATED,
                updated or event,
                ctx,
                previous_start=previous["start_time"],
                rescheduled=True,
            )
            return CalendarResult(
                success=True,
                event_id=event_id,
                timestamp=self._clock(),
                previous_state=previous,
                new_state=new_state,
                audit_log_id=audit_id,
                conflicts=conflicts,
                reminder_ids=reminder_ids,
                warnings=warnings,
            )

        return await self._run("reschedule_event", event_id, ctx, run)

    async def check_conflicts(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        exclude_event_id: str | None = None,
    ) -> ConflictResult:
        buffer = timedelta(minutes=self._config.buffer_minutes)
        conflicts: list[ConflictingEvent] = []
        resolutions: list[str] = []

        for event in await self._active_events(user_id, exclude_event_id):
            event_start = _event_start(event)
            event_end = _event_end(event)
            if start < event_end and end > event_start:
                conflict_type = ConflictType.OVERLAP
                resolutions.append("Consider rescheduling to a different time")
            elif event_end <= start < event_end + buffer:
                conflict_type = ConflictType.BUFFER_VIOLATION
                gap = (start - event_end).total_seconds() / 60
                resolutions.append(
                    f"Move start time to {self._config.buffer_minutes - gap:g} minutes later"
                )
            elif event_start - buffer < end <= event_start:
                conflict_type = ConflictType.BUFFER_VIOLATION
                gap = (event_start - end).total_seconds() / 60
                resolutions.append(
                    f"Move end time to {self._config.buffer_minutes - gap:g} minutes earlier"
                )
            else:
                continue
            conflicts.append(
                ConflictingEvent(
                    event_id=event["id"],
                    title=event.get("title", ""),
                    start=event_start,
                    end=event_end,
                    conflict_type=conflict_type,
                )
            )

        if not self.within_business_hours(start):
            conflicts.append(
                ConflictingEvent("BUSINESS_HOURS", "Outside Business Hours", start, end, ConflictType.OUTSIDE_HOURS)
            )
            resolutions.append(
                f"Move event to within business hours "
                f"({self._config.business_hours_start}:00 - {self._config.business_hours_end}:00)"
            )

        if self.during_lunch(start):
            conflicts.append(
                ConflictingEvent("LUNCH_HOURS", "During Lunch Break", start, end, ConflictType.LUNCH_CONFLICT)
            )
            resolutions.append("Consider scheduling before or after lunch")

        if await self._daily_count(user_id, start, exclude_event_id) >= self._config.max_meetings_per_day:
            conflicts.append(
                ConflictingEvent("DAILY_LIMIT", "Daily Meeting Limit Reached", start, end, ConflictType.DAILY_LIMIT)
            )
            resolutions.append("Consider scheduling on a different day")

        summary = (
            f"Found {len(conflicts)} conflict(s): {', '.join(c.conflict_type.value for c in conflicts)}"
            if conflicts
            else "No conflicts detected"
        )
        return ConflictResult(
            has_conflicts=bool(conflicts),
            conflicts=conflicts,
            summary=summary,
            suggested_resolutions=list(dict.fromkeys(resolutions)),
            severity=conflict_severity(conflicts),
        )

    async def create_reminders(self, event_id: str, reminders: list[ReminderSpec]) -> list[str]:
        """Create reminders for an event, skipping any whose time has passed."""
        event = await self._repo.find("calendar_events", event_id)
        if event is None:
            raise OperationError(ErrorCode.NOT_FOUND, f"Event not found: {event_id}")

        start = _event_start(event)
        now = self._clock()
        created: list[str] = []
        for preset in reminders:
            reminder_time = start - timedelta(minutes=preset.minutes_before)
            if reminder_time <= now:
                continue
            record = await self._repo.create(
                "event_reminders",
                {
                    "event_id": event_id,
                    "reminder_time": reminder_time.isoformat(),
                    "minutes_before": preset.minutes_before,
                    "method": preset.method,
                    "status": "PENDING",
                },
            )
            created.append(record["id"])
        return created

    async def find_available_slots(
        self, user_id: str, day: date, duration_minutes: int
    ) -> list[TimeSlot]:
        """Free slots within business hours on day, best first."""
        opening = datetime(day.year, day.month, day.day, self._config.business_hours_start, tzinfo=self._zone)
        closing = datetime(day.year, day.month, day.day, self._config.business_hours_end, tzinfo=self._zone)
        buffer = timedelta(minutes=self._config.buffer_minutes)
        length = timedelta(minutes=duration_minutes)

        busy = [
            (_event_start(e) - buffer, _event_end(e) + buffer)
            for e in await self._active_events(user_id)
            if _event_start(e).astimezone(self._zone).date() == day
        ]

        slots: list[TimeSlot] = []
        current = opening
        while current + length <= closing:
            slot_end = current + length
            if not any(current < b_end and slot_end > b_start for b_start, b_end in busy):
                slot = self._score_slot(current, slot_end)
                if slot.score > 0:
                    slots.append(slot)
            current += timedelta(minutes=SLOT_STEP_MINUTES)

        slots.sort(key=lambda s: s.score, reverse=True)
        return slots

    async def get_event(self, event_id: str) -> dict[str, Any] | None:
        return await self._repo.find("calendar_events", event_id)

    async def get_events_in_range(self, user_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        events = [
            e for e in await self._active_events(user_id) if _event_start(e) >= start and _event_end(e) <= end
        ]
        return sorted(events, key=_event_start)

    def within_business_hours(self, moment: datetime) -> bool:
        hour = moment.astimezone(self._zone).hour
        return self._config.business_hours_start <= hour < self._config.business_hours_end

    def during_lunch(self, moment: datetime) -> bool:
        hour = moment.astimezone(self._zone).hour
        return self._config.lunch_start <= hour < self._config.lunch_end

    # Internals

    def _score_slot(self, start: datetime, end: datetime) -> TimeSlot:
        score = 0.5
        reasons: list[str] = []
        hour = start.astimezone(self._zone).hour
        in_hours = self.within_business_hours(start)
        lunch = self.during_lunch(start)

        if in_hours:
            if 9 <= hour < 11:
                score += 0.3
                reasons.append("Preferred morning slot")
            elif 14 <= hour < 16:
                score += 0.25
                reasons.append("Preferred afternoon slot")
            elif 11 <= hour < 12:
                score += 0.15
                reasons.append("Pre-lunch slot")
            elif 16 <= hour < 17:
                score += 0.1
                reasons.append("End of day slot")
        else:
            score -= 0.3
            reasons.append("Outside business hours")
        if lunch:
            score -= 0.25
            reasons.append("During lunch break")

        return TimeSlot(
            start=start,
            end=end,
            score=round(max(0.0, min(1.0, score)), 2),
            reasoning=". ".join(reasons) or "Available slot",
            within_business_hours=in_hours,
            during_lunch=lunch,
        )

    def _validate_request(self, request: CreateEventRequest) -> None:
        self._validate_title(request.title)
        if request.end_time <= request.start_time:
            raise OperationError(ErrorCode.VALIDATION_ERROR, "End time must be after start time")
        for attendee in request.attendees:
            if not EMAIL_PATTERN.match(attendee.email or ""):
                raise OperationError(
                    ErrorCode.VALIDATION_ERROR, f"Invalid attendee email: {attendee.email}"
                )
        for reminder in request.reminders or []:
            if reminder.minutes_before <= 0:
                raise OperationError(
                    ErrorCode.VALIDATION_ERROR, "Reminder minutes_before must be positive"
                )

    @staticmethod
    def _validate_title(title: Any) -> None:
        if not isinstance(title, str) or not title.strip() or len(title) > MAX_TITLE_LENGTH:
            raise OperationError(
                ErrorCode.VALIDATION_ERROR,
                f"Title must be between 1 and {MAX_TITLE_LENGTH} characters",
            )

    async def _fetch_event(self, event_id: str, ctx: ExecutionContext) -> dict[str, Any]:
        event = await self._repo.find("calendar_events", event_id)
        if event is None:
            raise OperationError(ErrorCode.NOT_FOUND, f"Event not found: {event_id}")
        if event.get("org_id") and event["org_id"] != ctx.org_id:
            raise OperationError(
                ErrorCode.PERMISSION_DENIED, "Event does not belong to this organization"
            )
        return event

    async def _active_events(self, user_id: str, exclude_event_id: str | None = None) -> list[dict[str, Any]]:
        events = await self._repo.find_many("calendar_events", where={"user_id": user_id})
        return [
            e
            for e in events
            if e.get("status") != CalendarEventStatus.CANCELLED.value and e["id"] != exclude_event_id
        ]

    async def _daily_count(self, user_id: str, moment: datetime, exclude_event_id: str | None) -> int:
        day = moment.astimezone(self._zone).date()
        return sum(
            1
            for e in await self._active_events(user_id, exclude_event_id)
            if _event_start(e).astimezone(self._zone).date() == day
        )

    async def _delete_reminders(self, event_id: str, pending_only: bool = False) -> int:
        where: dict[str, Any] = {"event_id": event_id}
        if pending_only:
            where["status"] = "PENDING"
        reminders = await self._repo.find_many("event_reminders", where=where)
        for reminder in reminders:
            await self._repo.delete("event_reminders", reminder["id"])
        return len(reminders)

    async def _run(
        self,
        operation: str,
        subject: str,
        ctx: ExecutionContext,
        fn: Callable[[], Awaitable[CalendarResult]],
    ) -> CalendarResult:
        started = time.perf_counter()
        try:
            result = await fn()
        except OperationError as e:
            logger.warning(
                "%s %s rejected: %s",
                operation,
                subject,
                e.info.message,
                extra=log_context(ctx.correlation_id, code=e.code.value),
            )
            return CalendarResult(success=False, event_id=None, timestamp=self._clock(), error=e.info)
        except Exception as e:
            logger.error(
                "Failed to %s %s: %s",
                operation,
                subject,
                e,
                exc_info=True,
                extra=log_context(ctx.correlation_id),
            )
            return CalendarResult(
                success=False,
                event_id=None,
                timestamp=self._clock(),
                error=ErrorInfo(code=ErrorCode.INTERNAL_ERROR, message=str(e)),
            )

        logger.info(
            "%s %s done in %.1fms",
            operation,
            result.event_id,
            (time.perf_counter() - started) * 1000,
            extra=log_context(ctx.correlation_id, audit_log_id=result.audit_log_id),
        )
        return result

    async def _emit(
        self, event_type: EventType, event: dict[str, Any], ctx: ExecutionContext, **data: Any
    ) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.emit(
            event_type,
            CalendarPayload(
                event_id=event["id"],
                title=event.get("title"),
                start_time=event.get("start_time"),
                end_time=event.get("end_time"),
                data={"user_id": event.get("user_id"), "status": event.get("status"), **data},
            ),
            EmitContext(
                source="agent",
                correlation_id=ctx.correlation_id or None,
                org_id=ctx.org_id,
                metadata={"executor": self.name},
            ),
        )


def _event_start(event: dict[str, Any]) -> datetime:
    return parse_time(event["start_time"], "start_time")


def _event_end(event: dict[str, Any]) -> datetime:
    return parse_time(event["end_time"], "end_time")


def _event_state(event: dict[str, Any]) -> dict[str, Any]:
    return {
        "title": event.get("title"),
        "start_time": event.get("start_time"),
        "end_time": event.get("end_time"),
        "status": event.get("status"),
        "location": event.get("location"),
        "attendees": [a.get("email") for a in event.get("attendees") or []],
    }


def _conflict_dict(conflict: ConflictingEvent) -> dict[str, Any]:
    return {
        "event_id": conflict.event_id,
        "title": conflict.title,
        "start": conflict.start.isoformat(),
        "end": conflict.end.isoformat(),
        "conflict_type": conflict.conflict_type.value,
    }


def _attendee(raw: Any) -> Attendee:
    if isinstance(raw, Attendee):
        return raw
    if isinstance(raw, str):
        return Attendee(email=raw)
    return Attendee(
        email=raw.get("email", ""),
        name=raw.get("name"),
        id=raw.get("id"),
        is_required=raw.get("is_required", True),
    )


def _reminder(raw: Any) -> ReminderSpec:
    if isinstance(raw, ReminderSpec):
        return raw
    if isinstance(raw, int):
        return ReminderSpec(raw)
    return ReminderSpec(int(raw.get("minutes_before", 15)), raw.get("method", "email"))
