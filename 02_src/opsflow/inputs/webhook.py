"""Webhook / web-form input adapter."""

import hashlib
import hmac
import json
import re
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ErrorCode, OperationError
from ..event_bus import IEventBus
from ..logging_config import get_logger
from ..models import (
    BookingRequestedPayload,
    CallbackRequestedPayload,
    CustomPayload,
    EventPayload,
    EventType,
    FormSubmittedPayload,
    InputMetadata,
    InputSource,
    IntakePayload,
    ProcessingResult,
    ValidationResult,
)
from ..models.events import CUSTOM_PREFIX, normalize_event_type
from .base import BaseInputAdapter, format_validation_errors

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

WEBHOOK_SOURCES = (
    "contact_form",
    "booking_form",
    "survey_form",
    "newsletter_signup",
    "intake_form",
    "callback_request",
    "generic",
)

DEFAULT_SOURCE_EVENT_MAP: dict[str, str] = {
    "contact_form": EventType.FORM_SUBMITTED.value,
    "booking_form": EventType.BOOKING_REQUESTED.value,
    "survey_form": EventType.FORM_SUBMITTED.value,
    "newsletter_signup": EventType.FORM_SUBMITTED.value,
    "intake_form": EventType.INTAKE_CREATED.value,
    "callback_request": EventType.CALLBACK_RECEIVED.value,
    "generic": EventType.FORM_SUBMITTED.value,
}

EMAIL_FIELDS = ("email", "guestEmail", "guest_email", "submitterEmail", "userEmail", "contact_email")
NAME_FIELDS = ("name", "guestName", "guest_name", "submitterName", "userName", "fullName", "full_name")
PHONE_FIELDS = ("phone", "phoneNumber", "phone_number", "mobile", "tel")


def _check_email(value: str | None) -> str | None:
    if value is not None and not EMAIL_RE.match(value):
        raise ValueError("value is not a valid email address")
    return value


class WebhookEnvelope(BaseModel):
    source: str = Field(min_length=1)
    timestamp: datetime | None = None
    data: dict[str, Any]
    headers: dict[str, str] | None = None
    signature: str | None = None


class ContactForm(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = Field(default=None, min_length=1)
    email: str
    phone: str | None = None
    message: str | None = None
    subject: str | None = None
    company: str | None = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _check_email(value)


class BookingForm(BaseModel):
    model_config = ConfigDict(extra="allow")

    date: str = Field(min_length=1)
    time: str = Field(min_length=1)
    duration: int | None = None
    guest_email: str = Field(validation_alias=AliasChoices("guest_email", "guestEmail", "email"))
    guest_name: str | None = Field(
        default=None, validation_alias=AliasChoices("guest_name", "guestName", "name")
    )
    purpose: str | None = None
    notes: str | None = None

    @field_validator("guest_email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _check_email(value)


class IntakeForm(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)
    email: str
    name: str | None = None
    phone: str | None = None
    details: dict[str, Any] | None = None
    urgency: int | None = Field(default=None, ge=1, le=5)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _check_email(value)


SOURCE_SCHEMAS: dict[str, tuple[str, type[BaseModel]]] = {
    "contact_form": ("Contact form", ContactForm),
    "booking_form": ("Booking form", BookingForm),
    "intake_form": ("Intake form", IntakeForm),
}


def canonical_json(data: dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(data: dict[str, Any], secret: str) -> str:
    """Hex HMAC-SHA256 over the canonical JSON of ``data``."""
    return hmac.new(secret.encode("utf-8"), canonical_json(data), hashlib.sha256).hexdigest()


def verify_signature(data: dict[str, Any], signature: str, secret: str) -> bool:
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(sign_payload(data, secret), provided.lower())


def _first_str(data: dict[str, Any], fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = data.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def extract_email(data: dict[str, Any]) -> str | None:
    return _first_str(data, EMAIL_FIELDS)


def extract_name(data: dict[str, Any]) -> str | None:
    name = _first_str(data, NAME_FIELDS)
    if name:
        return name
    first = data.get("firstName") or data.get("first_name")
    last = data.get("lastName") or data.get("last_name")
    if first or last:
        return " ".join(str(p) for p in (first, last) if p)
    return None


def extract_phone(data: dict[str, Any]) -> str | None:
    return _first_str(data, PHONE_FIELDS)


class WebhookAdapter(BaseInputAdapter):
    """Accepts ``{source, timestamp?, data, headers?, signature?}`` envelopes from forms."""

    source = InputSource.WEBHOOK
    name = "webhook"

    def __init__(
        self,
        event_bus: IEventBus,
        org_id: str | None = None,
        allowed_sources: list[str] | None = None,
        webhook_secret: str | None = None,
        require_signature: bool = False,
        source_event_mapping: dict[str, str] | None = None,
    ):
        super().__init__(event_bus, org_id)
        self._allowed_sources = allowed_sources
        self._secret = webhook_secret
        self._require_signature = require_signature
        self._event_map = dict(DEFAULT_SOURCE_EVENT_MAP)
        for source, event_type in (source_event_mapping or {}).items():
            self._event_map[source] = normalize_event_type(event_type)

    def validate(self, raw: Any) -> ValidationResult:
        if not isinstance(raw, dict):
            return ValidationResult(is_valid=False, errors=["Input must be an object"])

        try:
            envelope = WebhookEnvelope.model_validate(raw)
        except ValidationError as e:
            return ValidationResult(is_valid=False, errors=format_validation_errors(e))

        errors: list[str] = []
        warnings: list[str] = []

        if self._allowed_sources and envelope.source not in self._allowed_sources:
            errors.append(
                f'Source "{envelope.source}" is not allowed. '
                f"Allowed sources: {', '.join(self._allowed_sources)}"
            )

        if self._require_signature and not envelope.signature:
            errors.append("Webhook signature is required but not provided")

        source_errors, source_warnings = self._validate_source_data(
            envelope.source, envelope.data
        )
        errors.extend(source_errors)
        warnings.extend(source_warnings)

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            sanitized=envelope if not errors else None,
        )

    def _validate_source_data(
        self, source: str, data: dict[str, Any]
    ) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        warnings: list[str] = []

        if source in SOURCE_SCHEMAS:
            label, schema = SOURCE_SCHEMAS[source]
            try:
                schema.model_validate(data)
            except ValidationError as e:
                errors.extend(format_validation_errors(e, label))
        elif source in ("survey_form", "newsletter_signup"):
            if not isinstance(data.get("email"), str) or not data.get("email"):
                warnings.append(f"{source}: email field is recommended")
        elif source == "callback_request":
            if not data.get("phone") and not data.get("email"):
                warnings.append("Callback request: phone or email is recommended")
        elif not data:
            warnings.append("Webhook data is empty")

        return errors, warnings

    async def _process(
        self, envelope: WebhookEnvelope, validation: ValidationResult, started: float
    ) -> ProcessingResult:
        if envelope.signature and self._secret:
            if not verify_signature(envelope.data, envelope.signature, self._secret):
                raise OperationError(
                    ErrorCode.PERMISSION_DENIED, "Webhook signature verification failed"
                )

        data = envelope.data
        urgency = data.get("urgency")
        agent_input = self.normalize_input(
            data,
            f"webhook:{envelope.source}",
            metadata=InputMetadata(
                tags=(envelope.source, "webhook"),
                priority_hint=urgency if isinstance(urgency, int) else None,
                sender_email=extract_email(data),
                sender_name=extract_name(data),
                headers=dict(envelope.headers or {}),
            ),
            timestamp=envelope.timestamp,
        )

        event_type = self.event_type_for(envelope.source)
        payload = self._build_payload(event_type, envelope.source, data, agent_input.correlation_id)
        emit_result = await self.emit_event(event_type, payload, agent_input)

        return self._success_result(agent_input, emit_result, started, validation.warnings)

    def event_type_for(self, source: str) -> str:
        return self._event_map.get(source, EventType.FORM_SUBMITTED.value)

    def _build_payload(
        self, event_type: str, source: str, data: dict[str, Any], correlation_id: str
    ) -> EventPayload:
        short_id = correlation_id[:8]

        if event_type == EventType.BOOKING_REQUESTED.value:
            duration = data.get("duration")
            return BookingRequestedPayload(
                booking_id=f"booking_{short_id}",
                date=str(data.get("date", "")),
                time=str(data.get("time", "")),
                guest_email=extract_email(data),
                guest_name=extract_name(data),
                duration_minutes=duration if isinstance(duration, int) else None,
                notes=data.get("notes") or data.get("purpose"),
                fields=dict(data),
            )

        if event_type == EventType.CALLBACK_RECEIVED.value:
            return CallbackRequestedPayload(
                callback_id=f"callback_{short_id}",
                phone=extract_phone(data),
                email=extract_email(data),
                name=extract_name(data),
                preferred_time=data.get("preferredTime") or data.get("preferred_time"),
                reason=data.get("message") or data.get("reason"),
            )

        if event_type.startswith("intake:"):
            urgency = data.get("urgency")
            return IntakePayload(
                intake_id=f"intake_{short_id}",
                title=data.get("title") or data.get("type") or "general",
                status="NEW",
                priority=urgency if isinstance(urgency, int) else None,
                source=source,
                data={
                    **data,
                    "contact": {
                        "email": extract_email(data),
                        "name": extract_name(data),
                        "phone": extract_phone(data),
                    },
                },
            )

        if event_type.startswith(CUSTOM_PREFIX):
            return CustomPayload(name=event_type[len(CUSTOM_PREFIX):], data=dict(data))

        return FormSubmittedPayload(
            submission_id=f"{source}_{short_id}",
            form_source=source,
            email=extract_email(data),
            name=extract_name(data),
            phone=extract_phone(data),
            fields=dict(data),
        )

    # Convenience entry points

    async def handle_contact_form(self, data: dict[str, Any]) -> ProcessingResult:
        return await self.handle_input({"source": "contact_form", "data": data})

    async def handle_booking_form(self, data: dict[str, Any]) -> ProcessingResult:
        return await self.handle_input({"source": "booking_form", "data": data})

    async def handle_intake_form(self, data: dict[str, Any]) -> ProcessingResult:
        return await self.handle_input({"source": "intake_form", "data": data})

    async def handle_callback_request(self, data: dict[str, Any]) -> ProcessingResult:
        return await self.handle_input({"source": "callback_request", "data": data})
