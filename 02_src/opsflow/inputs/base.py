"""Shared contract and plumbing for input adapters."""

import json
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import ValidationError

from ..errors import ErrorCode, ErrorInfo, OperationError
from ..event_bus import IEventBus
from ..logging_config import get_logger, log_context
from ..models import (
    AdapterStats,
    AgentInput,
    EmitContext,
    EmitResult,
    EventPayload,
    EventType,
    InputMetadata,
    InputSource,
    ProcessingResult,
    ValidationResult,
)

logger = get_logger(__name__)


def format_validation_errors(exc: ValidationError, prefix: str | None = None) -> list[str]:
    """Flatten pydantic errors into ``"loc: msg"`` strings."""
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        text = f"{loc}: {err['msg']}" if loc else err["msg"]
        messages.append(f"{prefix}: {text}" if prefix else text)
    return messages


class IInputAdapter(Protocol):
    """Converts one external trigger format into AgentInput and publishes it."""

    source: InputSource

    def validate(self, raw: Any) -> ValidationResult:
        """Check a raw payload without side effects."""
        ...

    async def handle_input(self, raw: Any) -> ProcessingResult:
        """Validate, normalize and publish. Never raises for malformed input."""
        ...

    def get_stats(self) -> AdapterStats:
        ...


class BaseInputAdapter:
    """Base class for adapters.

    Subclasses implement ``validate`` and ``_process``. ``handle_input`` wraps
    them: validation failures and unexpected exceptions come back as failed
    ProcessingResults, and every accepted input publishes exactly one event
    unless it is deliberately skipped.
    """

    source: InputSource = InputSource.API
    name: str = "base"

    def __init__(self, event_bus: IEventBus, org_id: str | None = None):
        self._event_bus = event_bus
        self._org_id = org_id
        self._stats = AdapterStats()

    # Subclass hooks

    def validate(self, raw: Any) -> ValidationResult:
        raise NotImplementedError

    async def _process(
        self, payload: Any, validation: ValidationResult, started: float
    ) -> ProcessingResult:
        raise NotImplementedError

    # Public API

    async def handle_input(self, raw: Any) -> ProcessingResult:
        started = time.perf_counter()

        validation = self.validate(raw)
        if not validation.is_valid:
            self._stats.validation_errors += 1
            return self._error_result(
                ErrorInfo(
                    code=ErrorCode.VALIDATION_ERROR,
                    message=f"Validation failed: {', '.join(validation.errors)}",
                    details={"errors": list(validation.errors)},
                ),
                started,
                warnings=validation.warnings,
            )

        if validation.warnings:
            logger.warning(
                "%s input validation warnings: %s",
                self.name,
                "; ".join(validation.warnings),
            )

        payload = validation.sanitized if validation.sanitized is not None else raw
        try:
            return await self._process(payload, validation, started)
        except OperationError as e:
            return self._error_result(e.info, started, warnings=validation.warnings)
        except Exception as e:
            logger.error("%s failed to process input: %s", self.name, e, exc_info=True)
            return self._error_result(
                ErrorInfo(code=ErrorCode.PROCESSING_ERROR, message=str(e)),
                started,
                warnings=validation.warnings,
            )

    def can_handle(self, raw: Any) -> bool:
        return self.validate(raw).is_valid

    def get_stats(self) -> AdapterStats:
        return replace(
            self._stats,
            by_type=dict(self._stats.by_type),
            skipped=dict(self._stats.skipped),
            extra=dict(self._stats.extra),
        )

    def reset_stats(self) -> None:
        self._stats = AdapterStats()

    # Helpers for subclasses

    def normalize_input(
        self,
        raw: Any,
        input_type: str,
        metadata: InputMetadata | None = None,
        structured_data: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AgentInput:
        """Build the AgentInput. The correlation id is assigned here, once."""
        if isinstance(raw, str):
            raw_content = raw
        elif raw is None:
            raw_content = ""
        else:
            raw_content = json.dumps(raw, indent=2, default=str)

        if structured_data is None and isinstance(raw, dict):
            structured_data = raw

        meta = metadata or InputMetadata()
        tags = tuple(meta.tags) + ((self.name,) if self.name not in meta.tags else ())

        return AgentInput(
            source=self.source,
            type=input_type,
            raw_content=raw_content,
            correlation_id=str(uuid.uuid4()),
            timestamp=timestamp or datetime.now(timezone.utc),
            structured_data=structured_data,
            metadata=replace(meta, tags=tags),
        )

    async def emit_event(
        self,
        event_type: EventType | str,
        payload: EventPayload,
        agent_input: AgentInput,
    ) -> EmitResult:
        result = await self._event_bus.emit(
            event_type,
            payload,
            EmitContext(
                source=self.source.value,
                correlation_id=agent_input.correlation_id,
                org_id=self._org_id,
                metadata={"adapter": self.name, "input_type": agent_input.type},
            ),
        )
        if result.errors:
            logger.warning(
                "Event %s had %s handler errors",
                result.event_type,
                len(result.errors),
                extra=log_context(agent_input.correlation_id, event_id=result.event_id),
            )
        return result

    def _count_type(self, input_type: str) -> None:
        self._stats.by_type[input_type] = self._stats.by_type.get(input_type, 0) + 1

    def _success_result(
        self,
        agent_input: AgentInput,
        emit_result: EmitResult,
        started: float,
        warnings: list[str] | None = None,
    ) -> ProcessingResult:
        self._stats.total_processed += 1
        self._stats.successful += 1
        self._count_type(agent_input.type)

        logger.info(
            "%s published %s",
            self.name,
            emit_result.event_type,
            extra=log_context(agent_input.correlation_id, input_type=agent_input.type),
        )

        return ProcessingResult(
            success=True,
            correlation_id=agent_input.correlation_id,
            input=agent_input,
            event_type=emit_result.event_type,
            event_id=emit_result.event_id,
            handlers_invoked=emit_result.handlers_invoked,
            warnings=list(warnings or []),
            processing_time_ms=(time.perf_counter() - started) * 1000,
        )

    def _skipped_result(
        self,
        agent_input: AgentInput,
        reason: str,
        started: float,
        warnings: list[str] | None = None,
    ) -> ProcessingResult:
        """Intentionally filtered input: reported as success, nothing published."""
        self._stats.total_processed += 1
        self._stats.successful += 1
        self._count_type(agent_input.type)
        self._stats.skipped[reason] = self._stats.skipped.get(reason, 0) + 1

        logger.info(
            "%s skipped input: %s",
            self.name,
            reason,
            extra=log_context(agent_input.correlation_id, input_type=agent_input.type),
        )

        return ProcessingResult(
            success=True,
            correlation_id=agent_input.correlation_id,
            input=agent_input,
            skipped=True,
            skip_reason=reason,
            warnings=list(warnings or []),
            processing_time_ms=(time.perf_counter() - started) * 1000,
        )

    def _error_result(
        self,
        error: ErrorInfo,
        started: float,
        agent_input: AgentInput | None = None,
        warnings: list[str] | None = None,
    ) -> ProcessingResult:
        self._stats.total_processed += 1
        self._stats.failed += 1

        correlation_id = agent_input.correlation_id if agent_input else None
        logger.warning(
            "%s rejected input (%s): %s",
            self.name,
            error.code.value,
            error.message,
            extra=log_context(correlation_id),
        )

        return ProcessingResult(
            success=False,
            correlation_id=correlation_id,
            input=agent_input,
            error=error,
            warnings=list(warnings or []),
            processing_time_ms=(time.perf_counter() - started) * 1000,
        )
