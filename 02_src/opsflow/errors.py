"""Error taxonomy and classification shared by adapters, policies and executors.

Public operations return results carrying an ``ErrorInfo``; ``OperationError``
is only raised inside a module and converted at its boundary.
"""

import asyncio
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum

import httpx


class ErrorCode(str, Enum):
    """Closed set of failure kinds."""

    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    INVALID_STATE = "invalid_state"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    TRANSIENT_DELIVERY = "transient_delivery"
    WORKFLOW_NOT_FOUND = "workflow_not_found"
    WORKFLOW_INACTIVE = "workflow_inactive"
    EXECUTION_TIMEOUT = "execution_timeout"
    CONFLICT = "conflict"
    PROCESSING_ERROR = "processing_error"
    INTERNAL_ERROR = "internal_error"


RETRYABLE_CODES = {
    ErrorCode.RATE_LIMITED,
    ErrorCode.TIMEOUT,
    ErrorCode.TRANSIENT_DELIVERY,
    ErrorCode.EXECUTION_TIMEOUT,
}


def is_retryable(code: ErrorCode) -> bool:
    return code in RETRYABLE_CODES


@dataclass
class ErrorInfo:
    """Structured failure carried by every result type."""

    code: ErrorCode
    message: str
    retryable: bool = False
    retry_after_ms: int | None = None
    details: dict = field(default_factory=dict)

    def final(self) -> "ErrorInfo":
        """Copy marked non-retryable, used once a retry budget is exhausted."""
        return ErrorInfo(
            code=self.code,
            message=self.message,
            retryable=False,
            retry_after_ms=None,
            details=dict(self.details),
        )

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "retry_after_ms": self.retry_after_ms,
            "details": self.details,
        }


class OperationError(Exception):
    """Internal failure signal converted to ErrorInfo at module boundaries."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        retryable: bool | None = None,
        retry_after_ms: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.info = ErrorInfo(
            code=code,
            message=message,
            retryable=is_retryable(code) if retryable is None else retryable,
            retry_after_ms=retry_after_ms,
            details=details or {},
        )

    @property
    def code(self) -> ErrorCode:
        return self.info.code


def error_for_status(status_code: int, message: str, retry_after_ms: int | None = None) -> ErrorInfo:
    """Classify an upstream HTTP-like status code."""
    if status_code == 429:
        return ErrorInfo(
            code=ErrorCode.RATE_LIMITED,
            message=message,
            retryable=True,
            retry_after_ms=retry_after_ms,
            details={"status_code": status_code},
        )
    if status_code >= 500 or status_code == 408:
        return ErrorInfo(
            code=ErrorCode.TRANSIENT_DELIVERY,
            message=message,
            retryable=True,
            details={"status_code": status_code},
        )
    if status_code == 404:
        return ErrorInfo(
            code=ErrorCode.NOT_FOUND,
            message=message,
            details={"status_code": status_code},
        )
    if status_code in (401, 403):
        return ErrorInfo(
            code=ErrorCode.PERMISSION_DENIED,
            message=message,
            details={"status_code": status_code},
        )
    return ErrorInfo(
        code=ErrorCode.VALIDATION_ERROR,
        message=message,
        details={"status_code": status_code},
    )


def parse_retry_after(value: str | None) -> int | None:
    """Parse a Retry-After header (seconds or HTTP date) into milliseconds."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value) * 1000
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0, int(delta * 1000))


def classify_error(exc: BaseException) -> ErrorInfo:
    """Map an arbitrary exception onto the taxonomy."""
    if isinstance(exc, OperationError):
        return exc.info

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorInfo(
            code=ErrorCode.TIMEOUT,
            message=str(exc) or "Operation timed out",
            retryable=True,
        )

    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return error_for_status(
            response.status_code,
            f"HTTP {response.status_code}: {response.reason_phrase}",
            retry_after_ms=parse_retry_after(response.headers.get("retry-after")),
        )

    if isinstance(exc, (ConnectionError, httpx.TransportError)):
        return ErrorInfo(
            code=ErrorCode.TRANSIENT_DELIVERY,
            message=str(exc) or exc.__class__.__name__,
            retryable=True,
        )

    if isinstance(exc, ValueError):
        return ErrorInfo(code=ErrorCode.VALIDATION_ERROR, message=str(exc))

    return ErrorInfo(
        code=ErrorCode.INTERNAL_ERROR,
        message=str(exc) or exc.__class__.__name__,
    )
