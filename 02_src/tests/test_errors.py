"""Tests for the error taxonomy."""

import asyncio

import httpx
import pytest

from opsflow.errors import (
    ErrorCode,
    ErrorInfo,
    OperationError,
    classify_error,
    error_for_status,
    is_retryable,
    parse_retry_after,
)


class TestErrorRetryability:
    """Tests for retryable codes."""

    @pytest.mark.parametrize(
        "code",
        [ErrorCode.RATE_LIMITED, ErrorCode.TIMEOUT, ErrorCode.TRANSIENT_DELIVERY, ErrorCode.EXECUTION_TIMEOUT],
    )
    def test_retryable_codes(self, code):
        """Test the retryable subset."""
        assert is_retryable(code) is True

    def test_validation_not_retryable(self):
        """Test that validation errors are never retried."""
        assert is_retryable(ErrorCode.VALIDATION_ERROR) is False

    def test_operation_error_defaults_retryable_from_code(self):
        """Test that OperationError derives retryable from its code."""
        assert OperationError(ErrorCode.TIMEOUT, "slow").info.retryable is True
        assert OperationError(ErrorCode.NOT_FOUND, "gone").info.retryable is False
        assert OperationError(ErrorCode.NOT_FOUND, "gone", retryable=True).info.retryable is True

    def test_final_clears_retryable(self):
        """Test that final() returns a non-retryable copy."""
        info = ErrorInfo(ErrorCode.TIMEOUT, "slow", retryable=True, retry_after_ms=100)

        final = info.final()

        assert final.retryable is False
        assert final.retry_after_ms is None
        assert info.retryable is True

    def test_to_dict(self):
        """Test serialisation of ErrorInfo."""
        data = ErrorInfo(ErrorCode.CONFLICT, "overlap", details={"n": 1}).to_dict()

        assert data == {
            "code": "conflict",
            "message": "overlap",
            "retryable": False,
            "retry_after_ms": None,
            "details": {"n": 1},
        }


class TestErrorForStatus:
    """Tests for HTTP status classification."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (429, ErrorCode.RATE_LIMITED),
            (500, ErrorCode.TRANSIENT_DELIVERY),
            (503, ErrorCode.TRANSIENT_DELIVERY),
            (408, ErrorCode.TRANSIENT_DELIVERY),
            (404, ErrorCode.NOT_FOUND),
            (401, ErrorCode.PERMISSION_DENIED),
            (403, ErrorCode.PERMISSION_DENIED),
            (400, ErrorCode.VALIDATION_ERROR),
        ],
    )
    def test_status_mapping(self, status, code):
        """Test each status class maps to its code."""
        assert error_for_status(status, "x").code == code

    def test_rate_limit_keeps_retry_after(self):
        """Test that 429 carries the retry-after hint."""
        info = error_for_status(429, "slow down", retry_after_ms=2000)

        assert info.retryable is True
        assert info.retry_after_ms == 2000


class TestParseRetryAfter:
    """Tests for Retry-After parsing."""

    def test_seconds(self):
        """Test integer seconds."""
        assert parse_retry_after("3") == 3000

    def test_missing_or_garbage(self):
        """Test that missing or unparsable values return None."""
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None

    def test_past_http_date(self):
        """Test that a date in the past clamps to zero."""
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0


class TestClassifyError:
    """Tests for exception classification."""

    def test_operation_error_passthrough(self):
        """Test that OperationError keeps its info."""
        err = OperationError(ErrorCode.CONFLICT, "overlap")

        assert classify_error(err) is err.info

    def test_timeouts(self):
        """Test asyncio and httpx timeouts."""
        assert classify_error(asyncio.TimeoutError()).code == ErrorCode.TIMEOUT
        assert classify_error(asyncio.TimeoutError()).message == "Operation timed out"
        assert classify_error(httpx.ReadTimeout("read")).code == ErrorCode.TIMEOUT

    def test_connection_errors(self):
        """Test that connection failures are transient."""
        assert classify_error(ConnectionError("reset")).code == ErrorCode.TRANSIENT_DELIVERY
        assert classify_error(httpx.ConnectError("refused")).code == ErrorCode.TRANSIENT_DELIVERY

    def test_http_status_error(self):
        """Test that HTTPStatusError is classified by its response."""
        request = httpx.Request("POST", "http://example.test/run")
        response = httpx.Response(429, headers={"retry-after": "2"}, request=request)
        exc = httpx.HTTPStatusError("too many", request=request, response=response)

        info = classify_error(exc)

        assert info.code == ErrorCode.RATE_LIMITED
        assert info.retry_after_ms == 2000

    def test_value_error(self):
        """Test that ValueError is a validation error."""
        assert classify_error(ValueError("bad")).code == ErrorCode.VALIDATION_ERROR

    def test_unknown(self):
        """Test that anything else is internal and not retryable."""
        info = classify_error(KeyError("x"))

        assert info.code == ErrorCode.INTERNAL_ERROR
        assert info.retryable is False
