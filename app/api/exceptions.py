"""Custom exceptions and error codes for the metadata service API.

Every error leaves the service as ``{"error": ..., "fallback": true}`` so
that callers always know to fall back to domain-only metadata.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes for API responses."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_RETRYABLE_CODES: set[ErrorCode] = {ErrorCode.UPSTREAM_TIMEOUT}


class APIException(Exception):
    """Base exception for all API errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        self.retryable = retryable if retryable is not None else (error_code in _RETRYABLE_CODES)


class ValidationError(APIException):
    """Raised when the request body is missing or malformed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details,
        )


class AuthenticationError(APIException):
    """Raised when the service credential is missing or wrong."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            message=message,
            error_code=ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


class UpstreamError(APIException):
    """Raised when the target page could not be fetched or parsed."""

    def __init__(self, message: str, upstream_status: int | None = None):
        details = {"upstream_status": upstream_status} if upstream_status else None
        super().__init__(
            message=message,
            error_code=ErrorCode.UPSTREAM_ERROR,
            status_code=502,
            details=details,
        )


class UpstreamTimeoutError(APIException):
    """Raised when the target page did not answer in time."""

    def __init__(self, message: str = "Request timed out"):
        super().__init__(
            message=message,
            error_code=ErrorCode.UPSTREAM_TIMEOUT,
            status_code=504,
        )


def error_body(
    message: str, code: ErrorCode, *, correlation_id: str | None = None
) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message, "fallback": True, "code": code.value}
    if correlation_id:
        body["correlationId"] = correlation_id
    return body
