"""Global exception handlers for the metadata service API.

Provides consistent fallback error bodies with correlation ID tracking.
"""

import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from app.api.exceptions import APIException, ErrorCode, error_body

logger = logging.getLogger(__name__)


async def api_exception_handler(request: Request, exc: Exception) -> Response:
    """Handle custom API exceptions."""
    if not isinstance(exc, APIException):
        raise exc

    correlation_id = getattr(request.state, "correlation_id", None)
    logger.info(
        "api_error",
        extra={
            "correlation_id": correlation_id,
            "error_code": exc.error_code.value,
            "status_code": exc.status_code,
            "retryable": exc.retryable,
            "path": request.url.path,
            **exc.details,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.message, exc.error_code, correlation_id=correlation_id),
    )


async def validation_exception_handler(request: Request, exc: Exception) -> Response:
    """Handle malformed request bodies the same way as a missing URL."""
    if not isinstance(exc, RequestValidationError):
        raise exc

    correlation_id = getattr(request.state, "correlation_id", None)
    fields = [".".join(str(loc) for loc in error["loc"]) for error in exc.errors()]
    logger.info(
        "api_request_invalid",
        extra={"correlation_id": correlation_id, "fields": fields, "path": request.url.path},
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(
            "URL is required", ErrorCode.VALIDATION_ERROR, correlation_id=correlation_id
        ),
    )


async def global_exception_handler(request: Request, exc: Exception) -> Response:
    """Catch-all handler for unexpected exceptions."""
    correlation_id = getattr(request.state, "correlation_id", None)
    logger.error(
        "api_unhandled_exception",
        exc_info=True,
        extra={"correlation_id": correlation_id, "path": request.url.path, "error": str(exc)},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            "An internal server error occurred",
            ErrorCode.INTERNAL_ERROR,
            correlation_id=correlation_id,
        ),
    )
