"""FastAPI middleware for request processing."""

import time
from collections.abc import Callable

from fastapi import Request

from app.api.context import correlation_id_ctx
from app.core.logging_utils import generate_correlation_id, get_logger

logger = get_logger(__name__)


async def correlation_id_middleware(request: Request, call_next: Callable):
    """
    Add correlation ID to all requests for tracing.

    Checks for X-Correlation-ID header, generates one if missing.
    """
    correlation_id = request.headers.get("X-Correlation-ID")
    if not correlation_id:
        correlation_id = f"api-{generate_correlation_id()}"

    request.state.correlation_id = correlation_id
    token = correlation_id_ctx.set(correlation_id)
    started = time.perf_counter()

    try:
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        logger.debug(
            "api_request_completed",
            extra={
                "correlation_id": correlation_id,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return response
    finally:
        correlation_id_ctx.reset(token)
