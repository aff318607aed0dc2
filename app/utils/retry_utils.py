"""Bounded retry for async operations.

A single helper shared by the outbox writer and the metadata enrichment
caller: a fixed number of attempts, a fixed pause between them and a hard
timeout on each attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar, cast

from app.domain.exceptions.domain_exceptions import RetryExhaustedError
from app.domain.services.error_classifier import classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_error(error: BaseException) -> bool:
    """Return True when ``error`` classifies into a category worth retrying."""
    return classify(error).retryable


async def retry_bounded(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int,
    delay: float,
    timeout: float | None,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    operation: str | None = None,
    log: logging.Logger | None = None,
    **kwargs: Any,
) -> T:
    """Call ``func`` until it succeeds or ``attempts`` runs out.

    Args:
        func: Coroutine function to call.
        attempts: Total number of calls allowed, at least 1.
        delay: Seconds to sleep between attempts (fixed, no backoff).
        timeout: Per-attempt limit in seconds, or None for no limit.
        is_retryable: Predicate deciding whether a failure deserves another try.
        operation: Name used in log events; defaults to ``func.__name__``.
        log: Logger to write to; defaults to this module's logger.

    Returns:
        Whatever ``func`` returned on the successful attempt.

    Raises:
        RetryExhaustedError: Every attempt failed with a retryable error.
        Exception: The first non-retryable error, re-raised unchanged.
    """
    if attempts < 1:
        msg = "attempts must be at least 1"
        raise ValueError(msg)

    log = log or logger
    name = operation or getattr(func, "__name__", "operation")
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            if timeout is None:
                result = await func(*args, **kwargs)
            else:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            if not is_retryable(exc):
                log.debug(
                    "retry_non_retryable_error",
                    extra={"operation": name, "attempt": attempt, "error": str(exc)},
                )
                raise
            if attempt >= attempts:
                break
            log.info(
                "retry_scheduled",
                extra={
                    "operation": name,
                    "attempt": attempt,
                    "attempts": attempts,
                    "error": str(exc) or type(exc).__name__,
                    "delay_seconds": delay,
                },
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                log.info("retry_succeeded", extra={"operation": name, "attempt": attempt})
            return result

    last_error = cast(BaseException, last_error)
    log.warning(
        "retry_exhausted",
        extra={"operation": name, "attempts": attempts, "error": str(last_error)},
    )
    msg = f"{name} failed after {attempts} attempts: {last_error}"
    raise RetryExhaustedError(msg, last_error=last_error, attempts=attempts)


__all__ = ["is_transient_error", "retry_bounded"]
