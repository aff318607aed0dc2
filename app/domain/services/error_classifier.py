"""Error classification domain service.

Turns whatever went wrong (an exception, a store error payload, a bare
string) into one of a closed set of categories with a message and a remedy
that can be shown to the user as-is. Classification never raises.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from app.domain.exceptions.domain_exceptions import (
    AuthExpiredError,
    DuplicateLinkError,
    ExtractionError,
    InvalidUrlError,
    LinkNotFoundError,
    PermissionDeniedError,
    RetryExhaustedError,
)


class ErrorCategory(str, Enum):
    """Closed taxonomy of pipeline failures."""

    INVALID_URL = "invalid_url"
    DUPLICATE_LINK = "duplicate_link"
    AUTH_EXPIRED = "auth_expired"
    NETWORK_UNAVAILABLE = "network_unavailable"
    TIMEOUT = "timeout"
    EXTRACTION_FAILED = "extraction_failed"
    RATE_LIMITED = "rate_limited"
    PERMISSION_DENIED = "permission_denied"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


_RETRYABLE = frozenset(
    {
        ErrorCategory.NETWORK_UNAVAILABLE,
        ErrorCategory.TIMEOUT,
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.UPSTREAM_UNAVAILABLE,
    }
)


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    message: str
    suggestion: str
    severity: Severity

    @property
    def retryable(self) -> bool:
        return self.category in _RETRYABLE


def _rule(
    pattern: str, category: ErrorCategory, message: str, suggestion: str, severity: Severity
) -> tuple[re.Pattern[str], ClassifiedError]:
    return re.compile(pattern, re.IGNORECASE), ClassifiedError(
        category, message, suggestion, severity
    )


_E, _W = Severity.ERROR, Severity.WARNING

_ALREADY_SAVED = ClassifiedError(
    ErrorCategory.DUPLICATE_LINK,
    "You've already saved this link",
    "Search your links to find it",
    _W,
)

# First match wins. Extraction rules sit ahead of the network rules so that
# "failed to fetch metadata" is not mistaken for a connectivity problem.
_RULES: tuple[tuple[re.Pattern[str], ClassifiedError], ...] = (
    (
        re.compile(
            r"unique_user_normalized_url|duplicate key.*normalized_url|"
            r"unique constraint failed:.*canonical_url",
            re.IGNORECASE,
        ),
        _ALREADY_SAVED,
    ),
    _rule(
        r"\b23505\b|duplicate key",
        ErrorCategory.DUPLICATE_LINK,
        "This link already exists in your collection",
        "Check your existing links",
        _W,
    ),
    _rule(
        r"user must be authenticated",
        ErrorCategory.AUTH_EXPIRED,
        "Your session has expired",
        "Please sign in again to continue",
        _E,
    ),
    _rule(
        r"invalid login credentials",
        ErrorCategory.AUTH_EXPIRED,
        "Incorrect email or password",
        "Check your credentials and try again",
        _E,
    ),
    _rule(
        r"jwt expired|token.*expired",
        ErrorCategory.AUTH_EXPIRED,
        "Your session has expired",
        "Please sign in again",
        _E,
    ),
    _rule(
        r"edge function error|failed to fetch metadata|metadata extraction failed",
        ErrorCategory.EXTRACTION_FAILED,
        "Couldn't load page preview",
        "Your link will be saved without a preview",
        _W,
    ),
    _rule(
        r"no data returned from (?:edge function|metadata service)",
        ErrorCategory.EXTRACTION_FAILED,
        "Couldn't fetch page details",
        "The link will be saved with basic info",
        _W,
    ),
    _rule(
        r"failed to fetch|networkerror|network request failed|connection (?:refused|reset)|"
        r"name or service not known|nodename nor servname",
        ErrorCategory.NETWORK_UNAVAILABLE,
        "Unable to connect",
        "Check your internet connection and try again",
        _E,
    ),
    _rule(
        r"timeout|timed out",
        ErrorCategory.TIMEOUT,
        "Request timed out",
        "Please try again",
        _E,
    ),
    _rule(
        r"offline|no internet",
        ErrorCategory.NETWORK_UNAVAILABLE,
        "You're offline",
        "Connect to the internet and try again",
        _E,
    ),
    _rule(
        r"rate limit|too many requests|\b429\b",
        ErrorCategory.RATE_LIMITED,
        "Too many requests",
        "Please wait a moment and try again",
        _W,
    ),
    _rule(
        r"permission denied|not authorized|row-level security|\b403\b",
        ErrorCategory.PERMISSION_DENIED,
        "Access denied",
        "You don't have permission for this action",
        _E,
    ),
    _rule(
        r"url is required",
        ErrorCategory.INVALID_URL,
        "Please enter a URL",
        "Paste a link or use 'Current Tab'",
        _E,
    ),
    _rule(
        r"invalid url|please enter a valid url",
        ErrorCategory.INVALID_URL,
        "That doesn't look like a valid URL",
        "Make sure the link starts with http:// or https://",
        _E,
    ),
    _rule(
        r"\b500\b|internal server error",
        ErrorCategory.UPSTREAM_UNAVAILABLE,
        "Server error",
        "Please try again in a moment",
        _E,
    ),
    _rule(
        r"\b50[234]\b|bad gateway|service unavailable",
        ErrorCategory.UPSTREAM_UNAVAILABLE,
        "Service temporarily unavailable",
        "Please try again in a few seconds",
        _E,
    ),
)

FALLBACK = ClassifiedError(
    ErrorCategory.UNKNOWN,
    "Something went wrong",
    "Please try again or contact support if the problem persists",
    _E,
)

_TIMED_OUT = ClassifiedError(ErrorCategory.TIMEOUT, "Request timed out", "Please try again", _E)
_UNREACHABLE = ClassifiedError(
    ErrorCategory.NETWORK_UNAVAILABLE,
    "Unable to connect",
    "Check your internet connection and try again",
    _E,
)
_SESSION_EXPIRED = ClassifiedError(
    ErrorCategory.AUTH_EXPIRED,
    "Your session has expired",
    "Please sign in again to continue",
    _E,
)
_NO_PREVIEW = ClassifiedError(
    ErrorCategory.EXTRACTION_FAILED,
    "Couldn't load page preview",
    "Your link will be saved without a preview",
    _W,
)
_ACCESS_DENIED = ClassifiedError(
    ErrorCategory.PERMISSION_DENIED,
    "Access denied",
    "You don't have permission for this action",
    _E,
)
_NOT_A_URL = ClassifiedError(
    ErrorCategory.INVALID_URL,
    "That doesn't look like a valid URL",
    "Make sure the link starts with http:// or https://",
    _E,
)
_GONE = ClassifiedError(
    ErrorCategory.UNKNOWN,
    "This link no longer exists",
    "Refresh your collection",
    Severity.INFO,
)


def _classify_type(error: BaseException) -> ClassifiedError | None:
    """Map exceptions whose type already says what happened."""
    if isinstance(error, RetryExhaustedError):
        return classify(error.last_error)
    if isinstance(error, DuplicateLinkError):
        return _ALREADY_SAVED
    if isinstance(error, AuthExpiredError):
        return _SESSION_EXPIRED
    if isinstance(error, InvalidUrlError):
        if "required" in error.message.lower():
            return _match_text("url is required")
        return _NOT_A_URL
    if isinstance(error, ExtractionError):
        return _NO_PREVIEW
    if isinstance(error, PermissionDeniedError):
        return _ACCESS_DENIED
    if isinstance(error, LinkNotFoundError):
        return _GONE
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return _TIMED_OUT
    if isinstance(error, httpx.HTTPStatusError):
        if error.response.status_code == 401:
            return _SESSION_EXPIRED
        return _match_text(str(error.response.status_code))
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return _UNREACHABLE
    return None


def _match_text(text: str) -> ClassifiedError | None:
    for pattern, classified in _RULES:
        if pattern.search(text):
            return classified
    return None


def _error_text(raw: Any) -> str:
    if isinstance(raw, BaseException):
        text = str(raw)
        return text or type(raw).__name__
    if isinstance(raw, dict):
        for key in ("message", "error", "code"):
            if raw.get(key):
                return str(raw[key])
    return str(raw)


def classify(raw_error: Any) -> ClassifiedError:
    """Classify any failure into a :class:`ClassifiedError`.

    Exceptions with a known type are mapped directly; everything else is
    matched by text against an ordered rule table. Unmatched input gets the
    generic fallback.
    """
    try:
        if isinstance(raw_error, BaseException):
            typed = _classify_type(raw_error)
            if typed is not None:
                return typed
        return _match_text(_error_text(raw_error)) or FALLBACK
    except Exception:  # pragma: no cover - classification must stay total
        return FALLBACK


def is_duplicate(raw_error: Any) -> bool:
    return classify(raw_error).category is ErrorCategory.DUPLICATE_LINK


def is_auth_error(raw_error: Any) -> bool:
    return classify(raw_error).category is ErrorCategory.AUTH_EXPIRED


def is_network_error(raw_error: Any) -> bool:
    return classify(raw_error).category in (
        ErrorCategory.NETWORK_UNAVAILABLE,
        ErrorCategory.TIMEOUT,
    )


__all__ = [
    "FALLBACK",
    "ClassifiedError",
    "ErrorCategory",
    "Severity",
    "classify",
    "is_auth_error",
    "is_duplicate",
    "is_network_error",
]
