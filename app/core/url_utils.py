from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from app.domain.exceptions.domain_exceptions import InvalidUrlError

logger = logging.getLogger(__name__)


# Query keys dropped during canonicalization. Matched case-insensitively so a
# lower-cased canonical URL never exposes a key that survived the first pass.
_TRACKING_KEY_PATTERN = re.compile(r"^(?:utm_.*|fbclid|gclid|ref|source)$", re.IGNORECASE)
_WWW_AFTER_SCHEME = re.compile(r"^(https?://)(?:www\.)+", re.IGNORECASE)
_DANGLING_TAIL = re.compile(r"[/?&]+$")
_HAS_HTTP_SCHEME = re.compile(r"^https?://", re.IGNORECASE)
_DOMAIN_FALLBACK = re.compile(r"^(?:https?://)?(?:www\.)?([^/?#]+)", re.IGNORECASE)

_MAX_URL_LENGTH = 2048

_DANGEROUS_SCHEMES: frozenset[str] = frozenset(
    [
        "file",
        "ftp",
        "javascript",
        "data",
        "vbscript",
        "about",
        "blob",
        "mailto",
        "tel",
        "sms",
        "ws",
        "wss",
    ]
)


@dataclass(frozen=True)
class CanonicalUrl:
    """Deduplication key plus the display host derived from it."""

    canonical_url: str
    domain: str


def ensure_protocol(url: str) -> str:
    """Prefix ``https://`` unless the URL already carries an http(s) scheme."""
    trimmed = url.strip()
    if _HAS_HTTP_SCHEME.match(trimmed):
        return trimmed
    return f"https://{trimmed}"


def _check_url_input(url: str) -> None:
    if not isinstance(url, str) or not url.strip():
        msg = "URL is required"
        raise InvalidUrlError(msg)
    if len(url) > _MAX_URL_LENGTH:
        msg = "URL too long"
        raise InvalidUrlError(msg, details={"length": len(url)})
    if any(ord(char) < 32 for char in url.strip()):
        msg = "URL contains control characters"
        raise InvalidUrlError(msg)

    lowered = url.strip().lower()
    for scheme in _DANGEROUS_SCHEMES:
        if lowered.startswith(f"{scheme}:"):
            msg = f"URL scheme '{scheme}' is not allowed"
            raise InvalidUrlError(msg, details={"scheme": scheme})


def _parse_host(url: str) -> str:
    """Return the hostname of ``url`` or raise ``InvalidUrlError``."""
    try:
        parts = urlsplit(ensure_protocol(url))
        host = parts.hostname
    except ValueError as exc:
        msg = f"Please enter a valid URL: {exc}"
        raise InvalidUrlError(msg, details={"url": url[:100]}) from exc

    if not host or any(ch.isspace() for ch in host) or host.strip(".") == "":
        msg = "Please enter a valid URL"
        raise InvalidUrlError(msg, details={"url": url[:100]})
    return host


def _strip_tracking_params(url: str) -> str:
    base, sep, query = url.partition("?")
    if not sep:
        return url
    query, hash_sep, fragment = query.partition("#")
    kept = [
        pair
        for pair in query.split("&")
        if pair and not _TRACKING_KEY_PATTERN.match(pair.split("=", 1)[0])
    ]
    rebuilt = base
    if kept:
        rebuilt = f"{base}?{'&'.join(kept)}"
    return f"{rebuilt}{hash_sep}{fragment}"


def canonicalize(raw_url: str) -> CanonicalUrl:
    """Reduce a user-supplied URL to the key used for per-owner deduplication.

    Steps, applied to the running string:

    - trim surrounding whitespace and default the scheme to ``https://``
    - drop the fragment
    - drop tracking query parameters (``utm_*``, ``fbclid``, ``gclid``,
      ``ref``, ``source``)
    - drop a leading ``www.`` from the host
    - drop trailing slashes together with any dangling ``?`` or ``&``
    - lower-case everything

    The function is idempotent. Inputs that cannot be parsed as a URL with a
    host raise :class:`InvalidUrlError` before anything else happens.
    """
    _check_url_input(raw_url)
    _parse_host(raw_url)

    url = ensure_protocol(raw_url)
    url = url.split("#", 1)[0]
    url = _strip_tracking_params(url)
    url = _WWW_AFTER_SCHEME.sub(r"\1", url)
    url = _DANGLING_TAIL.sub("", url)
    url = url.lower()

    domain = _parse_host(url)
    logger.debug("canonicalize_url", extra={"url": raw_url[:100], "canonical": url[:100]})
    return CanonicalUrl(canonical_url=url, domain=domain)


def extract_domain(url: str) -> str:
    """Best-effort display host with ``www.`` removed.

    Falls back to a regex scrape when the URL does not parse, and to the input
    itself when even that finds nothing. Never raises.
    """
    try:
        host = urlsplit(ensure_protocol(url)).hostname
    except (ValueError, AttributeError):
        host = None
    if host:
        return host[4:] if host.startswith("www.") else host

    match = _DOMAIN_FALLBACK.match(url.strip()) if isinstance(url, str) else None
    if match and match.group(1):
        return match.group(1)
    return url


def validate_url(url: str | None) -> str | None:
    """Return a user-facing problem with ``url``, or ``None`` when it is acceptable."""
    if url is None or not url.strip():
        return "URL is required"
    try:
        _check_url_input(url)
        _parse_host(url)
    except InvalidUrlError:
        return "Please enter a valid URL"
    return None


__all__ = [
    "CanonicalUrl",
    "canonicalize",
    "ensure_protocol",
    "extract_domain",
    "validate_url",
]
