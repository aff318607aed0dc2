"""Server-side page metadata extraction.

One GET per call, then a fixed fallback ladder over the page's meta tags:

- title: ``og:title``, then ``<title>``, then the domain
- description: ``og:description``, then ``<meta name="description">``
- thumbnail: ``og:image``, then ``twitter:image``
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Self
from urllib.parse import urljoin, urlsplit

import httpx

from app.core.html_utils import parse_meta_tags
from app.core.url_utils import canonicalize, ensure_protocol, extract_domain
from app.domain.exceptions.domain_exceptions import ExtractionError
from app.domain.models.link import Metadata

if TYPE_CHECKING:
    from app.config.metadata import MetadataConfig

logger = logging.getLogger(__name__)


def resolve_thumbnail_url(candidate: str | None, page_url: str) -> str | None:
    """Make a thumbnail reference absolute relative to the page it came from.

    Protocol-relative references inherit the page's scheme. Anything that does
    not end up as an http(s) URL is dropped.
    """
    if not candidate:
        return None
    candidate = candidate.strip()
    if candidate.startswith("//"):
        scheme = urlsplit(page_url).scheme or "https"
        resolved = f"{scheme}:{candidate}"
    else:
        resolved = urljoin(page_url, candidate)
    if urlsplit(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def build_metadata(html: str, page_url: str, domain: str) -> Metadata:
    tags = parse_meta_tags(html)
    return Metadata(
        title=tags.og_title or tags.title or domain,
        description=tags.og_description or tags.meta_description,
        thumbnail_url=resolve_thumbnail_url(tags.og_image or tags.twitter_image, page_url),
        domain=domain,
    )


class MetadataExtractor:
    """Fetch a page and derive its title, description and thumbnail."""

    def __init__(
        self,
        config: MetadataConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._client = http_client
        self._owns_client = http_client is None
        self._logger = log or logger

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                max_redirects=5,
                headers={
                    "User-Agent": self._config.user_agent,
                    "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
                },
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def extract(self, url: str) -> Metadata:
        """Extract metadata for ``url``.

        Raises:
            InvalidUrlError: ``url`` is not a usable URL.
            ExtractionError: The page could not be fetched or parsed.
        """
        canonicalize(url)
        target = ensure_protocol(url)
        domain = extract_domain(target)
        started = time.perf_counter()

        try:
            response = await self.client.get(
                target,
                timeout=self._config.timeout_sec,
                headers={"User-Agent": self._config.user_agent},
            )
        except httpx.TimeoutException as exc:
            self._logger.info("metadata_fetch_timeout", extra={"domain": domain})
            msg = f"Timed out fetching {domain}"
            raise ExtractionError(msg, reason="timeout", details={"domain": domain}) from exc
        except httpx.HTTPError as exc:
            self._logger.info(
                "metadata_fetch_transport_error", extra={"domain": domain, "error": str(exc)}
            )
            msg = f"Failed to fetch metadata: {exc}"
            raise ExtractionError(msg, reason="transport", details={"domain": domain}) from exc

        if not response.is_success:
            self._logger.info(
                "metadata_fetch_bad_status",
                extra={"domain": domain, "status_code": response.status_code},
            )
            msg = f"Failed to fetch metadata: HTTP {response.status_code}"
            raise ExtractionError(
                msg,
                reason="upstream_status",
                status_code=response.status_code,
                details={"domain": domain},
            )

        body = response.content[: self._config.max_body_bytes]
        html = body.decode(response.encoding or "utf-8", errors="replace")
        try:
            metadata = build_metadata(html, str(response.url), domain)
        except Exception as exc:
            msg = f"Failed to parse page metadata: {exc}"
            raise ExtractionError(msg, reason="parse", details={"domain": domain}) from exc

        self._logger.info(
            "metadata_extracted",
            extra={
                "domain": domain,
                "complete": metadata.complete,
                "latency_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return metadata
