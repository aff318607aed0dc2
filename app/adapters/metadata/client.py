"""Client for the metadata extraction service.

Enrichment callers use this instead of fetching pages themselves. It never
raises: every failure comes back as an :class:`ExtractionFailure` whose
``domain`` the caller stores as the title.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Self

import httpx

from app.core.url_utils import extract_domain
from app.domain.exceptions.domain_exceptions import ExtractionError
from app.domain.models.link import ExtractionFailure, Metadata
from app.domain.services.error_classifier import classify
from app.utils.retry_utils import retry_bounded

if TYPE_CHECKING:
    from app.config.metadata import MetadataConfig

logger = logging.getLogger(__name__)

CLIENT_RETRY_DELAY_SEC = 0.5


class MetadataServiceClient:
    """Async HTTP client for ``POST /v1/metadata``."""

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
            self._client = httpx.AsyncClient(headers={"Accept": "application/json"})
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _call(self, url: str) -> dict[str, Any]:
        headers = {}
        if self._config.service_key:
            headers["Authorization"] = f"Bearer {self._config.service_key}"
        response = await self.client.post(
            self._config.service_url,
            json={"url": url},
            headers=headers,
            timeout=self._config.timeout_sec,
        )
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_success:
            if not isinstance(data, dict):
                msg = "No data returned from metadata service"
                raise ExtractionError(msg, reason="parse")
            return data

        if isinstance(data, dict) and data.get("fallback"):
            msg = str(data.get("error") or "Metadata extraction failed")
            raise ExtractionError(msg, status_code=response.status_code)
        response.raise_for_status()
        return {}

    async def extract(self, url: str) -> Metadata | ExtractionFailure:
        domain = extract_domain(url)
        try:
            data = await retry_bounded(
                self._call,
                url,
                attempts=self._config.client_attempts,
                delay=CLIENT_RETRY_DELAY_SEC,
                timeout=self._config.timeout_sec,
                operation="metadata_service_call",
                log=self._logger,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            classified = classify(exc)
            self._logger.info(
                "metadata_fallback",
                extra={"domain": domain, "category": classified.category.value, "error": str(exc)},
            )
            return ExtractionFailure(error=str(exc) or classified.message, domain=domain)

        return Metadata(
            title=data.get("title") or data.get("domain") or domain,
            description=data.get("description") or None,
            thumbnail_url=data.get("thumbnailUrl") or None,
            domain=data.get("domain") or domain,
        )
