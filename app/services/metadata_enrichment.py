"""Attach page metadata to saved links.

Enrichment runs after a link is confirmed by the store and again whenever a
client asks to retry incomplete links. Extraction itself never raises; only
the store write can fail, and background callers log that failure instead of
propagating it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from app.config.sync import OutboxConfig
from app.core.time_utils import utc_now
from app.core.url_utils import ensure_protocol
from app.domain.exceptions.domain_exceptions import LinkNotFoundError
from app.domain.models.link import (
    ExtractionFailure,
    Link,
    LinkUpdate,
    Metadata,
    SetTo,
    Unchanged,
    is_metadata_complete,
)
from app.utils.retry_utils import retry_bounded

if TYPE_CHECKING:
    from app.config.metadata import MetadataConfig
    from app.protocols import MetadataSource, RemoteLinkStore

logger = logging.getLogger(__name__)


def build_enrichment_update(
    link: Link, result: Metadata | ExtractionFailure, attempted_at: datetime
) -> LinkUpdate:
    """Translate one extraction outcome into the update the store should apply.

    Fields the extraction did not find are left alone so that a later, poorer
    result never erases what an earlier attempt found.
    """
    attempts = SetTo(link.metadata_fetch_attempts + 1)
    if isinstance(result, ExtractionFailure):
        return LinkUpdate(
            title=SetTo(link.title or result.domain or link.domain),
            metadata_complete=SetTo(False),
            metadata_fetch_attempts=attempts,
            last_metadata_attempt_at=SetTo(attempted_at),
        )

    description = result.description or link.description
    thumbnail = result.thumbnail_url or link.thumbnail_url
    return LinkUpdate(
        title=SetTo(result.title or link.title or link.domain),
        description=SetTo(result.description) if result.description else Unchanged(),
        thumbnail_url=SetTo(result.thumbnail_url) if result.thumbnail_url else Unchanged(),
        metadata_complete=SetTo(is_metadata_complete(description, thumbnail)),
        metadata_fetch_attempts=attempts,
        last_metadata_attempt_at=SetTo(attempted_at),
    )


class MetadataEnrichmentService:
    """Fetches metadata for links and writes the outcome back to the store."""

    def __init__(
        self,
        store: RemoteLinkStore,
        source: MetadataSource,
        config: MetadataConfig,
        outbox_config: OutboxConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        log: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._source = source
        self._config = config
        self._write_policy = outbox_config or OutboxConfig()
        self._clock = clock
        self._logger = log or logger
        self._tasks: set[asyncio.Task[Link | None]] = set()
        self._retry_lock = asyncio.Lock()
        self._last_retry_started: float | None = None

    async def enrich(self, owner_id: str, link: Link) -> Link | None:
        """Run one enrichment attempt for ``link``.

        Returns:
            The updated link, or None when the link was skipped or no longer exists.
        """
        if link.metadata_complete:
            return None
        if link.metadata_fetch_attempts >= self._config.max_fetch_attempts:
            self._logger.debug(
                "metadata_attempts_exhausted",
                extra={"link_id": link.id, "attempts": link.metadata_fetch_attempts},
            )
            return None

        started = time.perf_counter()
        result = await self._source.extract(ensure_protocol(link.raw_url))
        update = build_enrichment_update(link, result, self._clock())

        try:
            updated = await retry_bounded(
                self._store.update_link,
                owner_id,
                link.id,
                update,
                attempts=self._write_policy.max_attempts,
                delay=self._write_policy.retry_delay_sec,
                timeout=self._write_policy.attempt_timeout_sec,
                operation="metadata_enrichment_write",
                log=self._logger,
            )
        except LinkNotFoundError:
            self._logger.info("metadata_link_gone", extra={"link_id": link.id})
            return None

        self._logger.info(
            "metadata_enriched",
            extra={
                "link_id": link.id,
                "domain": link.domain,
                "fallback": isinstance(result, ExtractionFailure),
                "metadata_complete": updated.metadata_complete,
                "attempts": updated.metadata_fetch_attempts,
                "latency_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return updated

    async def _enrich_quietly(self, owner_id: str, link: Link) -> Link | None:
        try:
            return await self.enrich(owner_id, link)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.exception(
                "metadata_enrichment_failed",
                extra={"link_id": link.id, "error": str(exc)},
            )
            return None

    def enrich_in_background(self, owner_id: str, link: Link) -> asyncio.Task[Link | None]:
        """Start enrichment without waiting for it; failures are only logged."""
        task = asyncio.create_task(
            self._enrich_quietly(owner_id, link), name=f"enrich-{link.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every background enrichment started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def retry_incomplete(self, owner_id: str) -> list[Link]:
        """Retry enrichment for the owner's incomplete links.

        Calls closer together than the debounce window, or while a pass is
        already running, do nothing. Links attempted within the cooldown or
        out of attempts are not selected.
        """
        now_mono = time.monotonic()
        if self._retry_lock.locked() or (
            self._last_retry_started is not None
            and now_mono - self._last_retry_started < self._config.retry_debounce_sec
        ):
            self._logger.debug("metadata_retry_debounced", extra={"owner_id": owner_id})
            return []

        async with self._retry_lock:
            self._last_retry_started = now_mono
            cutoff = self._clock() - timedelta(seconds=self._config.retry_cooldown_sec)
            candidates = await self._store.list_incomplete_metadata(
                owner_id,
                max_attempts=self._config.max_fetch_attempts,
                attempted_before=cutoff,
                limit=self._config.retry_batch_size,
            )
            self._logger.info(
                "metadata_retry_started",
                extra={"owner_id": owner_id, "candidates": len(candidates)},
            )

            enriched: list[Link] = []
            for link in candidates:
                updated = await self._enrich_quietly(owner_id, link)
                if updated is not None:
                    enriched.append(updated)

            self._logger.info(
                "metadata_retry_completed",
                extra={
                    "owner_id": owner_id,
                    "processed": len(candidates),
                    "completed": sum(1 for link in enriched if link.metadata_complete),
                },
            )
            return enriched


__all__ = ["MetadataEnrichmentService", "build_enrichment_update"]
