"""Repair links that claim complete metadata but only carry the fallback title.

Older writers flagged a link complete as soon as any title came back, even
when that title was just the domain. Such links never get enriched again.
The job below clears the flag and backdates the last attempt so the regular
retry path picks them up after its cooldown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from app.core.time_utils import utc_now

if TYPE_CHECKING:
    from app.config.sync import ReconciliationConfig
    from app.domain.models.link import Link
    from app.protocols import RemoteLinkStore

logger = logging.getLogger(__name__)


def _strip_www_lower(value: str) -> str:
    return value.replace("www.", "").lower()


def needs_metadata_rearm(link: Link) -> bool:
    """True for a link flagged complete whose only metadata is its domain as title."""
    if not link.metadata_complete:
        return False
    if link.description or link.thumbnail_url:
        return False
    if link.title is None:
        return False
    return _strip_www_lower(link.title) == _strip_www_lower(link.domain)


@dataclass(frozen=True)
class ReconciliationResult:
    matched: int
    rearmed: int
    duration_ms: float


class MetadataReconciliationJob:
    """One sweep over the store; safe to run repeatedly."""

    def __init__(
        self,
        store: RemoteLinkStore,
        config: ReconciliationConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
        log: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock
        self._logger = log or logger

    async def run_once(self) -> ReconciliationResult:
        started = time.perf_counter()
        candidates = await self._store.list_rearm_candidates()
        matched = [link for link in candidates if needs_metadata_rearm(link)]

        rearmed = []
        if matched:
            attempt_at = self._clock() - timedelta(seconds=self._config.rearm_offset_sec)
            rearmed = await self._store.rearm_metadata([link.id for link in matched], attempt_at)

        result = ReconciliationResult(
            matched=len(matched),
            rearmed=len(rearmed),
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        self._logger.info(
            "metadata_reconciliation_completed",
            extra={
                "matched": result.matched,
                "rearmed": result.rearmed,
                "latency_ms": result.duration_ms,
            },
        )
        return result


__all__ = ["MetadataReconciliationJob", "ReconciliationResult", "needs_metadata_rearm"]
