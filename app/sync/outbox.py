"""Replays queued writes against the remote store.

Each outbox entry goes ``pending`` -> ``sent`` and then leaves the outbox once
the store acknowledges it, or stays behind as ``failed`` with a classified
error until the user retries or dismisses it. At most one write per entry is
in flight. Entries are replayed in queue order; consecutive creates go out
concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from app.config.sync import OutboxConfig
from app.core.time_utils import ensure_utc
from app.domain.exceptions.domain_exceptions import DuplicateLinkError, LinkNotFoundError
from app.domain.models.link import Link, LinkDraft, LinkUpdate
from app.domain.services.error_classifier import ClassifiedError, classify
from app.sync.local_cache import (
    CacheEntry,
    LocalCache,
    OutboxOperation,
    OutboxRecord,
    OutboxStatus,
    SyncState,
    new_local_id,
)
from app.utils.retry_utils import retry_bounded

if TYPE_CHECKING:
    from app.protocols import RemoteLinkStore
    from app.services.metadata_enrichment import MetadataEnrichmentService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxOutcome:
    """What happened to one outbox entry during a flush."""

    local_id: str
    operation: OutboxOperation
    state: SyncState
    link: Link | None = None
    error: ClassifiedError | None = None


@dataclass
class FlushResult:
    outcomes: list[OutboxOutcome] = field(default_factory=list)
    deferred: int = 0

    def count(self, state: SyncState) -> int:
        return sum(1 for outcome in self.outcomes if outcome.state is state)

    @property
    def confirmed(self) -> int:
        return self.count(SyncState.CONFIRMED)

    @property
    def conflicted(self) -> int:
        return self.count(SyncState.CONFLICTED)

    @property
    def failed(self) -> int:
        return self.count(SyncState.FAILED)


OutcomeListener = Callable[[OutboxOutcome], None]


def merge_remote(
    cache: LocalCache, link: Link, state: SyncState, local_id: str | None = None
) -> CacheEntry:
    """Store ``link`` under its remote id unless the cache already holds a newer copy.

    The sync state is always taken from the caller; only the document obeys
    last-write-wins.
    """
    current = cache.get(link.id)
    if current is None:
        return cache.put(CacheEntry.from_link(link, state, local_id=local_id))

    keep_current = (
        current.updated_at is not None
        and link.updated_at is not None
        and current.updated_at >= link.updated_at
    )
    if keep_current:
        entry = replace(current, state=state, local_id=current.local_id or local_id)
    else:
        entry = current.with_link(
            link,
            state=state,
            link_id=link.id,
            local_id=current.local_id or local_id,
            updated_at=link.updated_at,
            deleted=False,
        )
    return cache.put(entry)


class OutboxProcessor:
    """Sends outbox entries of one device to the remote store."""

    def __init__(
        self,
        store: RemoteLinkStore,
        cache: LocalCache,
        config: OutboxConfig | None = None,
        *,
        enrichment: MetadataEnrichmentService | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._config = config or OutboxConfig()
        self._enrichment = enrichment
        self._logger = log or logger
        self._locks: dict[str, asyncio.Lock] = {}
        self._flush_lock = asyncio.Lock()
        self._listeners: list[OutcomeListener] = []

    def add_listener(self, listener: OutcomeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, outcome: OutboxOutcome) -> OutboxOutcome:
        for listener in list(self._listeners):
            try:
                listener(outcome)
            except Exception:
                self._logger.exception(
                    "outbox_listener_failed", extra={"local_id": outcome.local_id}
                )
        return outcome

    def is_in_flight(self, local_id: str) -> bool:
        lock = self._locks.get(local_id)
        return lock is not None and lock.locked()

    # -------------------------------------------------------------------------
    # Flushing
    # -------------------------------------------------------------------------

    async def flush(self, owner_id: str) -> FlushResult:
        """Send every pending entry of the owner in the order it was queued.

        A run of consecutive creates goes out concurrently. Updates and deletes
        wait for everything queued before them, and nothing queued after them
        starts until they settle, so a delete followed by a re-capture of the
        same URL reaches the store in that order. Flushes do not overlap.
        """
        async with self._flush_lock:
            result = await self._flush_in_order(owner_id)

        if result.outcomes or result.deferred:
            self._logger.info(
                "outbox_flushed",
                extra={
                    "owner_id": owner_id,
                    "confirmed": result.confirmed,
                    "conflicted": result.conflicted,
                    "failed": result.failed,
                    "deferred": result.deferred,
                },
            )
        return result

    async def _flush_in_order(self, owner_id: str) -> FlushResult:
        result = FlushResult()
        creates: list[OutboxRecord] = []

        async def _send_creates() -> None:
            outcomes = await asyncio.gather(*(self.process(e.local_id) for e in creates))
            for outcome in outcomes:
                self._collect(result, outcome)
            creates.clear()

        for entry in self._cache.list_outbox(owner_id, statuses=[OutboxStatus.PENDING]):
            if entry.operation is OutboxOperation.CREATE:
                creates.append(entry)
                continue
            await _send_creates()
            self._collect(result, await self.process(entry.local_id))
        await _send_creates()
        return result

    @staticmethod
    def _collect(result: FlushResult, outcome: OutboxOutcome | None) -> None:
        if outcome is None:
            result.deferred += 1
        else:
            result.outcomes.append(outcome)

    async def process(self, local_id: str) -> OutboxOutcome | None:
        """Send one entry; returns None when there was nothing to do yet."""
        lock = self._locks.setdefault(local_id, asyncio.Lock())
        try:
            async with lock:
                entry = self._cache.get_outbox(local_id)
                if entry is None or entry.status is not OutboxStatus.PENDING:
                    return None
                if entry.operation is OutboxOperation.CREATE:
                    return await self._send_create(entry)
                if entry.operation is OutboxOperation.UPDATE:
                    return await self._send_update(entry)
                return await self._send_delete(entry)
        finally:
            if not lock.locked() and self._cache.get_outbox(local_id) is None:
                self._locks.pop(local_id, None)

    async def _attempt(
        self, local_id: str, call: Callable[..., Awaitable[Any]], *args: Any
    ) -> Any:
        self._cache.increment_attempts(local_id)
        return await call(*args)

    async def _send(
        self, entry: OutboxRecord, call: Callable[..., Awaitable[Any]], *args: Any
    ) -> Any:
        self._cache.update_outbox(entry.local_id, status=OutboxStatus.SENT)
        return await retry_bounded(
            self._attempt,
            entry.local_id,
            call,
            *args,
            attempts=self._config.max_attempts,
            delay=self._config.retry_delay_sec,
            timeout=self._config.attempt_timeout_sec,
            operation=f"outbox_{entry.operation.value}",
            log=self._logger,
        )

    def _fail(
        self, entry: OutboxRecord, exc: BaseException, *, restore_key: str | None = None
    ) -> OutboxOutcome:
        classified = classify(exc)
        self._cache.update_outbox(
            entry.local_id, status=OutboxStatus.FAILED, last_error=classified.message
        )
        key = restore_key or entry.link_key
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.put(replace(cached, state=SyncState.FAILED, deleted=False))
        self._logger.warning(
            "outbox_entry_failed",
            extra={
                "local_id": entry.local_id,
                "operation": entry.operation.value,
                "category": classified.category.value,
                "error": str(exc),
            },
        )
        return self._emit(
            OutboxOutcome(
                local_id=entry.local_id,
                operation=entry.operation,
                state=SyncState.FAILED,
                error=classified,
            )
        )

    def _retarget(self, link_key: str, link_id: str) -> None:
        for dependent in self._cache.outbox_for_link(link_key):
            if dependent.operation is not OutboxOperation.CREATE and dependent.target_id is None:
                self._cache.update_outbox(dependent.local_id, target_id=link_id)

    def _resolve_target(self, entry: OutboxRecord) -> tuple[str | None, bool]:
        """Return ``(remote_id, waiting)`` for an update or delete entry."""
        if entry.target_id:
            return entry.target_id, False
        cached = self._cache.get(entry.link_key)
        if cached is not None and cached.link_id:
            return cached.link_id, False
        create = self._cache.get_outbox(entry.link_key)
        return None, create is not None

    async def _send_create(self, entry: OutboxRecord) -> OutboxOutcome | None:
        draft = LinkDraft.from_payload(entry.payload)
        self._cache.set_state(entry.link_key, SyncState.SENT)

        try:
            link = await self._send(entry, self._store.insert_link, draft)
        except asyncio.CancelledError:
            raise
        except DuplicateLinkError:
            return await self._adopt_existing(entry, draft)
        except Exception as exc:
            current = self._cache.get_outbox(entry.local_id)
            if current is not None and current.cancel_requested:
                self._cache.remove_outbox(entry.local_id)
                self._cache.remove(entry.link_key)
                self._logger.info(
                    "outbox_cancelled_create_failed",
                    extra={"local_id": entry.local_id, "error": str(exc)},
                )
                return None
            return self._fail(entry, exc)

        if not isinstance(link, Link):
            msg = f"store returned {type(link).__name__} for an insert"
            return self._fail(entry, TypeError(msg))
        return await self._settle_create(entry, link)

    async def _settle_create(self, entry: OutboxRecord, link: Link) -> OutboxOutcome | None:
        """Rekey the optimistic row to ``link`` once the store holds it."""
        current = self._cache.get_outbox(entry.local_id)
        if current is None:
            self._logger.info(
                "outbox_entry_vanished", extra={"local_id": entry.local_id, "link_id": link.id}
            )
            return None

        self._cache.remove_outbox(entry.local_id)
        self._retarget(entry.link_key, link.id)
        self._cache.remove(entry.link_key)

        if current.cancel_requested:
            self._logger.info("outbox_create_cancelled", extra={"link_id": link.id})
            follow_up = self._cache.enqueue(
                OutboxRecord(
                    local_id=new_local_id("op"),
                    owner_id=entry.owner_id,
                    operation=OutboxOperation.DELETE,
                    link_key=link.id,
                    target_id=link.id,
                )
            )
            self._cache.put(
                replace(
                    CacheEntry.from_link(link, SyncState.PENDING, local_id=entry.local_id),
                    deleted=True,
                )
            )
            return await self.process(follow_up.local_id)

        merge_remote(self._cache, link, SyncState.CONFIRMED, local_id=entry.local_id)
        self._logger.info(
            "outbox_create_confirmed",
            extra={
                "local_id": entry.local_id,
                "link_id": link.id,
                "attempts": current.attempt_count,
            },
        )
        if self._enrichment is not None and not link.metadata_complete:
            self._enrichment.enrich_in_background(entry.owner_id, link)
        return self._emit(
            OutboxOutcome(
                local_id=entry.local_id,
                operation=entry.operation,
                state=SyncState.CONFIRMED,
                link=link,
            )
        )

    def _landed_earlier(self, entry: OutboxRecord, draft: LinkDraft, existing: Link) -> bool:
        """True when ``existing`` is this entry's own insert from an attempt that timed out.

        The store can commit an insert after the attempt waiting for it gave
        up; the retry then collides with that row.
        """
        current = self._cache.get_outbox(entry.local_id)
        if current is None or current.attempt_count < 2:
            return False
        if existing.owner_id != draft.owner_id or existing.raw_url != draft.raw_url:
            return False
        if current.created_at is None or existing.created_at is None:
            return True
        return ensure_utc(existing.created_at) >= ensure_utc(current.created_at)

    async def _adopt_existing(
        self, entry: OutboxRecord, draft: LinkDraft
    ) -> OutboxOutcome | None:
        """The store already has this URL for the owner: keep its record instead of ours."""
        try:
            existing = await self._store.get_by_canonical_url(draft.owner_id, draft.canonical_url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._fail(entry, exc)

        if existing is not None and self._landed_earlier(entry, draft, existing):
            self._logger.info(
                "outbox_create_landed_on_timeout",
                extra={"local_id": entry.local_id, "link_id": existing.id},
            )
            return await self._settle_create(entry, existing)

        self._cache.remove_outbox(entry.local_id)
        self._cache.remove(entry.link_key)
        if existing is not None:
            self._retarget(entry.link_key, existing.id)
            merge_remote(self._cache, existing, SyncState.CONFLICTED, local_id=entry.local_id)
        self._logger.info(
            "outbox_create_conflicted",
            extra={
                "local_id": entry.local_id,
                "link_id": existing.id if existing else None,
                "canonical_url": draft.canonical_url,
            },
        )
        return self._emit(
            OutboxOutcome(
                local_id=entry.local_id,
                operation=entry.operation,
                state=SyncState.CONFLICTED,
                link=existing,
            )
        )

    async def _send_update(self, entry: OutboxRecord) -> OutboxOutcome | None:
        target, waiting = self._resolve_target(entry)
        if target is None:
            if not waiting:
                self._cache.remove_outbox(entry.local_id)
            return None

        update = LinkUpdate.from_payload(entry.payload)
        try:
            link = await self._send(entry, self._store.update_link, entry.owner_id, target, update)
        except asyncio.CancelledError:
            raise
        except LinkNotFoundError:
            self._cache.remove_outbox(entry.local_id)
            self._cache.remove(target)
            return self._emit(
                OutboxOutcome(
                    local_id=entry.local_id, operation=entry.operation, state=SyncState.CONFIRMED
                )
            )
        except Exception as exc:
            return self._fail(entry, exc, restore_key=target)

        if not isinstance(link, Link):
            msg = f"store returned {type(link).__name__} for an update"
            return self._fail(entry, TypeError(msg), restore_key=target)
        self._cache.remove_outbox(entry.local_id)
        still_pending = any(
            e.operation is OutboxOperation.UPDATE for e in self._cache.outbox_for_link(target)
        )
        merge_remote(
            self._cache, link, SyncState.PENDING if still_pending else SyncState.CONFIRMED
        )
        return self._emit(
            OutboxOutcome(
                local_id=entry.local_id,
                operation=entry.operation,
                state=SyncState.CONFIRMED,
                link=link,
            )
        )

    async def _send_delete(self, entry: OutboxRecord) -> OutboxOutcome | None:
        target, waiting = self._resolve_target(entry)
        if target is None:
            if not waiting:
                self._cache.remove_outbox(entry.local_id)
                self._cache.remove(entry.link_key)
            return None

        try:
            link = await self._send(entry, self._store.delete_link, entry.owner_id, target)
        except asyncio.CancelledError:
            raise
        except LinkNotFoundError:
            link = None
        except Exception as exc:
            return self._fail(entry, exc, restore_key=target)

        self._cache.remove_outbox(entry.local_id)
        cached = self._cache.get(target)
        if cached is not None:
            # Tombstone so a late update event cannot bring the link back.
            self._cache.put(replace(cached, deleted=True, state=SyncState.CONFIRMED))
        self._logger.info("outbox_delete_confirmed", extra={"link_id": target})
        return self._emit(
            OutboxOutcome(
                local_id=entry.local_id,
                operation=entry.operation,
                state=SyncState.CONFIRMED,
                link=link if isinstance(link, Link) else None,
            )
        )

    # -------------------------------------------------------------------------
    # User actions on failed entries
    # -------------------------------------------------------------------------

    async def retry_failed(self, local_id: str) -> OutboxOutcome | None:
        entry = self._cache.get_outbox(local_id)
        if entry is None or entry.status is not OutboxStatus.FAILED:
            return None
        self._cache.update_outbox(
            local_id, status=OutboxStatus.PENDING, attempt_count=0, last_error=None
        )
        key = entry.target_id or entry.link_key
        if entry.operation is OutboxOperation.DELETE:
            self._cache.set_state(key, SyncState.PENDING, deleted=True)
        else:
            self._cache.set_state(key, SyncState.PENDING)
        self._logger.info("outbox_retry_requested", extra={"local_id": local_id})
        return await self.process(local_id)

    def dismiss(self, local_id: str) -> bool:
        """Forget a failed entry; a dismissed create also leaves the cache."""
        entry = self._cache.get_outbox(local_id)
        if entry is None or self.is_in_flight(local_id):
            return False
        self._cache.remove_outbox(local_id)
        if entry.operation is OutboxOperation.CREATE:
            self._cache.remove(entry.link_key)
            for dependent in self._cache.outbox_for_link(entry.link_key):
                self._cache.remove_outbox(dependent.local_id)
        else:
            key = entry.target_id or entry.link_key
            cached = self._cache.get(key)
            if cached is not None and cached.link_id:
                self._cache.put(replace(cached, state=SyncState.CONFIRMED, deleted=False))
        self._logger.info(
            "outbox_entry_dismissed",
            extra={"local_id": local_id, "operation": entry.operation.value},
        )
        return True


__all__ = ["FlushResult", "OutboxOutcome", "OutboxProcessor", "merge_remote"]
