"""Keeps one device's cache consistent with the remote store.

Three sources feed the cache: a full pull on start, the outbox replaying this
device's own writes, and the live change stream carrying everyone's writes.
Remote rows are merged by id with last-write-wins on ``updated_at``; a
recorded deletion blocks any later event for the same id.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING

from app.core.time_utils import utc_now
from app.domain.events.link_events import ChangeKind, LinkChanged
from app.domain.models.link import Link, LinkUpdate
from app.sync.local_cache import (
    CacheEntry,
    LocalCache,
    OutboxOperation,
    OutboxStatus,
    SyncState,
)

if TYPE_CHECKING:
    from app.infrastructure.messaging.change_feed import ChangeStream, ChangeSubscription
    from app.protocols import RemoteLinkStore

logger = logging.getLogger(__name__)

ChangeListener = Callable[[list[CacheEntry]], None]

_UNCONFIRMED = (SyncState.PENDING, SyncState.SENT, SyncState.FAILED)


class SyncReconciler:
    """Merges remote state into the local cache of one signed-in owner."""

    def __init__(
        self,
        owner_id: str,
        store: RemoteLinkStore,
        stream: ChangeStream,
        cache: LocalCache,
        *,
        log: logging.Logger | None = None,
    ) -> None:
        self.owner_id = owner_id
        self._store = store
        self._stream = stream
        self._cache = cache
        self._logger = log or logger
        self._subscription: ChangeSubscription | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._listeners: list[ChangeListener] = []

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self) -> None:
        """Subscribe first, then pull, so no change between the two is lost."""
        if self.running:
            return
        self._subscription = self._stream.subscribe(self.owner_id)
        await self.full_pull()
        self._consumer = asyncio.create_task(
            self._consume(self._subscription), name=f"sync-{self.owner_id}"
        )
        self._logger.info("sync_started", extra={"owner_id": self.owner_id})

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None
            self._logger.info("sync_stopped", extra={"owner_id": self.owner_id})

    async def sign_out(self) -> None:
        await self.stop()
        self._cache.clear(self.owner_id)
        self._listeners.clear()

    async def full_pull(self) -> int:
        """Load every remote link of the owner and tombstone the ones that vanished.

        Only rows last written before the pull started can be tombstoned; rows
        confirmed while the pull was in flight are newer than its result.
        """
        pull_started = utc_now()
        links = await self._store.list_links(self.owner_id)
        remote_ids = {link.id for link in links}

        applied = sum(1 for link in links if self._merge(link))

        vanished = 0
        for entry in self._cache.list_entries(self.owner_id):
            if (
                entry.link_id
                and entry.link_id not in remote_ids
                and entry.state in (SyncState.CONFIRMED, SyncState.CONFLICTED)
                and (entry.updated_at is None or entry.updated_at < pull_started)
            ):
                self._cache.put(replace(entry, deleted=True))
                vanished += 1

        self._logger.info(
            "sync_full_pull",
            extra={
                "owner_id": self.owner_id,
                "remote_count": len(links),
                "applied": applied,
                "tombstoned": vanished,
            },
        )
        self.notify()
        return applied

    async def _consume(self, subscription: ChangeSubscription) -> None:
        async for event in subscription:
            try:
                self.apply_event(event)
            except Exception:
                self._logger.exception(
                    "sync_event_failed",
                    extra={"owner_id": self.owner_id, "link_id": event.link_id},
                )

    def apply_event(self, event: LinkChanged) -> bool:
        """Merge one change event; returns False when it was dropped."""
        if event.owner_id != self.owner_id or event.link is None:
            return False

        if event.kind is ChangeKind.DELETE:
            self._tombstone(event.link)
            applied = True
        else:
            applied = self._merge(event.link)

        self._logger.debug(
            "sync_event_applied" if applied else "sync_event_dropped",
            extra={
                "owner_id": self.owner_id,
                "link_id": event.link_id,
                "operation": event.kind.value,
            },
        )
        if applied:
            self.notify()
        return applied

    def _tombstone(self, link: Link) -> None:
        current = self._cache.get(link.id)
        if current is None:
            self._cache.put(replace(CacheEntry.from_link(link, SyncState.CONFIRMED), deleted=True))
            return
        updated_at = current.updated_at
        if link.updated_at is not None and (updated_at is None or link.updated_at > updated_at):
            updated_at = link.updated_at
        self._cache.put(
            replace(current, deleted=True, state=SyncState.CONFIRMED, updated_at=updated_at)
        )

    def _merge(self, link: Link) -> bool:
        current = self._cache.get(link.id)
        if current is not None:
            if current.deleted:
                return False
            if (
                current.updated_at is not None
                and link.updated_at is not None
                and link.updated_at <= current.updated_at
            ):
                return False

        state = SyncState.CONFLICTED if self._suppress_duplicates(link) else SyncState.CONFIRMED
        if current is not None and current.state is SyncState.CONFLICTED:
            state = SyncState.CONFLICTED

        document, pending = self._overlay_pending_updates(link)
        if pending:
            state = SyncState.PENDING
        if self._has_failed_write(link.id):
            state = SyncState.FAILED

        entry = CacheEntry.from_link(
            document, state, local_id=current.local_id if current else None
        )
        self._cache.put(replace(entry, updated_at=link.updated_at))
        return True

    def _suppress_duplicates(self, link: Link) -> bool:
        """Drop this device's unconfirmed copies of a URL the store already holds.

        Returns True when a copy that was never sent lost to the remote row.
        """
        conflicted = False
        for other in self._cache.find_by_canonical_url(self.owner_id, link.canonical_url):
            if other.key == link.id or other.link_id is not None:
                continue
            if other.state not in _UNCONFIRMED:
                continue
            self._cache.remove(other.key)
            if other.state is SyncState.SENT:
                # The outbox settles in-flight writes itself.
                continue
            if other.local_id:
                self._cache.remove_outbox(other.local_id)
                for dependent in self._cache.outbox_for_link(other.key):
                    self._cache.remove_outbox(dependent.local_id)
            conflicted = True
            self._logger.info(
                "sync_duplicate_suppressed",
                extra={"owner_id": self.owner_id, "local_id": other.local_id, "link_id": link.id},
            )
        return conflicted

    def _overlay_pending_updates(self, link: Link) -> tuple[Link, bool]:
        """Re-apply local edits that the store has not acknowledged yet."""
        overlaid = link
        pending = False
        for entry in self._cache.outbox_for_link(link.id):
            if entry.operation is not OutboxOperation.UPDATE:
                continue
            if entry.status is OutboxStatus.FAILED:
                continue
            overlaid = LinkUpdate.from_payload(entry.payload).apply(overlaid)
            pending = True
        return overlaid, pending

    def _has_failed_write(self, link_id: str) -> bool:
        """A failed edit stays visible until the user retries or dismisses it."""
        return any(
            entry.status is OutboxStatus.FAILED
            and entry.operation is not OutboxOperation.CREATE
            for entry in self._cache.outbox_for_link(link_id)
        )

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def snapshot(self) -> list[CacheEntry]:
        """Visible links of the owner, newest first."""
        entries = self._cache.list_entries(self.owner_id)
        return sorted(entries, key=lambda e: e.document.get("created_at") or "", reverse=True)

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener`` with a fresh snapshot after every change.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self._logger.exception("sync_listener_failed", extra={"owner_id": self.owner_id})


__all__ = ["ChangeListener", "SyncReconciler"]
