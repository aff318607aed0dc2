"""Per-device entry point for capturing and editing links.

Every user action lands in the local cache first and is replayed to the
remote store through the outbox. The reconciler keeps the cache in step with
writes made elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

from app.core.time_utils import utc_now
from app.core.url_utils import canonicalize
from app.domain.exceptions.domain_exceptions import AuthExpiredError, LinkNotFoundError
from app.domain.models.link import (
    NOTE_MAX_LENGTH,
    Clear,
    Link,
    LinkDraft,
    LinkUpdate,
    SetTo,
)
from app.sync.local_cache import (
    CacheEntry,
    LocalCache,
    OutboxOperation,
    OutboxRecord,
    OutboxStatus,
    SyncState,
    new_local_id,
)
from app.sync.outbox import FlushResult, OutboxOutcome, OutboxProcessor
from app.sync.reconciler import ChangeListener, SyncReconciler

if TYPE_CHECKING:
    from app.config.sync import OutboxConfig
    from app.infrastructure.messaging.change_feed import ChangeStream
    from app.protocols import AuthSession, RemoteLinkStore
    from app.services.metadata_enrichment import MetadataEnrichmentService

logger = logging.getLogger(__name__)

_DRAFT_FIELDS = ("title", "note", "space_id")


class CaptureStatus(str, Enum):
    SAVED = "saved"
    ALREADY_SAVED = "already_saved"


@dataclass(frozen=True)
class CaptureResult:
    status: CaptureStatus
    entry: CacheEntry

    @property
    def key(self) -> str:
        return self.entry.key


def _check_note(note: str | None) -> None:
    if note is not None and len(note) > NOTE_MAX_LENGTH:
        msg = f"note must be at most {NOTE_MAX_LENGTH} characters"
        raise ValueError(msg)


class LinkSyncClient:
    """One device's view of the signed-in user's links."""

    def __init__(
        self,
        store: RemoteLinkStore,
        stream: ChangeStream,
        auth: AuthSession,
        cache: LocalCache,
        *,
        outbox_config: OutboxConfig | None = None,
        enrichment: MetadataEnrichmentService | None = None,
        auto_flush: bool = True,
        log: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._stream = stream
        self._auth = auth
        self._cache = cache
        self._enrichment = enrichment
        self._auto_flush = auto_flush
        self._logger = log or logger
        self._outbox = OutboxProcessor(
            store, cache, outbox_config, enrichment=enrichment, log=self._logger
        )
        self._outbox.add_listener(self._on_outcome)
        self._outcome_listeners: list[Callable[[OutboxOutcome], None]] = []
        self._reconciler: SyncReconciler | None = None
        self._flush_tasks: set[asyncio.Task[FlushResult | None]] = set()

    @property
    def outbox(self) -> OutboxProcessor:
        return self._outbox

    @property
    def reconciler(self) -> SyncReconciler | None:
        return self._reconciler

    def _require_owner(self) -> str:
        owner_id = self._auth.current_user_id()
        if not owner_id or not self._auth.is_authenticated():
            raise AuthExpiredError()
        return owner_id

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        owner_id = self._require_owner()
        if self._reconciler is not None and self._reconciler.owner_id != owner_id:
            await self._reconciler.stop()
            self._reconciler = None
        if self._reconciler is None:
            self._reconciler = SyncReconciler(
                owner_id, self._store, self._stream, self._cache, log=self._logger
            )
        self._cache.reset_in_flight(owner_id)
        await self._reconciler.start()
        self._schedule_flush()

    async def stop(self) -> None:
        if self._reconciler is not None:
            await self._reconciler.stop()
        await self.wait_idle()

    async def sign_out(self) -> None:
        """Stop syncing and drop everything this device knows about the user."""
        for task in list(self._flush_tasks):
            task.cancel()
        await asyncio.gather(*self._flush_tasks, return_exceptions=True)
        if self._reconciler is not None:
            await self._reconciler.sign_out()
            self._reconciler = None
        else:
            self._cache.clear()
        self._logger.info("sync_signed_out")

    async def resume(self) -> FlushResult:
        """Called when the app returns to the foreground."""
        owner_id = self._require_owner()
        result = await self.flush()
        if self._enrichment is not None:
            await self._enrichment.retry_incomplete(owner_id)
        return result

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def snapshot(self) -> list[CacheEntry]:
        if self._reconciler is not None:
            return self._reconciler.snapshot()
        owner_id = self._auth.current_user_id()
        return self._cache.list_entries(owner_id) if owner_id else []

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        if self._reconciler is None:
            msg = "start() must be called before subscribing to changes"
            raise RuntimeError(msg)
        return self._reconciler.on_change(listener)

    def on_outcome(self, listener: Callable[[OutboxOutcome], None]) -> Callable[[], None]:
        """Listen for confirmed, conflicted and failed writes."""
        self._outcome_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._outcome_listeners:
                self._outcome_listeners.remove(listener)

        return _unsubscribe

    def _on_outcome(self, outcome: OutboxOutcome) -> None:
        for listener in list(self._outcome_listeners):
            try:
                listener(outcome)
            except Exception:
                self._logger.exception(
                    "sync_outcome_listener_failed", extra={"local_id": outcome.local_id}
                )
        self._notify()

    def _notify(self) -> None:
        if self._reconciler is not None:
            self._reconciler.notify()

    # -------------------------------------------------------------------------
    # Flushing
    # -------------------------------------------------------------------------

    async def flush(self) -> FlushResult:
        owner_id = self._require_owner()
        return await self._outbox.flush(owner_id)

    async def _flush_quietly(self) -> FlushResult | None:
        try:
            return await self.flush()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.exception("outbox_flush_failed", extra={"error": str(exc)})
            return None

    def _schedule_flush(self) -> None:
        if not self._auto_flush:
            return
        task = asyncio.create_task(self._flush_quietly(), name="outbox-flush")
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for scheduled flushes and the enrichments they started."""
        while self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)
        if self._enrichment is not None:
            await self._enrichment.wait_idle()

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    async def capture(
        self, raw_url: str, *, note: str | None = None, space_id: str | None = None
    ) -> CaptureResult:
        """Save ``raw_url`` optimistically and queue it for the store.

        Raises:
            InvalidUrlError: The URL cannot be parsed; nothing is written.
            AuthExpiredError: No signed-in user.
        """
        canonical = canonicalize(raw_url)
        owner_id = self._require_owner()
        _check_note(note)

        existing = self._cache.find_by_canonical_url(owner_id, canonical.canonical_url)
        if existing:
            self._logger.info(
                "capture_already_saved",
                extra={"owner_id": owner_id, "key": existing[0].key, "domain": canonical.domain},
            )
            return CaptureResult(CaptureStatus.ALREADY_SAVED, existing[0])

        local_id = new_local_id()
        draft = LinkDraft(
            owner_id=owner_id,
            raw_url=raw_url.strip(),
            canonical_url=canonical.canonical_url,
            domain=canonical.domain,
            title=canonical.domain,
            note=note,
            space_id=space_id,
        )
        optimistic = Link(
            id=local_id,
            owner_id=owner_id,
            raw_url=draft.raw_url,
            canonical_url=draft.canonical_url,
            domain=draft.domain,
            title=draft.title,
            note=note,
            space_id=space_id,
            created_at=utc_now(),
        )
        entry = self._cache.put(
            CacheEntry(
                key=local_id,
                owner_id=owner_id,
                canonical_url=draft.canonical_url,
                state=SyncState.PENDING,
                document=optimistic.to_dict(),
                local_id=local_id,
                space_id=space_id,
            )
        )
        self._cache.enqueue(
            OutboxRecord(
                local_id=local_id,
                owner_id=owner_id,
                operation=OutboxOperation.CREATE,
                link_key=local_id,
                payload=draft.to_payload(),
            )
        )
        self._logger.info(
            "link_captured",
            extra={"owner_id": owner_id, "local_id": local_id, "domain": draft.domain},
        )
        self._notify()
        self._schedule_flush()
        return CaptureResult(CaptureStatus.SAVED, entry)

    def _visible_entry(self, key: str) -> CacheEntry:
        entry = self._cache.get(key) or self._cache.get_by_local_id(key)
        if entry is None or entry.deleted:
            msg = f"Link {key} not found"
            raise LinkNotFoundError(msg, details={"key": key})
        return entry

    async def undo(self, key: str) -> bool:
        """Take back a capture.

        Before the write is sent it is simply dropped. Once it is in flight it
        is allowed to finish and is followed by a delete.
        """
        self._require_owner()
        entry = self._cache.get(key) or self._cache.get_by_local_id(key)
        if entry is None:
            return False

        create = self._cache.get_outbox(entry.local_id) if entry.local_id else None
        if create is not None and create.operation is OutboxOperation.CREATE:
            in_flight = (
                create.status is OutboxStatus.SENT or self._outbox.is_in_flight(create.local_id)
            )
            if in_flight:
                self._cache.update_outbox(create.local_id, cancel_requested=True)
                self._cache.put(replace(entry, deleted=True))
            else:
                self._cache.remove_outbox(create.local_id)
                for dependent in self._cache.outbox_for_link(entry.key):
                    self._cache.remove_outbox(dependent.local_id)
                self._cache.remove(entry.key)
            self._logger.info(
                "capture_undone",
                extra={"local_id": entry.local_id, "in_flight": in_flight},
            )
            self._notify()
            return True

        if entry.link_id:
            await self.delete(entry.key)
            return True
        return False

    async def update(self, key: str, update: LinkUpdate) -> CacheEntry:
        """Apply ``update`` locally and queue it for the store."""
        owner_id = self._require_owner()
        changes = update.changes()
        _check_note(changes.get("note"))
        entry = self._visible_entry(key)
        if update.is_empty:
            return entry

        document = update.apply(entry.link)
        if entry.link_id is None:
            create = self._cache.get_outbox(entry.local_id) if entry.local_id else None
            if (
                create is not None
                and create.status is OutboxStatus.PENDING
                and all(name in _DRAFT_FIELDS for name in changes)
            ):
                payload = dict(create.payload)
                payload.update({name: changes[name] for name in changes})
                self._cache.update_outbox(create.local_id, payload=payload)
                updated = self._cache.put(entry.with_link(document))
                self._notify()
                return updated

        pending_update = next(
            (
                e
                for e in self._cache.outbox_for_link(entry.key)
                if e.operation is OutboxOperation.UPDATE and e.status is OutboxStatus.PENDING
            ),
            None,
        )
        if pending_update is not None:
            merged = LinkUpdate.from_payload(pending_update.payload).merge(update)
            self._cache.update_outbox(pending_update.local_id, payload=merged.to_payload())
        else:
            self._cache.enqueue(
                OutboxRecord(
                    local_id=new_local_id("op"),
                    owner_id=owner_id,
                    operation=OutboxOperation.UPDATE,
                    link_key=entry.key,
                    target_id=entry.link_id,
                    payload=update.to_payload(),
                )
            )

        state = entry.state if entry.link_id is None else SyncState.PENDING
        updated = self._cache.put(entry.with_link(document, state=state))
        self._notify()
        self._schedule_flush()
        return updated

    async def set_note(self, key: str, note: str | None) -> CacheEntry:
        return await self.update(key, LinkUpdate(note=SetTo(note) if note else Clear()))

    async def move_to_space(self, key: str, space_id: str | None) -> CacheEntry:
        return await self.update(
            key, LinkUpdate(space_id=SetTo(space_id) if space_id else Clear())
        )

    async def delete(self, key: str) -> None:
        """Hide the link now and delete it remotely; it reappears if the delete fails."""
        owner_id = self._require_owner()
        entry = self._visible_entry(key)
        if entry.link_id is None:
            await self.undo(entry.key)
            return

        for pending in self._cache.outbox_for_link(entry.key):
            moot = pending.operation is OutboxOperation.UPDATE
            if moot and pending.status is not OutboxStatus.SENT:
                self._cache.remove_outbox(pending.local_id)
        self._cache.enqueue(
            OutboxRecord(
                local_id=new_local_id("op"),
                owner_id=owner_id,
                operation=OutboxOperation.DELETE,
                link_key=entry.key,
                target_id=entry.link_id,
            )
        )
        self._cache.put(replace(entry, deleted=True, state=SyncState.PENDING))
        self._notify()
        self._schedule_flush()

    async def retry_failed(self, local_id: str) -> OutboxOutcome | None:
        self._require_owner()
        outcome = await self._outbox.retry_failed(local_id)
        self._notify()
        return outcome

    def dismiss(self, local_id: str) -> bool:
        dismissed = self._outbox.dismiss(local_id)
        if dismissed:
            self._notify()
        return dismissed

    def failed_entries(self) -> list[OutboxRecord]:
        owner_id = self._auth.current_user_id()
        if not owner_id:
            return []
        return self._cache.list_outbox(owner_id, statuses=[OutboxStatus.FAILED])


__all__ = ["CaptureResult", "CaptureStatus", "LinkSyncClient"]
