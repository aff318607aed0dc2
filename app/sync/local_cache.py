"""Per-device cache of links plus the outbox of unacknowledged writes.

Both live in one small SQLite file per device. The cache models carry no
database of their own; every operation binds them to this device's database
for its duration. Operations are short and synchronous so they run inline on
the client's event loop without interleaving.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from playhouse.sqlite_ext import SqliteExtDatabase

from app.core.time_utils import utc_now
from app.db.models import CACHE_MODELS, CachedLinkRow, OutboxRow
from app.domain.models.link import Link

logger = logging.getLogger(__name__)

CACHE_PRAGMAS = {
    "journal_mode": "wal",
    "synchronous": "normal",
}


class SyncState(str, Enum):
    """Where a cached link stands relative to the remote store."""

    PENDING = "pending"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CONFLICTED = "conflicted"


class OutboxOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def new_local_id(prefix: str = "local") -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


@dataclass(frozen=True)
class CacheEntry:
    """A cached link document and its sync bookkeeping.

    ``key`` is the remote id once the store has accepted the link and the
    local id before that. A deleted entry with a remote id is a tombstone.
    """

    key: str
    owner_id: str
    canonical_url: str
    state: SyncState
    document: dict[str, Any]
    local_id: str | None = None
    link_id: str | None = None
    space_id: str | None = None
    updated_at: datetime | None = None
    deleted: bool = False

    @property
    def link(self) -> Link:
        return Link.from_dict(self.document)

    @property
    def confirmed(self) -> bool:
        return self.link_id is not None

    @classmethod
    def from_link(
        cls, link: Link, state: SyncState, *, local_id: str | None = None
    ) -> CacheEntry:
        return cls(
            key=link.id,
            owner_id=link.owner_id,
            canonical_url=link.canonical_url,
            state=state,
            document=link.to_dict(),
            local_id=local_id,
            link_id=link.id,
            space_id=link.space_id,
            updated_at=link.updated_at,
        )

    def with_link(self, link: Link, **changes: Any) -> CacheEntry:
        """Copy with ``link`` as the document; key and ids are kept."""
        return replace(
            self,
            document=link.to_dict(),
            canonical_url=link.canonical_url,
            space_id=link.space_id,
            **changes,
        )


@dataclass(frozen=True)
class OutboxRecord:
    local_id: str
    owner_id: str
    operation: OutboxOperation
    link_key: str
    payload: dict[str, Any] = field(default_factory=dict)
    target_id: str | None = None
    status: OutboxStatus = OutboxStatus.PENDING
    attempt_count: int = 0
    last_error: str | None = None
    cancel_requested: bool = False
    created_at: datetime | None = None
    seq: int | None = None


def _entry_from_row(row: CachedLinkRow) -> CacheEntry:
    return CacheEntry(
        key=row.key,
        owner_id=row.owner_id,
        canonical_url=row.canonical_url,
        state=SyncState(row.state),
        document=dict(row.document or {}),
        local_id=row.local_id,
        link_id=row.link_id,
        space_id=row.space_id,
        updated_at=row.updated_at,
        deleted=bool(row.deleted),
    )


def _record_from_row(row: OutboxRow) -> OutboxRecord:
    return OutboxRecord(
        seq=row.seq,
        local_id=row.local_id,
        owner_id=row.owner_id,
        operation=OutboxOperation(row.operation),
        link_key=row.link_key,
        target_id=row.target_id,
        payload=dict(row.payload or {}),
        status=OutboxStatus(row.status),
        attempt_count=row.attempt_count,
        last_error=row.last_error,
        cancel_requested=bool(row.cancel_requested),
        created_at=row.created_at,
    )


_OUTBOX_COLUMNS = frozenset(
    {"target_id", "payload", "status", "attempt_count", "last_error", "cancel_requested"}
)


class LocalCache:
    """Device-local document cache and outbox."""

    def __init__(self, path: str = ":memory:", log: logging.Logger | None = None) -> None:
        self.path = path
        self._logger = log or logger
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._database = SqliteExtDatabase(path, pragmas=CACHE_PRAGMAS)
        with self._bound():
            self._database.create_tables(CACHE_MODELS, safe=True)

    @contextmanager
    def _bound(self) -> Iterator[None]:
        with self._database.bind_ctx(CACHE_MODELS):
            yield

    def close(self) -> None:
        if not self._database.is_closed():
            self._database.close()

    # -------------------------------------------------------------------------
    # Cached links
    # -------------------------------------------------------------------------

    def put(self, entry: CacheEntry) -> CacheEntry:
        """Insert or replace the entry stored under ``entry.key``."""
        with self._bound():
            CachedLinkRow.insert(
                key=entry.key,
                owner_id=entry.owner_id,
                local_id=entry.local_id,
                link_id=entry.link_id,
                canonical_url=entry.canonical_url,
                space_id=entry.space_id,
                state=entry.state.value,
                deleted=entry.deleted,
                updated_at=entry.updated_at,
                document=entry.document,
            ).on_conflict_replace().execute()
        return entry

    def get(self, key: str) -> CacheEntry | None:
        with self._bound():
            row = CachedLinkRow.get_or_none(CachedLinkRow.key == key)
            return _entry_from_row(row) if row else None

    def get_by_local_id(self, local_id: str) -> CacheEntry | None:
        with self._bound():
            row = CachedLinkRow.get_or_none(CachedLinkRow.local_id == local_id)
            return _entry_from_row(row) if row else None

    def find_by_canonical_url(self, owner_id: str, canonical_url: str) -> list[CacheEntry]:
        """Visible entries of the owner saved under ``canonical_url``."""
        with self._bound():
            query = CachedLinkRow.select().where(
                (CachedLinkRow.owner_id == owner_id)
                & (CachedLinkRow.canonical_url == canonical_url)
                & (CachedLinkRow.deleted == False)  # noqa: E712
            )
            return [_entry_from_row(row) for row in query]

    def list_by_space(self, owner_id: str, space_id: str) -> list[CacheEntry]:
        with self._bound():
            query = CachedLinkRow.select().where(
                (CachedLinkRow.owner_id == owner_id)
                & (CachedLinkRow.space_id == space_id)
                & (CachedLinkRow.deleted == False)  # noqa: E712
            )
            return [_entry_from_row(row) for row in query]

    def list_entries(self, owner_id: str, *, include_deleted: bool = False) -> list[CacheEntry]:
        with self._bound():
            query = CachedLinkRow.select().where(CachedLinkRow.owner_id == owner_id)
            if not include_deleted:
                query = query.where(CachedLinkRow.deleted == False)  # noqa: E712
            return [_entry_from_row(row) for row in query]

    def set_state(self, key: str, state: SyncState, **changes: Any) -> CacheEntry | None:
        entry = self.get(key)
        if entry is None:
            return None
        return self.put(replace(entry, state=state, **changes))

    def remove(self, key: str) -> bool:
        with self._bound():
            return CachedLinkRow.delete().where(CachedLinkRow.key == key).execute() > 0

    # -------------------------------------------------------------------------
    # Outbox
    # -------------------------------------------------------------------------

    def enqueue(self, record: OutboxRecord) -> OutboxRecord:
        with self._bound():
            row = OutboxRow.create(
                local_id=record.local_id,
                owner_id=record.owner_id,
                operation=record.operation.value,
                link_key=record.link_key,
                target_id=record.target_id,
                payload=record.payload,
                status=record.status.value,
                attempt_count=record.attempt_count,
                last_error=record.last_error,
                cancel_requested=record.cancel_requested,
                created_at=record.created_at or utc_now(),
            )
            stored = _record_from_row(row)
        self._logger.debug(
            "outbox_enqueued",
            extra={
                "local_id": stored.local_id,
                "operation": stored.operation.value,
                "seq": stored.seq,
            },
        )
        return stored

    def get_outbox(self, local_id: str) -> OutboxRecord | None:
        with self._bound():
            row = OutboxRow.get_or_none(OutboxRow.local_id == local_id)
            return _record_from_row(row) if row else None

    def list_outbox(
        self, owner_id: str, statuses: Iterable[OutboxStatus] | None = None
    ) -> list[OutboxRecord]:
        """Outbox entries of the owner in the order they were queued."""
        with self._bound():
            query = OutboxRow.select().where(OutboxRow.owner_id == owner_id)
            if statuses is not None:
                query = query.where(OutboxRow.status.in_([s.value for s in statuses]))
            return [_record_from_row(row) for row in query.order_by(OutboxRow.seq)]

    def outbox_for_link(self, link_key: str) -> list[OutboxRecord]:
        with self._bound():
            query = (
                OutboxRow.select()
                .where((OutboxRow.link_key == link_key) | (OutboxRow.target_id == link_key))
                .order_by(OutboxRow.seq)
            )
            return [_record_from_row(row) for row in query]

    def update_outbox(self, local_id: str, **changes: Any) -> OutboxRecord | None:
        unknown = set(changes) - _OUTBOX_COLUMNS
        if unknown:
            msg = f"unknown outbox fields: {sorted(unknown)}"
            raise ValueError(msg)
        values = {
            key: value.value if isinstance(value, Enum) else value
            for key, value in changes.items()
        }
        with self._bound():
            OutboxRow.update(**values).where(OutboxRow.local_id == local_id).execute()
        return self.get_outbox(local_id)

    def increment_attempts(self, local_id: str) -> int:
        with self._bound():
            OutboxRow.update(attempt_count=OutboxRow.attempt_count + 1).where(
                OutboxRow.local_id == local_id
            ).execute()
            row = OutboxRow.get_or_none(OutboxRow.local_id == local_id)
            return row.attempt_count if row else 0

    def remove_outbox(self, local_id: str) -> bool:
        with self._bound():
            return OutboxRow.delete().where(OutboxRow.local_id == local_id).execute() > 0

    def reset_in_flight(self, owner_id: str) -> int:
        """Return entries left ``sent`` by an interrupted session to ``pending``."""
        with self._bound():
            count = (
                OutboxRow.update(status=OutboxStatus.PENDING.value)
                .where(
                    (OutboxRow.owner_id == owner_id)
                    & (OutboxRow.status == OutboxStatus.SENT.value)
                )
                .execute()
            )
        if count:
            self._logger.info(
                "outbox_in_flight_reset", extra={"owner_id": owner_id, "count": count}
            )
        return count

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def clear(self, owner_id: str | None = None) -> None:
        """Drop cached links and outbox entries, for one owner or everyone."""
        with self._bound(), self._database.atomic():
            links = CachedLinkRow.delete()
            outbox = OutboxRow.delete()
            if owner_id is not None:
                links = links.where(CachedLinkRow.owner_id == owner_id)
                outbox = outbox.where(OutboxRow.owner_id == owner_id)
            removed_links = links.execute()
            removed_outbox = outbox.execute()
        self._logger.info(
            "local_cache_cleared",
            extra={
                "owner_id": owner_id,
                "links_removed": removed_links,
                "outbox_removed": removed_outbox,
            },
        )


__all__ = [
    "CacheEntry",
    "LocalCache",
    "OutboxOperation",
    "OutboxRecord",
    "OutboxStatus",
    "SyncState",
    "new_local_id",
]
