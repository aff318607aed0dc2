"""SQLite implementation of the remote link store.

Reads and writes run in worker threads through the session manager. After a
write commits, the resulting row is published on the change feed from the
event loop. Commit and publish run as one shielded task: a caller that stops
waiting (a per-attempt timeout, say) cannot stop a committed write from being
published.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import peewee
from peewee import IntegrityError, fn

from app.core.time_utils import ensure_utc
from app.db.models import LinkRecord, model_to_dict
from app.domain.events.link_events import ChangeKind, LinkChanged
from app.domain.exceptions.domain_exceptions import (
    DuplicateLinkError,
    LinkNotFoundError,
    PermissionDeniedError,
)
from app.domain.models.link import NOTE_MAX_LENGTH, Link, LinkDraft, LinkUpdate
from app.domain.models.link import is_metadata_complete as _has_rich_metadata
from app.infrastructure.persistence.sqlite.base import SqliteBaseRepository

if TYPE_CHECKING:
    from app.db.session import DatabaseSessionManager
    from app.infrastructure.messaging.change_feed import ChangeFeed

logger = logging.getLogger(__name__)


def _to_link(record: LinkRecord) -> Link:
    data = model_to_dict(record) or {}
    return Link.from_dict(data)


def _fallback_title_matches_domain() -> Any:
    title = fn.LOWER(fn.REPLACE(LinkRecord.title, "www.", ""))
    domain = fn.LOWER(fn.REPLACE(LinkRecord.domain, "www.", ""))
    return title == domain


def _is_blank(column: peewee.Field) -> Any:
    return column.is_null() | (column == "")


def _retrieve_exception(task: asyncio.Task[Any]) -> None:
    # The caller may have stopped waiting; read the error so it is not reported as lost.
    if not task.cancelled():
        task.exception()


class SqliteLinkStore(SqliteBaseRepository):
    """Link store backed by the ``links`` table."""

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        change_feed: ChangeFeed | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        super().__init__(session_manager)
        self._feed = change_feed
        self._logger = log or logger

    def _publish(self, kind: ChangeKind, link: Link) -> None:
        if self._feed is None:
            return
        self._feed.publish(
            LinkChanged(
                occurred_at=link.updated_at or dt.datetime.now(dt.UTC),
                aggregate_id=link.id,
                kind=kind,
                owner_id=link.owner_id,
                link=link,
            )
        )

    async def _commit(
        self,
        operation: Callable[[], Any],
        operation_name: str,
        publish: Callable[[Any], None],
    ) -> Any:
        """Run a write and publish its result, even if the awaiting caller is cancelled."""

        async def _write_and_publish() -> Any:
            result = await self._execute(operation, operation_name=operation_name)
            publish(result)
            return result

        task = asyncio.ensure_future(_write_and_publish())
        task.add_done_callback(_retrieve_exception)
        return await asyncio.shield(task)

    @staticmethod
    def _owned_record(owner_id: str, link_id: str) -> LinkRecord:
        record = LinkRecord.get_or_none(LinkRecord.id == link_id)
        if record is None:
            msg = f"Link {link_id} not found"
            raise LinkNotFoundError(msg, details={"link_id": link_id})
        if record.owner_id != owner_id:
            msg = "permission denied for link"
            raise PermissionDeniedError(msg, details={"link_id": link_id})
        return record

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert_link(self, draft: LinkDraft) -> Link:
        if draft.note is not None and len(draft.note) > NOTE_MAX_LENGTH:
            msg = f"note must be at most {NOTE_MAX_LENGTH} characters"
            raise ValueError(msg)

        def _insert() -> Link:
            record = LinkRecord(
                id=uuid.uuid4().hex,
                owner_id=draft.owner_id,
                raw_url=draft.raw_url,
                canonical_url=draft.canonical_url,
                domain=draft.domain,
                title=draft.title or draft.domain,
                note=draft.note,
                space_id=draft.space_id,
            )
            record.save(force_insert=True)
            return _to_link(record)

        def _inserted(link: Link) -> None:
            self._logger.info(
                "link_inserted",
                extra={"link_id": link.id, "owner_id": link.owner_id, "domain": link.domain},
            )
            self._publish(ChangeKind.INSERT, link)

        try:
            return await self._commit(_insert, "insert_link", _inserted)
        except IntegrityError as exc:
            raise DuplicateLinkError(
                draft.canonical_url, draft.owner_id, details={"error": str(exc)}
            ) from exc

    async def update_link(self, owner_id: str, link_id: str, update: LinkUpdate) -> Link:
        changes = update.changes()
        note = changes.get("note")
        if note is not None and len(note) > NOTE_MAX_LENGTH:
            msg = f"note must be at most {NOTE_MAX_LENGTH} characters"
            raise ValueError(msg)

        def _update() -> Link:
            with self._session.database.atomic():
                record = self._owned_record(owner_id, link_id)
                previous_attempt = record.last_metadata_attempt_at
                for name, value in changes.items():
                    setattr(record, name, value)

                new_attempt = record.last_metadata_attempt_at
                if previous_attempt is not None and (
                    new_attempt is None or ensure_utc(new_attempt) < ensure_utc(previous_attempt)
                ):
                    record.last_metadata_attempt_at = previous_attempt

                record.metadata_complete = bool(record.metadata_complete) and _has_rich_metadata(
                    record.description, record.thumbnail_url
                )
                record.save()
                return _to_link(record)

        def _updated(link: Link) -> None:
            self._logger.debug(
                "link_updated", extra={"link_id": link_id, "fields": sorted(changes)}
            )
            self._publish(ChangeKind.UPDATE, link)

        return await self._commit(_update, "update_link", _updated)

    async def delete_link(self, owner_id: str, link_id: str) -> Link:
        def _delete() -> Link:
            with self._session.database.atomic():
                record = self._owned_record(owner_id, link_id)
                link = _to_link(record)
                record.delete_instance()
                return link

        def _deleted(link: Link) -> None:
            self._logger.info("link_deleted", extra={"link_id": link_id, "owner_id": owner_id})
            self._publish(ChangeKind.DELETE, link)

        return await self._commit(_delete, "delete_link", _deleted)

    async def rearm_metadata(self, link_ids: list[str], attempt_at: dt.datetime) -> list[Link]:
        if not link_ids:
            return []

        def _rearm() -> list[Link]:
            rearmed: list[Link] = []
            with self._session.database.atomic():
                for record in LinkRecord.select().where(LinkRecord.id.in_(link_ids)):
                    previous = record.last_metadata_attempt_at
                    if previous is None or ensure_utc(previous) < attempt_at:
                        record.last_metadata_attempt_at = attempt_at
                    record.metadata_complete = False
                    record.save()
                    rearmed.append(_to_link(record))
            return rearmed

        def _rearmed(links: list[Link]) -> None:
            for link in links:
                self._publish(ChangeKind.UPDATE, link)

        return await self._commit(_rearm, "rearm_metadata", _rearmed)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_link(self, owner_id: str, link_id: str) -> Link | None:
        def _get() -> Link | None:
            record = LinkRecord.get_or_none(
                (LinkRecord.id == link_id) & (LinkRecord.owner_id == owner_id)
            )
            return _to_link(record) if record else None

        return await self._execute(_get, operation_name="get_link", read_only=True)

    async def get_by_canonical_url(self, owner_id: str, canonical_url: str) -> Link | None:
        def _get() -> Link | None:
            record = LinkRecord.get_or_none(
                (LinkRecord.owner_id == owner_id) & (LinkRecord.canonical_url == canonical_url)
            )
            return _to_link(record) if record else None

        return await self._execute(
            _get, operation_name="get_link_by_canonical_url", read_only=True
        )

    async def list_links(self, owner_id: str, *, space_id: str | None = None) -> list[Link]:
        def _list() -> list[Link]:
            query = LinkRecord.select().where(LinkRecord.owner_id == owner_id)
            if space_id is not None:
                query = query.where(LinkRecord.space_id == space_id)
            query = query.order_by(LinkRecord.created_at.desc())
            return [_to_link(record) for record in query]

        return await self._execute(_list, operation_name="list_links", read_only=True)

    async def list_incomplete_metadata(
        self,
        owner_id: str,
        *,
        max_attempts: int,
        attempted_before: dt.datetime | None = None,
        limit: int | None = None,
    ) -> list[Link]:
        def _list() -> list[Link]:
            query = LinkRecord.select().where(
                (LinkRecord.owner_id == owner_id)
                & (LinkRecord.metadata_complete == False)  # noqa: E712
                & (LinkRecord.metadata_fetch_attempts < max_attempts)
            )
            if attempted_before is not None:
                query = query.where(
                    LinkRecord.last_metadata_attempt_at.is_null()
                    | (LinkRecord.last_metadata_attempt_at <= attempted_before)
                )
            query = query.order_by(LinkRecord.created_at.desc())
            if limit is not None:
                query = query.limit(limit)
            return [_to_link(record) for record in query]

        return await self._execute(
            _list, operation_name="list_incomplete_metadata", read_only=True
        )

    async def list_rearm_candidates(self) -> list[Link]:
        def _list() -> list[Link]:
            query = LinkRecord.select().where(
                (LinkRecord.metadata_complete == True)  # noqa: E712
                & _is_blank(LinkRecord.description)
                & _is_blank(LinkRecord.thumbnail_url)
                & _fallback_title_matches_domain()
            )
            return [_to_link(record) for record in query]

        return await self._execute(
            _list, operation_name="list_rearm_candidates", read_only=True
        )
