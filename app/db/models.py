"""Peewee ORM models.

Two databases are modelled here:

- the shared link store (``links``), bound through ``database_proxy``;
- the per-device cache (``cached_links`` and ``outbox_entries``), whose
  models carry no database of their own and are bound per device with
  ``Database.bind_ctx``.
"""

from __future__ import annotations

import datetime as _dt
from typing import Any

import peewee
from playhouse.sqlite_ext import JSONField

from app.core.time_utils import UTC, ensure_utc

# A proxy that will be initialised with the concrete database instance at runtime.
database_proxy: peewee.Database = peewee.DatabaseProxy()

UNIQUE_OWNER_URL_INDEX = "unique_user_normalized_url"


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(UTC)


class UTCDateTimeField(peewee.DateTimeField):
    """Stores naive UTC in SQLite and hands back aware UTC datetimes."""

    def db_value(self, value: Any) -> Any:
        if isinstance(value, _dt.datetime):
            value = ensure_utc(value).replace(tzinfo=None)
        return super().db_value(value)

    def python_value(self, value: Any) -> Any:
        value = super().python_value(value)
        if isinstance(value, _dt.datetime):
            return ensure_utc(value)
        return value


class BaseModel(peewee.Model):
    """Base model for the shared store; keeps ``updated_at`` strictly increasing."""

    def save(self, *args: Any, **kwargs: Any) -> int:
        now = _utcnow()
        previous = getattr(self, "updated_at", None)
        if previous is not None:
            previous = ensure_utc(previous)
            if now <= previous:
                now = previous + _dt.timedelta(microseconds=1)
        self.updated_at = now
        return super().save(*args, **kwargs)

    class Meta:
        database = database_proxy
        legacy_table_names = False


class LinkRecord(BaseModel):
    id = peewee.TextField(primary_key=True)
    owner_id = peewee.TextField()
    raw_url = peewee.TextField()
    canonical_url = peewee.TextField()
    domain = peewee.TextField()
    title = peewee.TextField(null=True)
    description = peewee.TextField(null=True)
    thumbnail_url = peewee.TextField(null=True)
    note = peewee.TextField(null=True)
    space_id = peewee.TextField(null=True)
    metadata_complete = peewee.BooleanField(default=False)
    metadata_fetch_attempts = peewee.IntegerField(default=0)
    last_metadata_attempt_at = UTCDateTimeField(null=True)
    created_at = UTCDateTimeField(default=_utcnow)
    updated_at = UTCDateTimeField(default=_utcnow)

    class Meta:
        table_name = "links"
        indexes = (
            (("owner_id", "created_at"), False),
            (("owner_id", "metadata_complete"), False),
            (("space_id",), False),
        )


LinkRecord.add_index(
    LinkRecord.index(
        LinkRecord.owner_id,
        LinkRecord.canonical_url,
        unique=True,
        name=UNIQUE_OWNER_URL_INDEX,
    )
)

STORE_MODELS: tuple[type[BaseModel], ...] = (LinkRecord,)


class CachedLinkRow(peewee.Model):
    """One document per link known to this device, keyed by remote id or local id."""

    key = peewee.TextField(primary_key=True)
    owner_id = peewee.TextField()
    local_id = peewee.TextField(null=True)
    link_id = peewee.TextField(null=True)
    canonical_url = peewee.TextField()
    space_id = peewee.TextField(null=True)
    state = peewee.TextField()
    deleted = peewee.BooleanField(default=False)
    updated_at = UTCDateTimeField(null=True)
    document = JSONField()

    class Meta:
        table_name = "cached_links"
        legacy_table_names = False
        indexes = (
            (("owner_id", "canonical_url"), False),
            (("owner_id", "space_id"), False),
            (("local_id",), False),
        )


class OutboxRow(peewee.Model):
    """A write the remote store has not acknowledged yet."""

    seq = peewee.AutoField()
    local_id = peewee.TextField(unique=True)
    owner_id = peewee.TextField()
    operation = peewee.TextField()
    link_key = peewee.TextField()
    target_id = peewee.TextField(null=True)
    payload = JSONField()
    status = peewee.TextField(default="pending")
    attempt_count = peewee.IntegerField(default=0)
    last_error = peewee.TextField(null=True)
    cancel_requested = peewee.BooleanField(default=False)
    created_at = UTCDateTimeField(default=_utcnow)

    class Meta:
        table_name = "outbox_entries"
        legacy_table_names = False
        indexes = (
            (("owner_id", "status"), False),
            (("link_key",), False),
        )


CACHE_MODELS: tuple[type[peewee.Model], ...] = (CachedLinkRow, OutboxRow)


def model_to_dict(model: peewee.Model | None) -> dict[str, Any] | None:
    """Convert a Peewee model instance to a plain dictionary."""
    if model is None:
        return None
    data: dict[str, Any] = {}
    for field_name in model._meta.sorted_field_names:
        value = getattr(model, field_name)
        if isinstance(value, peewee.Model):
            value = value.get_id()
        data[field_name] = value
    return data
