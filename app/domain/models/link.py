"""Link domain model.

A link is one URL saved by one owner, plus the page metadata the enrichment
pipeline managed to attach to it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Generic, TypeVar

from app.core.time_utils import ensure_utc

T = TypeVar("T")

NOTE_MAX_LENGTH = 200

_DATETIME_FIELDS = ("last_metadata_attempt_at", "created_at", "updated_at")


def is_metadata_complete(description: str | None, thumbnail_url: str | None) -> bool:
    """Metadata only counts as complete once a description or thumbnail was found.

    A title alone never qualifies: on failure the title is the domain itself.
    """
    return bool(description) or bool(thumbnail_url)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return ensure_utc(value) if value is not None else None
    return ensure_utc(datetime.fromisoformat(str(value)))


@dataclass(frozen=True)
class Metadata:
    """Result of a successful extraction."""

    title: str
    domain: str
    description: str | None = None
    thumbnail_url: str | None = None

    @property
    def complete(self) -> bool:
        return is_metadata_complete(self.description, self.thumbnail_url)


@dataclass(frozen=True)
class ExtractionFailure:
    """Marker returned instead of :class:`Metadata` when extraction did not work."""

    error: str
    domain: str
    fallback: bool = True


@dataclass
class Link:
    """Domain model for a saved link as the remote store holds it.

    The store refuses to write ``metadata_complete`` without a description or
    thumbnail, but rows written before that rule may still carry it; the
    metadata reconciliation job exists to repair them.
    """

    id: str
    owner_id: str
    raw_url: str
    canonical_url: str
    domain: str
    title: str | None = None
    description: str | None = None
    thumbnail_url: str | None = None
    note: str | None = None
    space_id: str | None = None
    metadata_complete: bool = False
    metadata_fetch_attempts: int = 0
    last_metadata_attempt_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def display_title(self) -> str:
        return self.title or self.domain

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in _DATETIME_FIELDS:
            if data[name] is not None:
                data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Link:
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        for name in _DATETIME_FIELDS:
            values[name] = _parse_datetime(values.get(name))
        return cls(**values)


@dataclass(frozen=True)
class LinkDraft:
    """What a client knows about a link before the store has accepted it."""

    owner_id: str
    raw_url: str
    canonical_url: str
    domain: str
    title: str | None = None
    note: str | None = None
    space_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LinkDraft:
        return cls(**{f.name: payload.get(f.name) for f in fields(cls)})


@dataclass(frozen=True)
class Unchanged:
    """Leave the field as it is."""


@dataclass(frozen=True)
class SetTo(Generic[T]):
    """Replace the field with ``value``."""

    value: T


@dataclass(frozen=True)
class Clear:
    """Set the field to null."""


FieldChange = Unchanged | SetTo[Any] | Clear

_NON_NULLABLE = frozenset({"metadata_complete", "metadata_fetch_attempts"})


@dataclass(frozen=True)
class LinkUpdate:
    """Partial update where every field says explicitly what should happen to it."""

    title: FieldChange = field(default_factory=Unchanged)
    description: FieldChange = field(default_factory=Unchanged)
    thumbnail_url: FieldChange = field(default_factory=Unchanged)
    note: FieldChange = field(default_factory=Unchanged)
    space_id: FieldChange = field(default_factory=Unchanged)
    metadata_complete: FieldChange = field(default_factory=Unchanged)
    metadata_fetch_attempts: FieldChange = field(default_factory=Unchanged)
    last_metadata_attempt_at: FieldChange = field(default_factory=Unchanged)

    def __post_init__(self) -> None:
        for f in fields(self):
            change = getattr(self, f.name)
            if not isinstance(change, (Unchanged, SetTo, Clear)):
                msg = f"{f.name} must be Unchanged(), SetTo(value) or Clear(), got {change!r}"
                raise TypeError(msg)
            if f.name in _NON_NULLABLE and isinstance(change, Clear):
                msg = f"{f.name} cannot be cleared"
                raise ValueError(msg)

    @property
    def is_empty(self) -> bool:
        return not self.changes()

    def changes(self) -> dict[str, Any]:
        """Return ``{field: new_value}`` for every field that is set or cleared."""
        result: dict[str, Any] = {}
        for f in fields(self):
            change = getattr(self, f.name)
            if isinstance(change, SetTo):
                result[f.name] = change.value
            elif isinstance(change, Clear):
                result[f.name] = None
        return result

    def apply(self, link: Link) -> Link:
        return replace(link, **self.changes())

    def merge(self, later: LinkUpdate) -> LinkUpdate:
        """Combine two updates; fields touched by ``later`` win."""
        merged = {
            f.name: getattr(later, f.name)
            if not isinstance(getattr(later, f.name), Unchanged)
            else getattr(self, f.name)
            for f in fields(self)
        }
        return LinkUpdate(**merged)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for f in fields(self):
            change = getattr(self, f.name)
            if isinstance(change, SetTo):
                value = change.value
                if isinstance(value, datetime):
                    value = value.isoformat()
                payload[f.name] = {"set": value}
            elif isinstance(change, Clear):
                payload[f.name] = {"clear": True}
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LinkUpdate:
        kwargs: dict[str, FieldChange] = {}
        for name, entry in payload.items():
            if entry.get("clear"):
                kwargs[name] = Clear()
            elif "set" in entry:
                value = entry["set"]
                if name in _DATETIME_FIELDS and value is not None:
                    value = _parse_datetime(value)
                kwargs[name] = SetTo(value)
        return cls(**kwargs)


__all__ = [
    "NOTE_MAX_LENGTH",
    "Clear",
    "ExtractionFailure",
    "FieldChange",
    "Link",
    "LinkDraft",
    "LinkUpdate",
    "Metadata",
    "SetTo",
    "Unchanged",
    "is_metadata_complete",
]
