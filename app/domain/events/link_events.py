"""Domain events for link row changes.

The remote store emits one :class:`LinkChanged` per committed write. Clients
receive them through their change-stream subscription.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from app.domain.models.link import Link


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    occurred_at: datetime
    aggregate_id: str | None = None

    def __post_init__(self) -> None:
        """Validate event data after initialization."""
        if not isinstance(self.occurred_at, datetime):
            raise TypeError("occurred_at must be a datetime")


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class LinkChanged(DomainEvent):
    """A link row was inserted, updated or deleted.

    ``link`` always carries the full row: the new state for insert and
    update, the last state before removal for delete.
    """

    kind: ChangeKind = ChangeKind.UPDATE
    owner_id: str = ""
    link: Link | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.link is None:
            raise ValueError("link is required")
        if not self.owner_id:
            raise ValueError("owner_id is required")
        if self.link.owner_id != self.owner_id:
            raise ValueError("event owner does not match the row owner")

    @property
    def link_id(self) -> str:
        return self.link.id if self.link is not None else self.aggregate_id or ""
