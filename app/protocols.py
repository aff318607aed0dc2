"""Protocol definitions for the collaborators the pipeline depends on.

The remote store, the identity provider and the metadata source are all
external to the pipeline; these protocols are the contracts it relies on.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from app.domain.models.link import ExtractionFailure, Link, LinkDraft, LinkUpdate, Metadata


class RemoteLinkStore(Protocol):
    """Owner-scoped durable storage for links.

    Every committed write is also published on the store's change stream.
    """

    async def insert_link(self, draft: LinkDraft) -> Link:
        """Persist a new link and return it with its assigned id.

        Raises:
            DuplicateLinkError: The owner already has this canonical URL.
        """
        ...

    async def update_link(self, owner_id: str, link_id: str, update: LinkUpdate) -> Link:
        """Apply a partial update.

        Raises:
            LinkNotFoundError: No such link.
            PermissionDeniedError: The link belongs to someone else.
        """
        ...

    async def delete_link(self, owner_id: str, link_id: str) -> Link:
        """Remove a link and return its last state."""
        ...

    async def get_link(self, owner_id: str, link_id: str) -> Link | None: ...

    async def get_by_canonical_url(self, owner_id: str, canonical_url: str) -> Link | None: ...

    async def list_links(self, owner_id: str, *, space_id: str | None = None) -> list[Link]: ...

    async def list_incomplete_metadata(
        self,
        owner_id: str,
        *,
        max_attempts: int,
        attempted_before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Link]:
        """Links still waiting for metadata, oldest attempt cooldown respected."""
        ...

    async def list_rearm_candidates(self) -> list[Link]:
        """Links flagged complete although they only carry fallback metadata."""
        ...

    async def rearm_metadata(self, link_ids: list[str], attempt_at: datetime) -> list[Link]:
        """Clear ``metadata_complete`` and move the attempt timestamp forward to ``attempt_at``."""
        ...


class AuthSession(Protocol):
    """Opaque view of the signed-in user."""

    def current_user_id(self) -> str | None: ...

    def is_authenticated(self) -> bool: ...


class MetadataSource(Protocol):
    """Anything that can turn a URL into page metadata without raising."""

    async def extract(self, url: str) -> Metadata | ExtractionFailure: ...
