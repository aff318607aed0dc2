"""In-memory change stream for link rows.

Each subscriber gets its own queue scoped to one owner. Publishing never
blocks and never fails because of a subscriber; a closed subscription simply
stops receiving events.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Protocol, cast

from app.domain.events.link_events import LinkChanged

logger = logging.getLogger(__name__)


class ChangeSubscription:
    """Async iterator over the change events of one owner.

    Iteration ends after :meth:`close`.
    """

    _CLOSED = object()

    def __init__(self, feed: ChangeFeed, owner_id: str) -> None:
        self.owner_id = owner_id
        self._feed = feed
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _deliver(self, event: LinkChanged) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._remove(self)
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> ChangeSubscription:
        return self

    async def __anext__(self) -> LinkChanged:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return cast(LinkChanged, item)


class ChangeStream(Protocol):
    """Anything a client can subscribe to for its owner's row changes."""

    def subscribe(self, owner_id: str) -> ChangeSubscription: ...


class ChangeFeed:
    """Fan-out of :class:`LinkChanged` events to per-owner subscriptions."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._subscriptions: dict[str, list[ChangeSubscription]] = defaultdict(list)
        self._logger = log or logger

    def subscribe(self, owner_id: str) -> ChangeSubscription:
        subscription = ChangeSubscription(self, owner_id)
        self._subscriptions[owner_id].append(subscription)
        self._logger.debug(
            "change_feed_subscribed",
            extra={
                "owner_id": owner_id,
                "total_subscribers": len(self._subscriptions[owner_id]),
            },
        )
        return subscription

    def _remove(self, subscription: ChangeSubscription) -> None:
        subscribers = self._subscriptions.get(subscription.owner_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
            self._logger.debug(
                "change_feed_unsubscribed", extra={"owner_id": subscription.owner_id}
            )
        if not subscribers:
            self._subscriptions.pop(subscription.owner_id, None)

    def publish(self, event: LinkChanged) -> int:
        """Deliver ``event`` to every open subscription of its owner.

        Returns:
            Number of subscriptions the event was queued for.
        """
        subscribers = list(self._subscriptions.get(event.owner_id, ()))
        for subscription in subscribers:
            subscription._deliver(event)
        self._logger.debug(
            "change_published",
            extra={
                "owner_id": event.owner_id,
                "link_id": event.link_id,
                "operation": event.kind.value,
                "subscriber_count": len(subscribers),
            },
        )
        return len(subscribers)

    def subscriber_count(self, owner_id: str) -> int:
        return len(self._subscriptions.get(owner_id, ()))

    def close_all(self) -> None:
        for subscribers in list(self._subscriptions.values()):
            for subscription in list(subscribers):
                subscription.close()
