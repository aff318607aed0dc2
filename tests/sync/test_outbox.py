"""Tests for replaying outbox entries against the store."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from app.config import OutboxConfig
from app.domain.events.link_events import ChangeKind
from app.domain.models.link import LinkDraft, LinkUpdate, SetTo
from app.domain.services.error_classifier import ErrorCategory
from app.sync.local_cache import (
    CacheEntry,
    OutboxOperation,
    OutboxRecord,
    OutboxStatus,
    SyncState,
    new_local_id,
)
from app.sync.outbox import OutboxProcessor

OWNER = "user-1"


class UnreachableStore:
    """Wraps a store and fails every insert as if the network were down."""

    def __init__(self, inner) -> None:
        self._inner = inner
        self.insert_calls = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def insert_link(self, draft):
        self.insert_calls += 1
        raise ConnectionError("connection refused")


class GatedStore:
    """Holds inserts until the test releases them."""

    def __init__(self, inner) -> None:
        self._inner = inner
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def insert_link(self, draft):
        self.entered.set()
        await self.release.wait()
        return await self._inner.insert_link(draft)


def _queue_create(cache, url: str = "https://example.com/a", note: str | None = None) -> str:
    local_id = new_local_id()
    draft = LinkDraft(
        owner_id=OWNER,
        raw_url=url,
        canonical_url=url,
        domain="example.com",
        title="example.com",
        note=note,
    )
    cache.put(
        CacheEntry(
            key=local_id,
            owner_id=OWNER,
            canonical_url=url,
            state=SyncState.PENDING,
            document={
                "id": local_id,
                "owner_id": OWNER,
                "raw_url": url,
                "canonical_url": url,
                "domain": "example.com",
                "title": "example.com",
                "note": note,
            },
            local_id=local_id,
        )
    )
    cache.enqueue(
        OutboxRecord(
            local_id=local_id,
            owner_id=OWNER,
            operation=OutboxOperation.CREATE,
            link_key=local_id,
            payload=draft.to_payload(),
        )
    )
    return local_id


@pytest.mark.asyncio
async def test_confirmed_create_is_rekeyed_to_remote_id(store, cache, outbox_config):
    local_id = _queue_create(cache, note="read later")
    enrichment = MagicMock()
    processor = OutboxProcessor(store, cache, outbox_config, enrichment=enrichment)
    outcomes = []
    processor.add_listener(outcomes.append)

    result = await processor.flush(OWNER)

    assert result.confirmed == 1
    link = outcomes[0].link
    assert outcomes[0].state is SyncState.CONFIRMED
    assert cache.get(local_id) is None
    entry = cache.get(link.id)
    assert entry.state is SyncState.CONFIRMED
    assert entry.local_id == local_id
    assert entry.link.note == "read later"
    assert cache.list_outbox(OWNER) == []
    enrichment.enrich_in_background.assert_called_once_with(OWNER, link)


@pytest.mark.asyncio
async def test_unreachable_store_leaves_failed_entry(store, cache, outbox_config):
    local_id = _queue_create(cache)
    unreachable = UnreachableStore(store)
    processor = OutboxProcessor(unreachable, cache, outbox_config)

    result = await processor.flush(OWNER)

    assert result.failed == 1
    outcome = result.outcomes[0]
    assert outcome.error.category is ErrorCategory.NETWORK_UNAVAILABLE
    assert outcome.error.retryable

    entry = cache.get_outbox(local_id)
    assert entry.status is OutboxStatus.FAILED
    assert entry.attempt_count == outbox_config.max_attempts
    assert entry.last_error == outcome.error.message
    assert unreachable.insert_calls == outbox_config.max_attempts
    assert cache.get(local_id).state is SyncState.FAILED


@pytest.mark.asyncio
async def test_failed_entry_can_be_retried(store, cache, outbox_config):
    local_id = _queue_create(cache)
    await OutboxProcessor(UnreachableStore(store), cache, outbox_config).flush(OWNER)

    processor = OutboxProcessor(store, cache, outbox_config)
    outcome = await processor.retry_failed(local_id)

    assert outcome.state is SyncState.CONFIRMED
    assert cache.get_outbox(local_id) is None
    assert len(await store.list_links(OWNER)) == 1


@pytest.mark.asyncio
async def test_dismissing_a_failed_create_drops_the_row(store, cache, outbox_config):
    local_id = _queue_create(cache)
    processor = OutboxProcessor(UnreachableStore(store), cache, outbox_config)
    await processor.flush(OWNER)

    assert processor.dismiss(local_id)
    assert cache.get(local_id) is None
    assert cache.list_outbox(OWNER) == []
    assert not processor.dismiss(local_id)


@pytest.mark.asyncio
async def test_duplicate_create_adopts_remote_record(store, cache, outbox_config):
    existing = await store.insert_link(
        LinkDraft(
            owner_id=OWNER,
            raw_url="https://example.com/a",
            canonical_url="https://example.com/a",
            domain="example.com",
        )
    )
    local_id = _queue_create(cache)
    processor = OutboxProcessor(store, cache, outbox_config)

    result = await processor.flush(OWNER)

    assert result.conflicted == 1
    assert cache.get(local_id) is None
    adopted = cache.get(existing.id)
    assert adopted.state is SyncState.CONFLICTED
    assert [link.id for link in await store.list_links(OWNER)] == [existing.id]


@pytest.mark.asyncio
async def test_update_queued_behind_create_targets_new_link(store, cache, outbox_config):
    local_id = _queue_create(cache)
    cache.enqueue(
        OutboxRecord(
            local_id=new_local_id("op"),
            owner_id=OWNER,
            operation=OutboxOperation.UPDATE,
            link_key=local_id,
            payload=LinkUpdate(note=SetTo("edited")).to_payload(),
        )
    )
    processor = OutboxProcessor(store, cache, outbox_config)

    result = await processor.flush(OWNER)

    assert result.confirmed == 2
    [remote] = await store.list_links(OWNER)
    assert remote.note == "edited"
    assert cache.get(remote.id).state is SyncState.CONFIRMED
    assert cache.get(remote.id).link.note == "edited"


@pytest.mark.asyncio
async def test_update_waits_while_create_is_pending(store, cache, outbox_config):
    local_id = _queue_create(cache)
    update_id = new_local_id("op")
    cache.enqueue(
        OutboxRecord(
            local_id=update_id,
            owner_id=OWNER,
            operation=OutboxOperation.UPDATE,
            link_key=local_id,
            payload=LinkUpdate(note=SetTo("later")).to_payload(),
        )
    )
    processor = OutboxProcessor(store, cache, outbox_config)

    assert await processor.process(update_id) is None
    assert cache.get_outbox(update_id).status is OutboxStatus.PENDING


@pytest.mark.asyncio
async def test_delete_tombstones_the_row(store, cache, outbox_config):
    local_id = _queue_create(cache)
    processor = OutboxProcessor(store, cache, outbox_config)
    await processor.flush(OWNER)
    [remote] = await store.list_links(OWNER)

    cache.enqueue(
        OutboxRecord(
            local_id=new_local_id("op"),
            owner_id=OWNER,
            operation=OutboxOperation.DELETE,
            link_key=remote.id,
            target_id=remote.id,
        )
    )
    result = await processor.flush(OWNER)

    assert result.confirmed == 1
    assert await store.list_links(OWNER) == []
    tombstone = cache.get(remote.id)
    assert tombstone.deleted
    assert cache.get(local_id) is None


@pytest.mark.asyncio
async def test_cancelled_in_flight_create_is_deleted_after_it_lands(store, cache, outbox_config):
    local_id = _queue_create(cache)
    gated = GatedStore(store)
    processor = OutboxProcessor(gated, cache, outbox_config)

    task = asyncio.create_task(processor.process(local_id))
    await gated.entered.wait()
    assert processor.is_in_flight(local_id)
    assert not processor.dismiss(local_id)

    cache.update_outbox(local_id, cancel_requested=True)
    gated.release.set()
    outcome = await task

    assert outcome.operation is OutboxOperation.DELETE
    assert await store.list_links(OWNER) == []
    assert cache.list_entries(OWNER) == []
    assert cache.list_outbox(OWNER) == []


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_flush(store, cache, outbox_config):
    _queue_create(cache)
    processor = OutboxProcessor(store, cache, outbox_config)

    def broken(outcome):
        raise RuntimeError("listener blew up")

    unsubscribe = processor.add_listener(broken)
    result = await processor.flush(OWNER)
    unsubscribe()

    assert result.confirmed == 1


@pytest.mark.asyncio
async def test_insert_landing_after_attempt_timeout_is_confirmed(store, feed, cache, monkeypatch):
    other_device = feed.subscribe(OWNER)
    execute = store._execute
    stalled: list[str] = []

    async def first_insert_stalls(operation, *args, **kwargs):
        result = await execute(operation, *args, **kwargs)
        if kwargs.get("operation_name") == "insert_link" and not stalled:
            stalled.append("insert_link")
            await asyncio.sleep(0.5)
        return result

    monkeypatch.setattr(store, "_execute", first_insert_stalls)
    local_id = _queue_create(cache)
    config = OutboxConfig(max_attempts=2, retry_delay_sec=0, attempt_timeout_sec=0.2)
    processor = OutboxProcessor(store, cache, config)

    result = await processor.flush(OWNER)

    assert result.confirmed == 1
    assert result.conflicted == 0
    [remote] = await store.list_links(OWNER)
    assert cache.get(remote.id).state is SyncState.CONFIRMED
    assert cache.get_outbox(local_id) is None

    event = await asyncio.wait_for(other_device.__anext__(), timeout=2)
    assert event.kind is ChangeKind.INSERT
    assert event.link_id == remote.id
    other_device.close()


@pytest.mark.asyncio
async def test_entries_replay_in_queue_order(store, cache, outbox_config):
    _queue_create(cache)
    processor = OutboxProcessor(store, cache, outbox_config)
    await processor.flush(OWNER)
    [original] = await store.list_links(OWNER)

    cache.put(replace(cache.get(original.id), deleted=True))
    cache.enqueue(
        OutboxRecord(
            local_id=new_local_id("op"),
            owner_id=OWNER,
            operation=OutboxOperation.DELETE,
            link_key=original.id,
            target_id=original.id,
        )
    )
    recaptured = _queue_create(cache)
    outcomes = []
    processor.add_listener(outcomes.append)

    result = await processor.flush(OWNER)

    assert [(o.operation, o.state) for o in outcomes] == [
        (OutboxOperation.DELETE, SyncState.CONFIRMED),
        (OutboxOperation.CREATE, SyncState.CONFIRMED),
    ]
    assert result.conflicted == 0
    [remote] = await store.list_links(OWNER)
    assert remote.id != original.id
    assert cache.get(recaptured) is None
    assert cache.get(remote.id).state is SyncState.CONFIRMED
    assert [e.key for e in cache.list_entries(OWNER)] == [remote.id]
