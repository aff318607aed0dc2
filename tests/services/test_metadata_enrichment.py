"""Tests for metadata enrichment and the incomplete-metadata retry pass."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.domain.models.link import (
    ExtractionFailure,
    Link,
    LinkDraft,
    LinkUpdate,
    Metadata,
    SetTo,
    Unchanged,
)
from app.services.metadata_enrichment import MetadataEnrichmentService, build_enrichment_update

OWNER = "user-1"


class FakeSource:
    def __init__(self, result: Metadata | ExtractionFailure) -> None:
        self.result = result
        self.urls: list[str] = []

    async def extract(self, url: str) -> Metadata | ExtractionFailure:
        self.urls.append(url)
        return self.result


def _link(**overrides) -> Link:
    values = {
        "id": "l1",
        "owner_id": OWNER,
        "raw_url": "example.com/post",
        "canonical_url": "https://example.com/post",
        "domain": "example.com",
        "title": "example.com",
    }
    values.update(overrides)
    return Link(**values)


async def _saved(store, url: str = "https://example.com/post") -> Link:
    return await store.insert_link(
        LinkDraft(owner_id=OWNER, raw_url=url, canonical_url=url, domain="example.com")
    )


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class TestBuildEnrichmentUpdate:
    def test_failure_keeps_title_and_counts_attempt(self):
        failure = ExtractionFailure(error="HTTP 404", domain="example.com")
        update = build_enrichment_update(_link(title="Mine"), failure, NOW)
        assert update.changes() == {
            "title": "Mine",
            "metadata_complete": False,
            "metadata_fetch_attempts": 1,
            "last_metadata_attempt_at": NOW,
        }

    def test_title_only_result_is_incomplete(self):
        update = build_enrichment_update(
            _link(), Metadata(title="Foo", domain="example.com"), NOW
        )
        assert update.changes()["title"] == "Foo"
        assert update.changes()["metadata_complete"] is False
        assert isinstance(update.description, Unchanged)

    def test_poorer_result_never_erases_found_fields(self):
        link = _link(description="Earlier", metadata_fetch_attempts=1)
        update = build_enrichment_update(
            link, Metadata(title="", domain="example.com"), NOW
        )
        assert isinstance(update.description, Unchanged)
        assert update.changes()["metadata_complete"] is True
        assert update.changes()["metadata_fetch_attempts"] == 2


@pytest.mark.asyncio
async def test_successful_enrichment_writes_metadata(store, metadata_config, outbox_config):
    link = await _saved(store)
    source = FakeSource(
        Metadata(
            title="Foo",
            description="About foo",
            thumbnail_url="https://example.com/img.png",
            domain="example.com",
        )
    )
    service = MetadataEnrichmentService(store, source, metadata_config, outbox_config)

    updated = await service.enrich(OWNER, link)

    assert updated is not None
    assert updated.title == "Foo"
    assert updated.metadata_complete is True
    assert updated.metadata_fetch_attempts == 1
    assert updated.last_metadata_attempt_at is not None
    assert source.urls == ["https://example.com/post"]


@pytest.mark.asyncio
async def test_failed_extraction_falls_back_to_domain_title(store, metadata_config, outbox_config):
    link = await _saved(store)
    source = FakeSource(
        ExtractionFailure(error="Failed to fetch metadata: HTTP 404", domain="example.com")
    )
    service = MetadataEnrichmentService(store, source, metadata_config, outbox_config)

    updated = await service.enrich(OWNER, link)

    assert updated.title == "example.com"
    assert updated.metadata_complete is False
    assert updated.metadata_fetch_attempts == 1


@pytest.mark.asyncio
async def test_complete_or_exhausted_links_are_skipped(metadata_config):
    store = AsyncMock()
    source = FakeSource(Metadata(title="x", domain="example.com"))
    service = MetadataEnrichmentService(store, source, metadata_config)

    assert await service.enrich(OWNER, _link(metadata_complete=True)) is None
    assert await service.enrich(OWNER, _link(metadata_fetch_attempts=3)) is None
    assert source.urls == []
    store.update_link.assert_not_awaited()


@pytest.mark.asyncio
async def test_deleted_link_is_ignored(store, metadata_config, outbox_config):
    link = await _saved(store)
    await store.delete_link(OWNER, link.id)
    service = MetadataEnrichmentService(
        store, FakeSource(Metadata(title="x", domain="example.com")), metadata_config, outbox_config
    )
    assert await service.enrich(OWNER, link) is None


@pytest.mark.asyncio
async def test_background_failures_are_logged_not_raised(metadata_config, outbox_config):
    store = AsyncMock()
    store.update_link.side_effect = ConnectionError("connection refused")
    service = MetadataEnrichmentService(
        store, FakeSource(Metadata(title="x", domain="example.com")), metadata_config, outbox_config
    )

    task = service.enrich_in_background(OWNER, _link())
    await service.wait_idle()

    assert task.result() is None
    assert store.update_link.await_count == outbox_config.max_attempts


@pytest.mark.asyncio
async def test_retry_incomplete_respects_cooldown_and_attempts(
    store, metadata_config, outbox_config
):
    fresh = await _saved(store, "https://example.com/fresh")
    recent = await _saved(store, "https://example.com/recent")
    exhausted = await _saved(store, "https://example.com/exhausted")
    now = datetime.now(UTC)
    await store.update_link(OWNER, recent.id, LinkUpdate(last_metadata_attempt_at=SetTo(now)))
    await store.update_link(
        OWNER, exhausted.id, LinkUpdate(metadata_fetch_attempts=SetTo(3))
    )

    source = FakeSource(Metadata(title="T", description="D", domain="example.com"))
    service = MetadataEnrichmentService(store, source, metadata_config, outbox_config)

    enriched = await service.retry_incomplete(OWNER)

    assert [link.id for link in enriched] == [fresh.id]
    assert source.urls == ["https://example.com/fresh"]


@pytest.mark.asyncio
async def test_links_become_eligible_after_cooldown(store, metadata_config, outbox_config):
    link = await _saved(store)
    attempted = datetime.now(UTC) - timedelta(seconds=metadata_config.retry_cooldown_sec + 5)
    await store.update_link(OWNER, link.id, LinkUpdate(last_metadata_attempt_at=SetTo(attempted)))

    service = MetadataEnrichmentService(
        store,
        FakeSource(ExtractionFailure(error="HTTP 500", domain="example.com")),
        metadata_config,
        outbox_config,
    )
    enriched = await service.retry_incomplete(OWNER)

    assert len(enriched) == 1
    assert enriched[0].metadata_fetch_attempts == 1


@pytest.mark.asyncio
async def test_retry_is_debounced(store, outbox_config):
    from app.config import MetadataConfig

    await _saved(store)
    config = MetadataConfig(retry_debounce_sec=60, retry_cooldown_sec=0)
    source = FakeSource(ExtractionFailure(error="HTTP 500", domain="example.com"))
    service = MetadataEnrichmentService(store, source, config, outbox_config)

    first = await service.retry_incomplete(OWNER)
    second = await service.retry_incomplete(OWNER)

    assert len(first) == 1
    assert second == []
    assert len(source.urls) == 1
