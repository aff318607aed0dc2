"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import logging

import pytest

from app.config import MetadataConfig, OutboxConfig, ReconciliationConfig
from app.db.session import DatabaseSessionManager
from app.infrastructure.messaging.change_feed import ChangeFeed
from app.infrastructure.persistence.sqlite.repositories.link_repository import SqliteLinkStore
from app.sync.local_cache import LocalCache

logger = logging.getLogger("peewee")
logger.setLevel(logging.WARNING)

OWNER = "user-1"


class FakeAuth:
    """Signed-in user stand-in for the identity provider."""

    def __init__(self, user_id: str | None = OWNER, *, authenticated: bool = True) -> None:
        self.user_id = user_id
        self.authenticated = authenticated

    def current_user_id(self) -> str | None:
        return self.user_id

    def is_authenticated(self) -> bool:
        return self.authenticated and self.user_id is not None

    def sign_out(self) -> None:
        self.user_id = None
        self.authenticated = False


@pytest.fixture
def db(tmp_path):
    manager = DatabaseSessionManager(path=str(tmp_path / "links.db"))
    manager.migrate()
    yield manager
    manager.close()


@pytest.fixture
def feed():
    change_feed = ChangeFeed()
    yield change_feed
    change_feed.close_all()


@pytest.fixture
def store(db, feed):
    return SqliteLinkStore(db, feed)


@pytest.fixture
def cache_factory(tmp_path):
    caches: list[LocalCache] = []

    def _make(name: str = "device") -> LocalCache:
        cache = LocalCache(str(tmp_path / f"{name}.db"))
        caches.append(cache)
        return cache

    yield _make
    for cache in caches:
        cache.close()


@pytest.fixture
def cache(cache_factory):
    return cache_factory()


@pytest.fixture
def auth():
    return FakeAuth()


@pytest.fixture
def outbox_config():
    return OutboxConfig(max_attempts=2, retry_delay_sec=0, attempt_timeout_sec=5)


@pytest.fixture
def metadata_config():
    return MetadataConfig(
        max_fetch_attempts=3,
        retry_cooldown_sec=60,
        retry_batch_size=10,
        retry_debounce_sec=0,
    )


@pytest.fixture
def reconciliation_config():
    return ReconciliationConfig(rearm_offset_sec=120)
