"""Tests for the metadata reconciliation CLI."""

from __future__ import annotations

import asyncio

import pytest

from app.cli import reconcile_metadata
from app.config import load_config
from app.db.models import LinkRecord
from app.db.session import DatabaseSessionManager


def test_parse_args_modes_are_exclusive():
    assert reconcile_metadata.parse_args(["--once"]).once
    assert reconcile_metadata.parse_args(["--schedule"]).schedule
    with pytest.raises(SystemExit):
        reconcile_metadata.parse_args(["--once", "--schedule"])


def test_db_path_override(tmp_path):
    args = reconcile_metadata.parse_args(["--db-path", str(tmp_path / "x.db")])
    cfg = reconcile_metadata._prepare_config(args)
    assert cfg.runtime.remote_db_path == str(tmp_path / "x.db")


def test_run_once_rearms_legacy_rows(tmp_path):
    path = str(tmp_path / "links.db")
    db = DatabaseSessionManager(path=path)
    db.migrate()
    with db.connection_context():
        LinkRecord.create(
            id="legacy",
            owner_id="user-1",
            raw_url="https://www.example.com",
            canonical_url="https://example.com",
            domain="www.example.com",
            title="example.com",
            metadata_complete=True,
        )
    db.close()

    cfg = load_config(runtime={"remote_db_path": path})
    assert asyncio.run(reconcile_metadata.run_once(cfg)) == 0

    db = DatabaseSessionManager(path=path)
    try:
        with db.connection_context():
            row = LinkRecord.get_by_id("legacy")
            assert row.metadata_complete is False
            assert row.last_metadata_attempt_at is not None
    finally:
        db.close()


def test_scheduled_mode_stops_on_event(tmp_path):
    cfg = load_config(runtime={"remote_db_path": str(tmp_path / "links.db")})

    async def scenario() -> int:
        stop = asyncio.Event()
        stop.set()
        return await reconcile_metadata.run_scheduled(cfg, stop)

    assert asyncio.run(scenario()) == 0


def test_scheduled_mode_refuses_when_disabled(tmp_path):
    cfg = load_config(
        runtime={"remote_db_path": str(tmp_path / "links.db")},
        reconciliation={"enabled": False},
    )
    assert asyncio.run(reconcile_metadata.run_scheduled(cfg)) == 1
