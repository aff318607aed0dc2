"""Tests for the background scheduler."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config import load_config
from app.services.metadata_reconciliation import ReconciliationResult
from app.services.scheduler import RECONCILIATION_JOB_ID, SchedulerService


def _job(**kwargs) -> MagicMock:
    job = MagicMock()
    job.run_once = AsyncMock(**kwargs)
    return job


@pytest.mark.asyncio
async def test_start_registers_reconciliation_job():
    cfg = load_config(reconciliation={"enabled": True, "interval_minutes": 5})
    scheduler = SchedulerService(cfg, _job())

    await scheduler.start()
    try:
        assert scheduler.is_running
        assert scheduler.get_next_run_time() is not None
        assert scheduler.get_next_run_time("unknown") is None
    finally:
        await scheduler.stop()

    assert not scheduler.is_running
    assert scheduler.get_next_run_time(RECONCILIATION_JOB_ID) is None


@pytest.mark.asyncio
async def test_disabled_reconciliation_adds_no_job():
    cfg = load_config(reconciliation={"enabled": False})
    scheduler = SchedulerService(cfg, _job())

    await scheduler.start()
    try:
        assert scheduler.get_next_run_time() is None
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_start_twice_is_harmless():
    scheduler = SchedulerService(load_config(), _job())
    await scheduler.start()
    await scheduler.start()
    assert scheduler.is_running
    await scheduler.stop()


@pytest.mark.asyncio
async def test_scheduled_run_calls_job():
    job = _job(return_value=ReconciliationResult(matched=2, rearmed=2, duration_ms=1.0))
    scheduler = SchedulerService(load_config(), job)

    await scheduler._run_reconciliation()

    job.run_once.assert_awaited_once()


@pytest.mark.asyncio
async def test_scheduled_run_swallows_job_errors():
    job = _job(side_effect=RuntimeError("database is locked"))
    scheduler = SchedulerService(load_config(), job)

    await scheduler._run_reconciliation()

    job.run_once.assert_awaited_once()
