"""Metadata reconciliation CLI tool.

Finds links flagged as fully enriched although they only carry the domain as
title, and hands them back to the enrichment retry path.

Usage:
    # Run one sweep and exit
    python -m app.cli.reconcile_metadata --once

    # Keep running on the configured interval (RECONCILIATION_INTERVAL_MINUTES)
    python -m app.cli.reconcile_metadata --schedule

    # Sweep a specific database
    python -m app.cli.reconcile_metadata --once --db-path /path/to/links.db
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from app.config import AppConfig, load_config
from app.core.logging_utils import setup_json_logging
from app.db.session import DatabaseSessionManager
from app.infrastructure.persistence.sqlite.repositories.link_repository import SqliteLinkStore
from app.services.metadata_reconciliation import MetadataReconciliationJob
from app.services.scheduler import SchedulerService

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Re-arm metadata enrichment for links wrongly marked complete",
        allow_abbrev=False,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit (default).",
    )
    mode.add_argument(
        "--schedule",
        action="store_true",
        help="Run on the configured interval until interrupted.",
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        help="Override the configured link store path for this run.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level for this session.",
    )
    return parser.parse_args(argv)


def _prepare_config(args: argparse.Namespace) -> AppConfig:
    """Load configuration, applying CLI overrides."""
    runtime: dict[str, str] = {}
    if args.db_path:
        runtime["remote_db_path"] = str(args.db_path)
    if args.log_level:
        runtime["log_level"] = args.log_level
    try:
        return load_config(runtime=runtime) if runtime else load_config()
    except RuntimeError as exc:
        msg = f"Configuration error: {exc}"
        raise SystemExit(msg) from exc


async def run_once(cfg: AppConfig) -> int:
    db = DatabaseSessionManager(path=cfg.runtime.remote_db_path)
    try:
        db.migrate()
        job = MetadataReconciliationJob(SqliteLinkStore(db), cfg.reconciliation)
        result = await job.run_once()
    finally:
        db.close()
    logger.info(
        "reconciliation_cli_done",
        extra={"matched": result.matched, "rearmed": result.rearmed},
    )
    return 0


async def run_scheduled(cfg: AppConfig, stop_event: asyncio.Event | None = None) -> int:
    if not cfg.reconciliation.enabled:
        logger.warning("reconciliation_disabled")
        return 1

    db = DatabaseSessionManager(path=cfg.runtime.remote_db_path)
    db.migrate()
    scheduler = SchedulerService(
        cfg, MetadataReconciliationJob(SqliteLinkStore(db), cfg.reconciliation)
    )
    stop = stop_event or asyncio.Event()
    await scheduler.start()
    logger.info(
        "reconciliation_scheduler_running",
        extra={"next_run": str(scheduler.get_next_run_time())},
    )
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
        db.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = _prepare_config(args)
    setup_json_logging(
        cfg.runtime.log_level, use_loguru=cfg.runtime.use_loguru, log_file=cfg.runtime.log_file
    )

    try:
        if args.schedule:
            return asyncio.run(run_scheduled(cfg))
        return asyncio.run(run_once(cfg))
    except KeyboardInterrupt:
        logger.info("reconciliation_cli_interrupted")
        return 130
    except Exception:
        logger.exception("reconciliation_cli_failed")
        return 1


if __name__ == "__main__":
    sys.exit(main())
