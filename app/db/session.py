"""Database session management for the shared link store.

The :class:`DatabaseSessionManager` owns the SQLite connection behind
``database_proxy`` and runs repository operations in worker threads with a
timeout, serialising writers and retrying briefly when SQLite reports that
the database is locked.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import peewee
from playhouse.sqlite_ext import SqliteExtDatabase

from app.db.models import STORE_MODELS, database_proxy

DB_OPERATION_TIMEOUT = 30.0
DB_MAX_RETRIES = 3

SQLITE_PRAGMAS = {
    "journal_mode": "wal",
    "synchronous": "normal",
    "foreign_keys": 1,
    "busy_timeout": 5000,
}


@dataclass
class DatabaseSessionManager:
    """Peewee-backed session manager for the link store.

    Attributes:
        path: Path to the SQLite database file.
        operation_timeout: Default timeout for database operations in seconds.
        max_retries: Retries for "database is locked" errors.
    """

    path: str
    _logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    _database: peewee.SqliteDatabase = field(init=False)
    _write_lock: asyncio.Lock | None = field(default=None, init=False)

    operation_timeout: float = field(default=DB_OPERATION_TIMEOUT)
    max_retries: int = field(default=DB_MAX_RETRIES)

    def __post_init__(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._database = SqliteExtDatabase(
            self.path, pragmas=SQLITE_PRAGMAS, check_same_thread=False
        )
        database_proxy.initialize(self._database)

    @property
    def database(self) -> peewee.SqliteDatabase:
        """Access the underlying Peewee database instance."""
        return self._database

    def connection_context(self) -> Any:
        """Return a connection context manager."""
        return self._database.connection_context()

    def migrate(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        with self._database.connection_context():
            self._database.create_tables(STORE_MODELS, safe=True)
        self._logger.info("db_migrated", extra={"path": self._mask_path(self.path)})

    def close(self) -> None:
        if not self._database.is_closed():
            self._database.close()

    def _lock(self) -> asyncio.Lock:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        return self._write_lock

    async def _safe_db_operation(
        self,
        operation: Any,
        *args: Any,
        timeout: float | None = None,
        operation_name: str = "database_operation",
        read_only: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Run ``operation`` in a worker thread inside a connection context.

        Raises:
            asyncio.TimeoutError: If the operation exceeds ``timeout``.
            peewee.OperationalError: If the database stays locked after retries.
            peewee.IntegrityError: On constraint violations, unchanged.
        """
        if timeout is None:
            timeout = self.operation_timeout

        def _op_wrapper() -> Any:
            with self._database.connection_context():
                return operation(*args, **kwargs)

        async def _run() -> Any:
            if read_only:
                return await asyncio.to_thread(_op_wrapper)
            async with self._lock():
                return await asyncio.to_thread(_op_wrapper)

        retries = 0
        while True:
            try:
                return await asyncio.wait_for(_run(), timeout=timeout)
            except TimeoutError:
                self._logger.warning(
                    "db_operation_timeout",
                    extra={"operation": operation_name, "timeout": timeout},
                )
                raise
            except peewee.OperationalError as exc:
                error_msg = str(exc).lower()
                if ("locked" in error_msg or "busy" in error_msg) and retries < self.max_retries:
                    retries += 1
                    wait_time = 0.1 * (2**retries)
                    self._logger.warning(
                        "db_locked_retrying",
                        extra={
                            "operation": operation_name,
                            "retry": retries,
                            "wait_time": wait_time,
                        },
                    )
                    await asyncio.sleep(wait_time)
                    continue
                self._logger.exception(
                    "db_operational_error",
                    extra={"operation": operation_name, "error": str(exc)},
                )
                raise
            except peewee.IntegrityError as exc:
                self._logger.info(
                    "db_integrity_error",
                    extra={"operation": operation_name, "error": str(exc)},
                )
                raise

    @staticmethod
    def _mask_path(path: str) -> str:
        """Mask a path for logging (show only parent/filename)."""
        p = Path(path)
        if not p.name:
            return str(p)
        parent = p.parent.name
        if parent:
            return f".../{parent}/{p.name}"
        return p.name
