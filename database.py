"""
database.py
───────────
Embedded SQLite storage shared by the cache store and the submission queue.

• One connection per ``Database`` guarded by a lock; every call is pushed to
  the default executor with ``run()`` so the event loop never blocks on disk.
• ``sqlite3.Error`` never leaks out: it is re-raised as ``StorageError`` and
  each caller decides whether that is a miss, a no-op or a user-facing error.
• ``transaction()`` commits on success and rolls back on any exception, which
  is what makes single-record queue mutations atomic.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from errors import StorageError
from logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Database:
    """SQLite file (or ``:memory:``) holding named caches and queued submissions."""

    SCHEMA = {
        "caches": """
            CREATE TABLE IF NOT EXISTS caches (
                name       TEXT PRIMARY KEY,
                created_at REAL NOT NULL
            )
        """,
        "cache_entries": """
            CREATE TABLE IF NOT EXISTS cache_entries (
                cache_name   TEXT NOT NULL,
                url          TEXT NOT NULL,
                status       INTEGER NOT NULL,
                headers_json TEXT NOT NULL,
                body         BLOB NOT NULL,
                stored_at    REAL,
                PRIMARY KEY (cache_name, url)
            )
        """,
        "submissions": """
            CREATE TABLE IF NOT EXISTS submissions (
                id           TEXT PRIMARY KEY,
                kind         TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                destination  TEXT NOT NULL,
                method       TEXT NOT NULL,
                enqueued_at  REAL NOT NULL,
                status       TEXT NOT NULL,
                retry_count  INTEGER NOT NULL DEFAULT 0,
                max_retries  INTEGER NOT NULL,
                backup       INTEGER NOT NULL DEFAULT 0,
                last_attempt REAL,
                error        TEXT
            )
        """,
        "idx_submissions_status":
            "CREATE INDEX IF NOT EXISTS idx_submissions_status ON submissions (status)",
        "idx_submissions_enqueued":
            "CREATE INDEX IF NOT EXISTS idx_submissions_enqueued ON submissions (enqueued_at)",
        "idx_submissions_kind":
            "CREATE INDEX IF NOT EXISTS idx_submissions_kind ON submissions (kind)",
    }

    def __init__(self, path: str = ":memory:") -> None:
        self.path  = path
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self) -> None:
        """Create tables and indexes.  Safe to call repeatedly."""
        with self._lock:
            try:
                with self.transaction() as conn:
                    for statement in self.SCHEMA.values():
                        conn.execute(statement)
            except sqlite3.Error as exc:
                raise StorageError(f"schema creation failed: {exc}") from exc
        logger.info("database_initialized", path=self.path)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ── Execution ─────────────────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on any exception.  Caller holds the lock."""
        conn = self._connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _locked(self, write: bool, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            try:
                if not write:
                    return fn(self._connection(), *args)
                with self.transaction() as conn:
                    return fn(conn, *args)
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """
        Execute the read ``fn(connection, *args)`` on the default executor.

        Raises ``StorageError`` on any SQLite failure.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._locked, False, fn, *args)

    async def write(self, fn: Callable[..., T], *args: Any) -> T:
        """Like ``run()`` but inside a transaction committed before returning."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._locked, True, fn, *args)
