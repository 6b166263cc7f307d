"""
cache_store.py
──────────────
Named, versioned response caches persisted in the embedded database.

Mirrors the browser Cache Storage model:

    storage = CacheStorage(db)
    cache   = await storage.open("portfolio-static-v1.0.0")
    await cache.put(CacheEntry(key=url, body=b"...", stored_at=time.time()))
    entry   = await cache.match(url)      # None on miss
    await storage.delete("portfolio-static-v0.9.0")

Writes are ``INSERT OR REPLACE`` so two racing fetches for the same key both
succeed and the last one wins.  Every entry written by the engine carries a
``stored_at`` wall-clock timestamp; ``is_expired`` treats a missing one as
already expired.
"""

from __future__ import annotations

import json
import sqlite3
import time
from typing import Callable, Iterable, Optional

from models import CacheEntry


def is_expired(entry: CacheEntry, max_age: float, now: float) -> bool:
    """``now - stored_at > max_age``; an entry without a timestamp is expired."""
    if entry.stored_at is None:
        return True
    return now - entry.stored_at > max_age


def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
    return CacheEntry(
        key=row["url"],
        status=row["status"],
        headers=json.loads(row["headers_json"]),
        body=bytes(row["body"]),
        stored_at=row["stored_at"],
    )


class NamedCache:
    """One logical partition, e.g. ``portfolio-image-v1.0.0``."""

    def __init__(self, db, name: str, clock: Callable[[], float] = time.time) -> None:
        self._db    = db
        self.name   = name
        self._clock = clock

    def __repr__(self) -> str:
        return f"NamedCache({self.name!r})"

    async def match(self, key: str) -> Optional[CacheEntry]:
        def _get(conn: sqlite3.Connection) -> Optional[CacheEntry]:
            row = conn.execute(
                "SELECT * FROM cache_entries WHERE cache_name = ? AND url = ?",
                (self.name, key),
            ).fetchone()
            return _row_to_entry(row) if row else None

        return await self._db.run(_get)

    async def put(self, entry: CacheEntry) -> None:
        def _put(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                (self.name, self._clock()),
            )
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries
                    (cache_name, url, status, headers_json, body, stored_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    self.name,
                    entry.key,
                    entry.status,
                    json.dumps(entry.headers),
                    entry.body,
                    entry.stored_at,
                ),
            )

        await self._db.write(_put)

    async def delete(self, key: str) -> bool:
        def _delete(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                "DELETE FROM cache_entries WHERE cache_name = ? AND url = ?",
                (self.name, key),
            )
            return cur.rowcount > 0

        return await self._db.write(_delete)

    async def keys(self) -> list[str]:
        return [key for key, _ in await self.timestamps()]

    async def timestamps(self) -> list[tuple[str, Optional[float]]]:
        """``(key, stored_at)`` pairs in write order (oldest write first)."""
        def _list(conn: sqlite3.Connection) -> list[tuple[str, Optional[float]]]:
            rows = conn.execute(
                "SELECT url, stored_at FROM cache_entries WHERE cache_name = ? ORDER BY rowid",
                (self.name,),
            ).fetchall()
            return [(row["url"], row["stored_at"]) for row in rows]

        return await self._db.run(_list)

    async def count(self) -> int:
        def _count(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM cache_entries WHERE cache_name = ?",
                (self.name,),
            ).fetchone()
            return row["n"]

        return await self._db.run(_count)


class CacheStorage:
    """The set of every named cache, across all engine versions."""

    def __init__(self, db, clock: Callable[[], float] = time.time) -> None:
        self._db    = db
        self._clock = clock

    async def open(self, name: str) -> NamedCache:
        def _create(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                (name, self._clock()),
            )

        await self._db.write(_create)
        return NamedCache(self._db, name, self._clock)

    async def has(self, name: str) -> bool:
        return name in await self.keys()

    async def keys(self) -> list[str]:
        def _names(conn: sqlite3.Connection) -> list[str]:
            rows = conn.execute("SELECT name FROM caches ORDER BY created_at, name").fetchall()
            return [row["name"] for row in rows]

        return await self._db.run(_names)

    async def delete(self, name: str) -> bool:
        def _drop(conn: sqlite3.Connection) -> bool:
            conn.execute("DELETE FROM cache_entries WHERE cache_name = ?", (name,))
            cur = conn.execute("DELETE FROM caches WHERE name = ?", (name,))
            return cur.rowcount > 0

        return await self._db.write(_drop)

    async def match(self, key: str, names: Iterable[str]) -> Optional[CacheEntry]:
        """First entry for ``key`` among ``names``, searched in the given order."""
        for name in names:
            entry = await NamedCache(self._db, name, self._clock).match(key)
            if entry is not None:
                return entry
        return None
