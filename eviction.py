"""
eviction.py
───────────
Size and age bounds for the named caches.

• ``enforce(role)``: called after every successful cache write.  Keeps the
  ``MAX_ENTRIES[role]`` most recently *written* entries and deletes the rest.
  Reads never refresh recency: this is a strict write-order cap, not LRU.
  Entries without a timestamp sort as the oldest.
• ``sweep()``: the CLEANUP_CACHE / ``cache-cleanup`` routine: drop expired
  entries from every capped cache, then enforce the caps.

Storage failures are logged and swallowed here; eviction never fails the
request that triggered it.
"""

from __future__ import annotations

from typing import Mapping, Optional

from cache_store import CacheStorage
from config import MAX_AGE, MAX_ENTRIES
from errors import StorageError
from logging_config import get_logger
from models import CacheRole
from state import EngineState

logger = get_logger(__name__)


def _age_key(item: tuple[str, Optional[float]]) -> float:
    stored_at = item[1]
    return float("-inf") if stored_at is None else stored_at


class EvictionManager:

    def __init__(
        self,
        state:   EngineState,
        storage: CacheStorage,
        caps:    Optional[Mapping[str, int]] = None,
        ages:    Optional[Mapping[str, float]] = None,
    ) -> None:
        self._state   = state
        self._storage = storage
        self._caps    = dict(MAX_ENTRIES if caps is None else caps)
        self._ages    = dict(MAX_AGE if ages is None else ages)

    def cap_for(self, role: CacheRole) -> Optional[int]:
        return self._caps.get(role.value)

    async def enforce(self, role: CacheRole, max_entries: Optional[int] = None) -> int:
        """Trim the current cache for ``role`` down to its cap.  Returns entries removed."""
        cap = self.cap_for(role) if max_entries is None else max_entries
        if cap is None:
            return 0

        name = self._state.cache_name(role)
        try:
            cache   = await self._storage.open(name)
            entries = await cache.timestamps()
            if len(entries) <= cap:
                return 0

            # sorted() is stable, so equal timestamps keep their write order
            ordered = sorted(entries, key=_age_key)
            victims = ordered[: len(ordered) - cap]
            for key, _ in victims:
                await cache.delete(key)
        except StorageError as exc:
            logger.warning("eviction_failed", cache=name, error=str(exc))
            return 0

        logger.info("eviction_removed", cache=name, removed=len(victims), cap=cap)
        return len(victims)

    async def sweep_expired(self, role: CacheRole) -> int:
        """Delete every entry of ``role`` older than its max age (or lacking a timestamp)."""
        max_age = self._ages.get(role.value)
        if max_age is None:
            return 0

        name = self._state.cache_name(role)
        now  = self._state.now()
        removed = 0
        try:
            cache = await self._storage.open(name)
            for key, stored_at in await cache.timestamps():
                if stored_at is None or now - stored_at > max_age:
                    if await cache.delete(key):
                        removed += 1
        except StorageError as exc:
            logger.warning("expiry_sweep_failed", cache=name, error=str(exc))
            return removed

        if removed:
            logger.info("expired_entries_removed", cache=name, removed=removed)
        return removed

    async def sweep(self) -> dict[str, int]:
        """Expiry pass followed by the cap pass over every capped role."""
        report: dict[str, int] = {}
        for role in CacheRole:
            if self.cap_for(role) is None:
                continue
            expired = await self.sweep_expired(role)
            trimmed = await self.enforce(role)
            report[role.value] = expired + trimmed
        logger.info("cache_sweep_done", removed=sum(report.values()), by_role=report)
        return report
