"""
strategies.py
─────────────
The caching algorithms applied to classified requests.

    cache-first-with-expiry        fresh entry → no network; else fetch, store, serve
    network-first(-with-cache)     fetch with a 10 s cutoff; on failure any cached copy
    stale-while-revalidate         fresh entry → serve; stale → serve + refresh in background
    network-with-offline-fallback  fetch; on failure offline page / cached copy / 408

Rules shared by every strategy
──────────────────────────────
• Only transport failures and timeouts (``NetworkError``) trigger a fallback.
  An HTTP error status from the network is returned as-is and never stored.
• Only status 200 responses are written, stamped with ``state.now()``, and
  every write is followed by ``EvictionManager.enforce`` for that role.
• Cache reads go through ``instrument_lookup`` so every lookup is counted.
• A storage failure on read is a miss; on write it is logged and ignored.
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional, Sequence

from cache_store import CacheStorage, is_expired
from classifier import Policy
from config import NETWORK_FIRST_TIMEOUT, OFFLINE_PAGE
from errors import NetworkError, StorageError
from eviction import EvictionManager
from logging_config import get_logger
from metrics import instrument_lookup
from models import (
    CacheEntry,
    CacheRole,
    FetchRequest,
    ResponseSnapshot,
    ResponseSource,
    Strategy,
)
from network import Fetcher
from state import EngineState

logger = get_logger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Synthetic responses
# ──────────────────────────────────────────────────────────────────────────────

def offline_response(url: str = "") -> ResponseSnapshot:
    """Plain 408 returned when neither the network nor a cache can answer."""
    return ResponseSnapshot(
        status=408,
        headers={"content-type": "text/plain; charset=utf-8"},
        body=b"Offline",
        url=url,
        source=ResponseSource.SYNTHETIC,
    )


def offline_error_payload(url: str, detail: str = "network unavailable") -> ResponseSnapshot:
    """Typed JSON 408 for API callers that parse the body."""
    body = {"ok": False, "error": "offline", "detail": detail, "url": url}
    return ResponseSnapshot(
        status=408,
        headers={"content-type": "application/json"},
        body=json.dumps(body).encode(),
        url=url,
        source=ResponseSource.SYNTHETIC,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Executor
# ──────────────────────────────────────────────────────────────────────────────

class StrategyExecutor:

    def __init__(
        self,
        state:    EngineState,
        storage:  CacheStorage,
        fetcher:  Fetcher,
        eviction: EvictionManager,
        network_timeout: float = NETWORK_FIRST_TIMEOUT,
    ) -> None:
        self._state    = state
        self._storage  = storage
        self._fetcher  = fetcher
        self._eviction = eviction
        self._timeout  = network_timeout
        self._revalidating: dict[str, asyncio.Task] = {}
        self.lookup = instrument_lookup(self._read, state)

    # ── Cache I/O ─────────────────────────────────────────────────────────────

    async def _read(self, key: str, names: Sequence[str]) -> Optional[CacheEntry]:
        try:
            return await self._storage.match(key, names)
        except StorageError as exc:
            logger.warning("cache_read_failed", url=key, error=str(exc))
            return None

    async def _lookup_role(self, key: str, role: CacheRole) -> Optional[CacheEntry]:
        return await self.lookup(key, [self._state.cache_name(role)])

    async def _store(self, role: CacheRole, key: str, response: ResponseSnapshot) -> None:
        if response.status != 200:
            return
        entry = CacheEntry(
            key=key,
            status=response.status,
            headers=response.headers,
            body=response.body,
            stored_at=self._state.now(),
        )
        try:
            cache = await self._storage.open(self._state.cache_name(role))
            await cache.put(entry)
        except StorageError as exc:
            logger.warning("cache_write_failed", url=key, role=role.value, error=str(exc))
            return
        await self._eviction.enforce(role)

    # ── Dispatch ──────────────────────────────────────────────────────────────

    async def execute(self, request: FetchRequest, policy: Policy) -> ResponseSnapshot:
        match policy.strategy:
            case Strategy.CACHE_FIRST:
                return await self.cache_first(request, policy.role, policy.max_age)
            case Strategy.NETWORK_FIRST_WITH_CACHE | Strategy.NETWORK_FIRST:
                return await self.network_first(request, policy.role, policy.max_age)
            case Strategy.STALE_WHILE_REVALIDATE:
                return await self.stale_while_revalidate(request, policy.role, policy.max_age)
            case Strategy.NETWORK_WITH_OFFLINE_FALLBACK:
                return await self.network_with_offline_fallback(request)

    # ── Strategies ────────────────────────────────────────────────────────────

    async def cache_first(
        self, request: FetchRequest, role: CacheRole, max_age: float
    ) -> ResponseSnapshot:
        key   = request.identity
        entry = await self._lookup_role(key, role)
        if entry is not None and not is_expired(entry, max_age, self._state.now()):
            return entry.to_response()

        try:
            response = await self._fetcher.fetch(request)
        except NetworkError as exc:
            logger.info("strategy_network_failed", strategy="cache-first", url=key, error=exc.reason)
            if entry is not None:
                return entry.to_response(ResponseSource.STALE)
            return offline_response(key)

        await self._store(role, key, response)
        return response

    async def network_first(
        self, request: FetchRequest, role: CacheRole, max_age: Optional[float] = None  # noqa: ARG002
    ) -> ResponseSnapshot:
        """
        ``max_age`` only governs the CLEANUP_CACHE sweep for this role: on a
        network failure a cached copy is served whatever its age.
        """
        key = request.identity
        try:
            response = await asyncio.wait_for(
                self._fetcher.fetch(request, timeout=self._timeout), timeout=self._timeout
            )
        except (NetworkError, asyncio.TimeoutError) as exc:
            reason = exc.reason if isinstance(exc, NetworkError) else "timeout"
            logger.info("strategy_network_failed", strategy="network-first", url=key, error=reason)
            entry = await self._lookup_role(key, role)
            if entry is not None:
                return entry.to_response(ResponseSource.STALE)
            return offline_error_payload(key, reason)

        await self._store(role, key, response)
        return response

    async def stale_while_revalidate(
        self, request: FetchRequest, role: CacheRole, max_age: float
    ) -> ResponseSnapshot:
        key   = request.identity
        entry = await self._lookup_role(key, role)
        if entry is not None:
            if is_expired(entry, max_age, self._state.now()):
                self._schedule_revalidation(request, role)
                return entry.to_response(ResponseSource.STALE)
            return entry.to_response()

        try:
            response = await self._fetcher.fetch(request)
        except NetworkError as exc:
            logger.info("strategy_network_failed", strategy="stale-while-revalidate", url=key, error=exc.reason)
            return offline_response(key)

        await self._store(role, key, response)
        return response

    async def network_with_offline_fallback(self, request: FetchRequest) -> ResponseSnapshot:
        key = request.identity
        try:
            return await self._fetcher.fetch(request)
        except NetworkError as exc:
            logger.info("strategy_network_failed", strategy="offline-fallback", url=key, error=exc.reason)

        if request.is_navigation:
            page = await self.lookup(
                self._state.absolute(OFFLINE_PAGE),
                [self._state.cache_name(CacheRole.OFFLINE)],
            )
            if page is not None:
                return page.to_response()
            logger.error("offline_page_missing", url=key)
            return offline_response(key)

        current = [self._state.cache_name(role) for role in CacheRole]
        entry   = await self.lookup(key, current)
        if entry is not None:
            return entry.to_response(ResponseSource.STALE)
        return offline_response(key)

    # ── Background revalidation ───────────────────────────────────────────────

    def _schedule_revalidation(self, request: FetchRequest, role: CacheRole) -> None:
        key = request.identity
        if key in self._revalidating:
            return
        task = asyncio.create_task(self._revalidate(request, role))
        self._revalidating[key] = task
        task.add_done_callback(lambda _t, k=key: self._revalidating.pop(k, None))

    async def _revalidate(self, request: FetchRequest, role: CacheRole) -> None:
        key = request.identity
        try:
            response = await self._fetcher.fetch(request)
        except NetworkError as exc:
            logger.info("revalidation_failed", url=key, error=exc.reason)
            return
        await self._store(role, key, response)
        logger.debug("revalidated", url=key, status=response.status)

    async def wait_for_background(self) -> None:
        """Wait until every pending revalidation has finished."""
        while self._revalidating:
            await asyncio.gather(*list(self._revalidating.values()), return_exceptions=True)
