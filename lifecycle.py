"""
lifecycle.py
────────────
Version lifecycle: install, activate, and the two-phase update protocol.

    installing ─► installed ─► activating ─► active ─► redundant
         │
         └─ InstallError (offline page not cached) ─► redundant

Install
───────
Precache ``PRECACHE_MANIFEST`` into the current version's caches.  Manifest
assets are best effort: a failure is logged and skipped.  The offline page is
critical: if it cannot be fetched with status 200 the install raises
``InstallError`` and the version never activates.

Activate
────────
Delete every cache whose name is not in ``state.expected_cache_names()``,
then claim every registered page so the new version controls it without a
reload.  Pages are told about the controller change through a notification;
the engine never reloads a page itself.

Update protocol (``Registration``)
──────────────────────────────────
The first version to install activates immediately.  A later version
installs inertly into the *waiting* slot; ``skip_waiting()`` (the
SKIP_WAITING command) stops the active version, marks it redundant and
activates the waiting one.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Iterable, Optional

from cache_store import CacheStorage
from classifier import classify
from config import OFFLINE_PAGE, PRECACHE_MANIFEST
from errors import InstallError, NetworkError, StorageError
from eviction import EvictionManager
from logging_config import get_logger
from models import CacheEntry, CacheRole, FetchRequest
from network import Fetcher
from state import EngineState
from notifications import Notifier

logger = get_logger(__name__)


class LifecycleState(str, Enum):
    INSTALLING = "installing"
    INSTALLED  = "installed"
    ACTIVATING = "activating"
    ACTIVE     = "active"
    REDUNDANT  = "redundant"


# ──────────────────────────────────────────────────────────────────────────────
# Open pages
# ──────────────────────────────────────────────────────────────────────────────

class ClientRegistry:
    """Open page instances and the engine version that controls each one."""

    def __init__(self) -> None:
        self._controllers: dict[str, Optional[str]] = {}

    def register(self, client_id: str, controller: Optional[str] = None) -> None:
        self._controllers.setdefault(client_id, controller)

    def unregister(self, client_id: str) -> None:
        self._controllers.pop(client_id, None)

    def controller_of(self, client_id: str) -> Optional[str]:
        return self._controllers.get(client_id)

    def claim(self, version: str) -> list[str]:
        """Make ``version`` the controller of every page.  Returns the pages that changed."""
        changed = [cid for cid, ctrl in self._controllers.items() if ctrl != version]
        for cid in changed:
            self._controllers[cid] = version
        return changed

    def snapshot(self) -> dict[str, Optional[str]]:
        return dict(self._controllers)

    def __len__(self) -> int:
        return len(self._controllers)


# ──────────────────────────────────────────────────────────────────────────────
# Per-version lifecycle
# ──────────────────────────────────────────────────────────────────────────────

class LifecycleManager:

    def __init__(
        self,
        state:    EngineState,
        storage:  CacheStorage,
        fetcher:  Fetcher,
        eviction: EvictionManager,
        clients:  ClientRegistry,
        notifier: Optional[Notifier] = None,
        manifest: Optional[dict[str, tuple[str, ...]]] = None,
    ) -> None:
        self._state    = state
        self._storage  = storage
        self._fetcher  = fetcher
        self._eviction = eviction
        self._clients  = clients
        self._notifier = notifier
        self._manifest = PRECACHE_MANIFEST if manifest is None else manifest
        self.status: Optional[LifecycleState] = None

    # ── Fetch-and-store helper ────────────────────────────────────────────────

    async def _fetch_into(self, role: CacheRole, url: str) -> None:
        """Fetch ``url`` and store it under ``role``.  Raises on any failure."""
        request  = FetchRequest(url=url)
        response = await self._fetcher.fetch(request)
        if response.status != 200:
            raise NetworkError(url, f"status {response.status}")
        cache = await self._storage.open(self._state.cache_name(role))
        await cache.put(CacheEntry(
            key=request.identity,
            status=response.status,
            headers=response.headers,
            body=response.body,
            stored_at=self._state.now(),
        ))

    async def precache(self, role: CacheRole, paths: Iterable[str]) -> list[str]:
        """Best-effort: returns the URLs that were cached, logs the rest."""
        cached: list[str] = []
        for path in paths:
            url = self._state.absolute(path)
            try:
                await self._fetch_into(role, url)
            except (NetworkError, StorageError) as exc:
                logger.warning("install_precache_failed", url=url, role=role.value, error=str(exc))
                continue
            cached.append(url)
        return cached

    # ── Install / activate ────────────────────────────────────────────────────

    async def install(self) -> None:
        self.status = LifecycleState.INSTALLING
        logger.info("install_start", version=self._state.version)

        offline_url = self._state.absolute(OFFLINE_PAGE)
        try:
            await self._fetch_into(CacheRole.OFFLINE, offline_url)
        except (NetworkError, StorageError) as exc:
            self.status = LifecycleState.REDUNDANT
            logger.error("install_failed", version=self._state.version, url=offline_url, error=str(exc))
            raise InstallError(f"offline page could not be cached: {exc}") from exc

        total = 0
        for role_name, paths in self._manifest.items():
            role   = CacheRole(role_name)
            cached = await self.precache(role, paths)
            total += len(cached)
            await self._eviction.enforce(role)

        self.status = LifecycleState.INSTALLED
        logger.info("install_done", version=self._state.version, precached=total)

    async def activate(self) -> list[str]:
        self.status = LifecycleState.ACTIVATING
        removed = await self.collect_garbage()
        claimed = self._clients.claim(self._state.version)
        if claimed and self._notifier is not None:
            self._notifier.publish(
                "info", "controller_changed",
                "A new version is now controlling this page.",
                version=self._state.version, clients=claimed,
            )
        self.status = LifecycleState.ACTIVE
        logger.info(
            "activate_done",
            version=self._state.version,
            removed_caches=removed,
            claimed=len(claimed),
        )
        return removed

    async def collect_garbage(self) -> list[str]:
        """Delete caches that belong to any other version.  Returns the names deleted."""
        expected = self._state.expected_cache_names()
        try:
            names = await self._storage.keys()
        except StorageError as exc:
            logger.warning("cache_gc_failed", error=str(exc))
            return []

        removed: list[str] = []
        for name in names:
            if name in expected:
                continue
            try:
                await self._storage.delete(name)
            except StorageError as exc:
                logger.warning("cache_delete_failed", cache=name, error=str(exc))
                continue
            logger.info("old_cache_deleted", cache=name)
            removed.append(name)
        return removed

    def retire(self) -> None:
        self.status = LifecycleState.REDUNDANT

    # ── Control-channel helpers ───────────────────────────────────────────────

    async def cache_urls(self, urls: Iterable[str]) -> list[str]:
        """Force-populate the cache matching each URL's classification (static by default)."""
        cached: list[str] = []
        touched: set[CacheRole] = set()
        for raw in urls:
            url    = self._state.absolute(raw)
            policy = classify(FetchRequest(url=url), self._state.origin)
            role   = policy.role if policy is not None and policy.role is not None else CacheRole.STATIC
            try:
                await self._fetch_into(role, url)
            except (NetworkError, StorageError) as exc:
                logger.warning("cache_urls_failed", url=url, error=str(exc))
                continue
            cached.append(url)
            touched.add(role)
        for role in touched:
            await self._eviction.enforce(role)
        return cached

    async def clear_all(self) -> list[str]:
        """Delete every named cache, of every version.  Returns the names deleted."""
        try:
            names = await self._storage.keys()
        except StorageError as exc:
            logger.warning("cache_clear_failed", error=str(exc))
            return []

        removed: list[str] = []
        for name in names:
            try:
                await self._storage.delete(name)
            except StorageError as exc:
                logger.warning("cache_delete_failed", cache=name, error=str(exc))
                continue
            removed.append(name)
        logger.info("caches_cleared", count=len(removed), failed=len(names) - len(removed))
        return removed


# ──────────────────────────────────────────────────────────────────────────────
# Registration: active / waiting slots
# ──────────────────────────────────────────────────────────────────────────────

EngineFactory = Callable[[str], Any]


class Registration:
    """
    Holds the active engine and, during an update, the waiting one.

    ``factory(version)`` must return an object exposing ``state``,
    ``lifecycle`` and the coroutines ``start()`` / ``stop()``.
    """

    def __init__(self, factory: EngineFactory) -> None:
        self._factory = factory
        self.active   = None
        self.waiting  = None

    async def register(self, version: str):
        """Install ``version``; activate it at once only if nothing is active yet."""
        if self.active is not None and self.active.state.version == version:
            return self.active
        if self.waiting is not None and self.waiting.state.version == version:
            return self.waiting

        engine = self._factory(version)
        engine.skip_waiting_hook = self.skip_waiting
        await engine.lifecycle.install()

        if self.active is None:
            await self._promote(engine)
            return engine

        if self.waiting is not None:
            self.waiting.lifecycle.retire()
            await self.waiting.stop()
            logger.info("waiting_version_replaced", old=self.waiting.state.version, new=version)
        self.waiting = engine
        logger.info("update_waiting", version=version, active=self.active.state.version)
        return engine

    async def skip_waiting(self) -> bool:
        """Promote the waiting version.  Returns False when nothing is waiting."""
        if self.waiting is None:
            return False
        engine, self.waiting = self.waiting, None
        await self._promote(engine)
        return True

    async def _promote(self, engine) -> None:
        old = self.active
        if old is not None:
            await old.stop()
            old.lifecycle.retire()
        self.active = engine
        await engine.lifecycle.activate()
        await engine.start()
        logger.info(
            "version_promoted",
            version=engine.state.version,
            previous=old.state.version if old is not None else None,
        )

    async def shutdown(self) -> None:
        for engine in (self.waiting, self.active):
            if engine is not None:
                await engine.stop()
        self.waiting = None
        self.active  = None
