"""
engine.py
─────────
One running engine version, composed from the components.

    request ─► classify ─► StrategyExecutor ─► CacheStorage ─► EvictionManager
    message ─► ControlChannel
    tag     ─► SyncCoordinator

Shared across versions (and passed in): the database-backed cache storage,
the submission queue, the HTTP fetcher, the connectivity monitor, the
notifier and the client registry.  Owned per version: the ``EngineState``
and everything built on it.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Optional

from cache_store import CacheStorage
from classifier import classify
from config import Settings
from connectivity import ConnectionMonitor
from control import ControlChannel, parse_command
from errors import NetworkError
from eviction import EvictionManager
from lifecycle import ClientRegistry, LifecycleManager
from logging_config import get_logger
from models import ControlCommand, FetchRequest, ResponseSnapshot
from network import Fetcher
from notifications import Notifier
from offline_queue import SubmissionQueue
from state import EngineState
from strategies import StrategyExecutor, offline_response
from sync_coordinator import SyncCoordinator, SyncTag

logger = get_logger(__name__)


class Engine:

    def __init__(
        self,
        version:  str,
        settings: Settings,
        storage:  CacheStorage,
        queue:    SubmissionQueue,
        fetcher:  Fetcher,
        monitor:  ConnectionMonitor,
        notifier: Notifier,
        clients:  ClientRegistry,
        clock:    Callable[[], float] = time.time,
        manifest: Optional[dict[str, tuple[str, ...]]] = None,
        sync_interval: Optional[float] = None,
    ) -> None:
        self.state    = EngineState(version=version, origin=settings.origin, clock=clock)
        self._fetcher = fetcher
        self._monitor = monitor

        self.eviction  = EvictionManager(self.state, storage)
        self.executor  = StrategyExecutor(self.state, storage, fetcher, self.eviction)
        self.lifecycle = LifecycleManager(
            self.state, storage, fetcher, self.eviction, clients, notifier, manifest,
        )
        coordinator_kwargs: dict[str, Any] = {}
        if sync_interval is not None:
            coordinator_kwargs["interval"] = sync_interval
        self.coordinator = SyncCoordinator(
            self.state, queue, fetcher, monitor, notifier, self.eviction,
            background_sync_supported=settings.background_sync_supported,
            **coordinator_kwargs,
        )
        self.control = ControlChannel(
            self.state, storage, self.lifecycle, self.eviction, self._skip_waiting,
        )
        self.skip_waiting_hook: Optional[Callable[[], Awaitable[bool]]] = None
        self.running = False

    def __repr__(self) -> str:
        return f"Engine({self.state.version!r}, {self.lifecycle.status})"

    # ── Requests ──────────────────────────────────────────────────────────────

    async def handle_fetch(self, request: FetchRequest) -> ResponseSnapshot:
        policy = classify(request, self.state.origin)
        if policy is None:
            return await self._passthrough(request)
        logger.debug(
            "request_classified",
            url=request.identity,
            strategy=policy.strategy.value,
            role=policy.role.value if policy.role else None,
        )
        return await self.executor.execute(request, policy)

    async def _passthrough(self, request: FetchRequest) -> ResponseSnapshot:
        try:
            return await self._fetcher.fetch(request)
        except NetworkError as exc:
            logger.info("passthrough_failed", url=request.url, method=request.method, error=exc.reason)
            return offline_response(request.url)

    # ── Messages / triggers ───────────────────────────────────────────────────

    async def handle_message(self, message: Any) -> dict[str, Any]:
        """Accept either a parsed ``ControlCommand`` or its raw JSON form."""
        command: ControlCommand = parse_command(message) if isinstance(message, dict) else message
        return await self.control.handle(command)

    async def handle_sync(self, tag: str) -> dict[str, Any]:
        """Raises ``ValueError`` for an unknown tag."""
        return await self.coordinator.handle_tag(SyncTag(tag))

    async def _skip_waiting(self) -> bool:
        if self.skip_waiting_hook is None:
            return False
        return await self.skip_waiting_hook()

    # ── Start / stop ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Begin background work, then drain the queue once if online."""
        if self.running:
            return
        self.running = True
        self.coordinator.start()
        if self._monitor.is_online:
            await self.coordinator.drain("startup")
        logger.info("engine_started", version=self.state.version)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        await self.coordinator.stop()
        await self.executor.wait_for_background()
        logger.info("engine_stopped", version=self.state.version)

    def status(self) -> dict[str, Any]:
        return {
            "version":     self.state.version,
            "lifecycle":   self.lifecycle.status.value if self.lifecycle.status else None,
            "coordinator": self.coordinator.state.value,
            "running":     self.running,
        }
