"""
control.py
──────────
Request/response control channel between a page and an engine version.

Commands are the closed ``ControlCommand`` union from models.py, validated
from raw JSON by ``parse_command`` and dispatched with an exhaustive
``match``: adding a command without handling it fails type checking at the
``assert_never`` arm.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, assert_never

from pydantic import TypeAdapter

from cache_store import CacheStorage
from errors import StorageError
from eviction import EvictionManager
from lifecycle import LifecycleManager
from logging_config import get_logger
from models import (
    CacheRole,
    CacheStatsReply,
    CacheUrlsCommand,
    CleanupCacheCommand,
    ClearCacheCommand,
    ControlCommand,
    GetCacheStatsCommand,
    GetVersionCommand,
    SkipWaitingCommand,
)
from state import EngineState

logger = get_logger(__name__)

_command_adapter: TypeAdapter[ControlCommand] = TypeAdapter(ControlCommand)


def parse_command(data: Any) -> ControlCommand:
    """Validate a raw message.  Raises ``pydantic.ValidationError`` for unknown or malformed input."""
    return _command_adapter.validate_python(data)


class ControlChannel:

    def __init__(
        self,
        state:        EngineState,
        storage:      CacheStorage,
        lifecycle:    LifecycleManager,
        eviction:     EvictionManager,
        skip_waiting: Callable[[], Awaitable[bool]],
    ) -> None:
        self._state        = state
        self._storage      = storage
        self._lifecycle    = lifecycle
        self._eviction     = eviction
        self._skip_waiting = skip_waiting

    async def handle(self, command: ControlCommand) -> dict[str, Any]:
        logger.info("control_command", command=command.type, version=self._state.version)
        match command:
            case SkipWaitingCommand():
                promoted = await self._skip_waiting()
                return {"success": True, "promoted": promoted}
            case GetVersionCommand():
                return {
                    "version": self._state.version,
                    "cache":   self._state.cache_name(CacheRole.STATIC),
                }
            case ClearCacheCommand():
                cleared = await self._lifecycle.clear_all()
                return {"success": True, "cleared": cleared}
            case CacheUrlsCommand(urls=urls):
                cached = await self._lifecycle.cache_urls(urls)
                return {"success": len(cached) == len(urls), "cached": cached}
            case GetCacheStatsCommand():
                return (await self.cache_stats()).model_dump()
            case CleanupCacheCommand():
                removed = await self._eviction.sweep()
                return {"success": True, "removed": removed}
            case _:
                assert_never(command)

    async def cache_stats(self) -> CacheStatsReply:
        counters = self._state.counters
        caches: dict[str, int] = {}
        try:
            existing = set(await self._storage.keys())
            for role in CacheRole:
                name = self._state.cache_name(role)
                if name in existing:
                    caches[name] = await (await self._storage.open(name)).count()
        except StorageError as exc:
            logger.warning("cache_stats_failed", error=str(exc))
        return CacheStatsReply(
            counters=counters.model_copy(),
            hit_rate=counters.hit_rate,
            caches=caches,
        )
