"""Tests for the control channel commands."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from cache_store import CacheStorage
from control import ControlChannel, parse_command
from database import Database
from errors import StorageError
from eviction import EvictionManager
from lifecycle import ClientRegistry, LifecycleManager
from models import (
    CacheEntry,
    CacheRole,
    CacheUrlsCommand,
    ClearCacheCommand,
    GetVersionCommand,
)
from state import EngineState

from conftest import ORIGIN, START, FakeNetwork


class _BrokenStorage(CacheStorage):
    async def keys(self) -> list[str]:
        raise StorageError("disk I/O error")

    async def delete(self, name: str) -> bool:
        raise StorageError("disk I/O error")


class TestParseCommand:

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ({"type": "GET_VERSION"}, GetVersionCommand),
            ({"type": "CLEAR_CACHE"}, ClearCacheCommand),
            ({"type": "CACHE_URLS", "urls": ["/a.css"]}, CacheUrlsCommand),
        ],
    )
    def test_known_commands(self, raw: dict, expected: type) -> None:
        assert isinstance(parse_command(raw), expected)

    @pytest.mark.parametrize(
        "raw",
        [
            {"type": "REBOOT"},
            {"type": "CACHE_URLS"},
            {"type": "CACHE_URLS", "urls": []},
            {},
        ],
    )
    def test_rejects_unknown_or_malformed(self, raw: dict) -> None:
        with pytest.raises(ValidationError):
            parse_command(raw)


@pytest.fixture
def promoted() -> list:
    return []


@pytest.fixture
def channel(
    state: EngineState, storage: CacheStorage, fetcher, eviction: EvictionManager, promoted: list
) -> ControlChannel:
    lifecycle = LifecycleManager(state, storage, fetcher, eviction, ClientRegistry())

    async def skip_waiting() -> bool:
        promoted.append(True)
        return True

    return ControlChannel(state, storage, lifecycle, eviction, skip_waiting)


class TestHandle:

    @pytest.mark.asyncio
    async def test_get_version(self, channel: ControlChannel) -> None:
        reply = await channel.handle(parse_command({"type": "GET_VERSION"}))
        assert reply == {"version": "v1.0.0", "cache": "portfolio-static-v1.0.0"}

    @pytest.mark.asyncio
    async def test_skip_waiting_calls_hook(self, channel: ControlChannel, promoted: list) -> None:
        reply = await channel.handle(parse_command({"type": "SKIP_WAITING"}))
        assert reply["promoted"] is True
        assert promoted == [True]

    @pytest.mark.asyncio
    async def test_clear_cache(self, channel: ControlChannel, storage: CacheStorage) -> None:
        await storage.open("portfolio-static-v1.0.0")
        await storage.open("portfolio-static-v0.1.0")

        reply = await channel.handle(parse_command({"type": "CLEAR_CACHE"}))

        assert reply["success"] is True
        assert await storage.keys() == []

    @pytest.mark.asyncio
    async def test_clear_cache_survives_storage_failure(
        self, state: EngineState, db: Database, fetcher, eviction: EvictionManager
    ) -> None:
        storage   = _BrokenStorage(db)
        lifecycle = LifecycleManager(state, storage, fetcher, eviction, ClientRegistry())

        async def skip_waiting() -> bool:
            return False

        channel = ControlChannel(state, storage, lifecycle, eviction, skip_waiting)

        reply = await channel.handle(parse_command({"type": "CLEAR_CACHE"}))

        assert reply["cleared"] == []

    @pytest.mark.asyncio
    async def test_cache_urls(
        self, channel: ControlChannel, storage: CacheStorage, state: EngineState,
        network: FakeNetwork,
    ) -> None:
        network.route(f"{ORIGIN}/css/extra.css", body=b"x")

        reply = await channel.handle(parse_command({"type": "CACHE_URLS", "urls": ["/css/extra.css"]}))

        assert reply == {"success": True, "cached": [f"{ORIGIN}/css/extra.css"]}
        static = await storage.open(state.cache_name(CacheRole.STATIC))
        assert await static.match(f"{ORIGIN}/css/extra.css") is not None

    @pytest.mark.asyncio
    async def test_get_cache_stats(
        self, channel: ControlChannel, storage: CacheStorage, state: EngineState
    ) -> None:
        cache = await storage.open(state.cache_name(CacheRole.IMAGE))
        await cache.put(CacheEntry(key="a.png", stored_at=START))
        state.counters.hits, state.counters.total = 1, 4

        reply = await channel.handle(parse_command({"type": "GET_CACHE_STATS"}))

        assert reply["counters"]["hits"] == 1
        assert reply["hit_rate"] == 0.25
        assert reply["caches"] == {"portfolio-image-v1.0.0": 1}

    @pytest.mark.asyncio
    async def test_cleanup_cache(
        self, channel: ControlChannel, storage: CacheStorage, state: EngineState
    ) -> None:
        cache = await storage.open(state.cache_name(CacheRole.API))
        await cache.put(CacheEntry(key="old", stored_at=None))

        reply = await channel.handle(parse_command({"type": "CLEANUP_CACHE"}))

        assert reply["removed"]["api"] == 1
