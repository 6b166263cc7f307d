"""Tests for the caching strategies."""

from __future__ import annotations

import json

import httpx
import pytest

from cache_store import CacheStorage
from classifier import classify
from config import DAY, HOUR, NETWORK_FIRST_TIMEOUT, OFFLINE_PAGE
from eviction import EvictionManager
from models import CacheEntry, CacheRole, FetchRequest, ResponseSource
from network import Fetcher
from state import EngineState
from strategies import StrategyExecutor

from conftest import ORIGIN, START, FakeClock, FakeNetwork

CSS = f"{ORIGIN}/css/modern-style.css"
API = f"{ORIGIN}/api/projects"
CDN = "https://fonts.googleapis.com/css2?family=Inter"
DOC = f"{ORIGIN}/about"


@pytest.fixture
def executor(
    state: EngineState, storage: CacheStorage, fetcher: Fetcher, eviction: EvictionManager
) -> StrategyExecutor:
    return StrategyExecutor(state, storage, fetcher, eviction, network_timeout=0.2)


async def _seed(storage: CacheStorage, state: EngineState, role: CacheRole, url: str,
                body: bytes, stored_at) -> None:
    cache = await storage.open(state.cache_name(role))
    await cache.put(CacheEntry(key=url, body=body, stored_at=stored_at))


async def _serve(executor: StrategyExecutor, url: str, **kwargs):
    request = FetchRequest(url=url, **kwargs)
    return await executor.execute(request, classify(request, ORIGIN))


class TestCacheFirst:

    @pytest.mark.asyncio
    async def test_fresh_entry_is_served_without_network(
        self, executor, storage, state, network: FakeNetwork
    ) -> None:
        """A static asset cached 29 days ago is served from cache."""
        await _seed(storage, state, CacheRole.STATIC, CSS, b"cached", START - 29 * DAY)

        response = await _serve(executor, CSS)

        assert response.body == b"cached"
        assert response.source is ResponseSource.CACHE
        assert network.calls == []

    @pytest.mark.asyncio
    async def test_expired_entry_is_refreshed_with_one_call(
        self, executor, storage, state, network: FakeNetwork, clock: FakeClock
    ) -> None:
        """The same asset cached 31 days ago triggers exactly one fetch and a new timestamp."""
        await _seed(storage, state, CacheRole.STATIC, CSS, b"old", START - 31 * DAY)
        network.route(CSS, body=b"new")

        response = await _serve(executor, CSS)

        assert response.body == b"new"
        assert network.count(CSS) == 1
        entry = await (await storage.open(state.cache_name(CacheRole.STATIC))).match(CSS)
        assert entry.body == b"new"
        assert entry.stored_at == clock.now

    @pytest.mark.asyncio
    async def test_expired_entry_served_stale_when_offline(
        self, executor, storage, state, network: FakeNetwork
    ) -> None:
        await _seed(storage, state, CacheRole.STATIC, CSS, b"old", START - 31 * DAY)
        network.offline = True

        response = await _serve(executor, CSS)

        assert response.body == b"old"
        assert response.source is ResponseSource.STALE

    @pytest.mark.asyncio
    async def test_miss_while_offline_is_408(self, executor, network: FakeNetwork) -> None:
        network.offline = True

        response = await _serve(executor, CSS)

        assert response.status == 408
        assert response.body == b"Offline"
        assert response.source is ResponseSource.SYNTHETIC

    @pytest.mark.asyncio
    async def test_each_write_enforces_the_role_cap(
        self, state, storage, fetcher, network: FakeNetwork, clock: FakeClock
    ) -> None:
        """Serving a third asset into a static cache capped at two drops the oldest."""
        # Given: a static cap of two entries
        eviction = EvictionManager(state, storage, caps={"static": 2})
        executor = StrategyExecutor(state, storage, fetcher, eviction)
        urls = [f"{ORIGIN}/css/{name}.css" for name in ("a", "b", "c")]
        for url in urls:
            network.route(url, body=url.encode())

        # When: three distinct assets are fetched one second apart
        for url in urls:
            await _serve(executor, url)
            clock.advance(1)

        # Then: only the two most recent writes remain
        static = await storage.open(state.cache_name(CacheRole.STATIC))
        assert await static.keys() == urls[1:]

    @pytest.mark.asyncio
    async def test_non_200_is_returned_but_not_stored(
        self, executor, storage, state, network: FakeNetwork
    ) -> None:
        network.route(CSS, status=500, body=b"boom")

        response = await _serve(executor, CSS)

        assert response.status == 500
        assert await (await storage.open(state.cache_name(CacheRole.STATIC))).match(CSS) is None


class TestNetworkFirst:

    @pytest.mark.asyncio
    async def test_live_response_overwrites_cache(
        self, executor, storage, state, network: FakeNetwork
    ) -> None:
        await _seed(storage, state, CacheRole.API, API, b"old", START - HOUR)
        network.route(API, body=b'{"live": true}')

        response = await _serve(executor, API)

        assert response.body == b'{"live": true}'
        entry = await (await storage.open(state.cache_name(CacheRole.API))).match(API)
        assert entry.body == b'{"live": true}'
        assert entry.stored_at == START

    @pytest.mark.asyncio
    async def test_failure_serves_two_hour_old_copy(
        self, executor, storage, state, network: FakeNetwork
    ) -> None:
        """An API response cached 2 hours ago beats an error when the network is down."""
        await _seed(storage, state, CacheRole.API, API, b"stale-but-useful", START - 2 * HOUR)
        network.fail_urls.add(API)

        response = await _serve(executor, API)

        assert response.status == 200
        assert response.body == b"stale-but-useful"
        assert network.count(API) == 1

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_cache(
        self, executor, storage, state, network: FakeNetwork
    ) -> None:
        await _seed(storage, state, CacheRole.API, API, b"cached", START - HOUR)
        network.route(API, body=b"too late")
        network.delay = 1.0

        response = await _serve(executor, API)

        assert response.body == b"cached"

    @pytest.mark.asyncio
    async def test_cutoff_overrides_client_transport_timeout(
        self, state, storage, eviction, network: FakeNetwork
    ) -> None:
        """The 10 s cutoff is sent with the request, not left to the client's 5 s default."""
        network.route(API, body=b'{"live": true}')
        async with httpx.AsyncClient(transport=network.transport) as client:
            executor = StrategyExecutor(state, storage, Fetcher(client), eviction)

            response = await _serve(executor, API)

        assert response.body == b'{"live": true}'
        timeout = network.calls[-1].extensions["timeout"]
        assert timeout["read"] == NETWORK_FIRST_TIMEOUT
        assert timeout["connect"] == NETWORK_FIRST_TIMEOUT

    @pytest.mark.asyncio
    async def test_failure_without_cache_is_typed_offline_payload(
        self, executor, network: FakeNetwork
    ) -> None:
        network.offline = True

        response = await _serve(executor, API)

        assert response.status == 408
        payload = json.loads(response.body)
        assert payload["ok"] is False
        assert payload["error"] == "offline"
        assert payload["url"] == API


class TestStaleWhileRevalidate:

    @pytest.mark.asyncio
    async def test_fresh_entry_no_network(self, executor, storage, state, network) -> None:
        await _seed(storage, state, CacheRole.RUNTIME, CDN, b"fonts", START - HOUR)

        response = await _serve(executor, CDN)

        assert response.body == b"fonts"
        assert network.calls == []

    @pytest.mark.asyncio
    async def test_stale_entry_served_and_refreshed_in_background(
        self, executor: StrategyExecutor, storage, state, network: FakeNetwork
    ) -> None:
        await _seed(storage, state, CacheRole.RUNTIME, CDN, b"old-fonts", START - 2 * DAY)
        network.route(CDN, body=b"new-fonts")

        response = await _serve(executor, CDN)
        assert response.body == b"old-fonts"
        assert response.source is ResponseSource.STALE

        await executor.wait_for_background()
        entry = await (await storage.open(state.cache_name(CacheRole.RUNTIME))).match(CDN)
        assert entry.body == b"new-fonts"
        assert network.count(CDN) == 1

    @pytest.mark.asyncio
    async def test_miss_blocks_on_network(self, executor, storage, state, network) -> None:
        network.route(CDN, body=b"fetched")

        response = await _serve(executor, CDN)

        assert response.body == b"fetched"
        assert await (await storage.open(state.cache_name(CacheRole.RUNTIME))).match(CDN) is not None


class TestOfflineFallback:

    @pytest.mark.asyncio
    async def test_network_success_is_returned_uncached(self, executor, storage, network) -> None:
        network.route(DOC, body=b"<html>about</html>")

        response = await _serve(executor, DOC)

        assert response.body == b"<html>about</html>"
        assert await storage.keys() == []

    @pytest.mark.asyncio
    async def test_navigation_gets_offline_page(self, executor, storage, state, network) -> None:
        await _seed(storage, state, CacheRole.OFFLINE, ORIGIN + OFFLINE_PAGE, b"<h1>offline</h1>", START)
        network.offline = True

        response = await _serve(executor, DOC, destination="document")

        assert response.body == b"<h1>offline</h1>"

    @pytest.mark.asyncio
    async def test_navigation_detected_from_accept_header(self, executor, storage, state, network) -> None:
        await _seed(storage, state, CacheRole.OFFLINE, ORIGIN + OFFLINE_PAGE, b"offline", START)
        network.offline = True

        response = await _serve(executor, DOC, headers={"Accept": "text/html,application/xhtml+xml"})

        assert response.body == b"offline"

    @pytest.mark.asyncio
    async def test_subresource_uses_any_cached_copy(self, executor, storage, state, network) -> None:
        url = f"{ORIGIN}/manifest.webmanifest"
        await _seed(storage, state, CacheRole.STATIC, url, b"{}", START - 400 * DAY)
        network.offline = True

        response = await _serve(executor, url)

        assert response.body == b"{}"

    @pytest.mark.asyncio
    async def test_subresource_without_copy_is_408(self, executor, network) -> None:
        network.offline = True

        response = await _serve(executor, f"{ORIGIN}/manifest.webmanifest")

        assert response.status == 408


class TestInstrumentation:

    @pytest.mark.asyncio
    async def test_lookups_update_counters(self, executor, storage, state, network) -> None:
        await _seed(storage, state, CacheRole.STATIC, CSS, b"cached", START)
        network.route(f"{ORIGIN}/css/other.css", body=b"x")

        await _serve(executor, CSS)
        await _serve(executor, f"{ORIGIN}/css/other.css")

        assert state.counters.total == 2
        assert state.counters.hits == 1
        assert state.counters.misses == 1
        assert state.counters.hit_rate == 0.5
