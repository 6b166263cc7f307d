"""
Pytest configuration and shared fixtures for the offline engine tests.

The network is an ``httpx.MockTransport`` driven by ``FakeNetwork``; time is
a ``FakeClock`` injected wherever the engine reads the clock; storage is an
in-memory SQLite database created fresh for each test.
"""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from cache_store import CacheStorage
from database import Database
from eviction import EvictionManager
from network import Fetcher
from state import EngineState

ORIGIN = "http://portfolio.test"
START  = 1_700_000_000.0


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNetwork:
    """
    Scripted origin behind an ``httpx.MockTransport``.

    Unknown URLs answer 404.  ``offline = True`` makes every request fail at
    the transport level; ``fail_urls`` does the same for individual URLs.
    """

    def __init__(self) -> None:
        self.routes:    dict[str, tuple[int, bytes, dict[str, str]]] = {}
        self.calls:     list[httpx.Request] = []
        self.fail_urls: set[str] = set()
        self.offline = False
        self.delay   = 0.0
        self.transport = httpx.MockTransport(self.handler)

    def route(
        self,
        url:     str,
        status:  int = 200,
        body:    bytes = b"ok",
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.routes[url] = (status, body, headers or {"content-type": "text/plain"})

    def count(self, url: str, method: Optional[str] = None) -> int:
        return sum(
            1 for r in self.calls
            if str(r.url) == url and (method is None or r.method == method)
        )

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        url = str(request.url)
        if self.offline or url in self.fail_urls:
            raise httpx.ConnectError("network unreachable", request=request)
        if self.delay:
            await asyncio.sleep(self.delay)
        status, body, headers = self.routes.get(url, (404, b"not found", {}))
        return httpx.Response(status, content=body, headers=headers)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def storage(db: Database, clock: FakeClock) -> CacheStorage:
    return CacheStorage(db, clock=clock)


@pytest.fixture
def state(clock: FakeClock) -> EngineState:
    return EngineState(version="v1.0.0", origin=ORIGIN, clock=clock)


@pytest.fixture
def eviction(state: EngineState, storage: CacheStorage) -> EvictionManager:
    return EvictionManager(state, storage)


@pytest_asyncio.fixture
async def fetcher(network: FakeNetwork):
    f = Fetcher(httpx.AsyncClient(transport=network.transport))
    yield f
    await f.aclose()
