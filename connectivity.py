"""
connectivity.py
───────────────
Online / offline state for the engine.

State changes arrive two ways: explicit connectivity events from the page
(``set_online``), or an active probe of the origin (``check``).  Registered
callbacks run on every *change*; a repeated event with the same state is
ignored.  Callbacks may be plain functions or coroutines.
"""

from __future__ import annotations

import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from logging_config import get_logger

logger = get_logger(__name__)

PROBE_TIMEOUT = 5.0

Callback = Callable[[bool], Any]


@dataclass
class ConnectionState:
    online:               bool            = True
    last_change:          Optional[float] = None
    consecutive_failures: int             = 0


class ConnectionMonitor:

    def __init__(
        self,
        online:    bool = True,
        probe_url: Optional[str] = None,
        client:    Optional[httpx.AsyncClient] = None,
        clock:     Callable[[], float] = time.time,
    ) -> None:
        self._state     = ConnectionState(online=online)
        self._probe_url = probe_url
        self._client    = client
        self._clock     = clock
        self._callbacks: list[Callback] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state.online

    def register_callback(self, callback: Callback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def set_online(self, online: bool) -> bool:
        """Record the new state.  Returns True when it differed from the old one."""
        if online == self._state.online:
            return False
        self._state.online = online
        self._state.last_change = self._clock()
        logger.info("connectivity_changed", online=online)
        await self._notify_callbacks(online)
        return True

    async def _notify_callbacks(self, online: bool) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(online)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                logger.error("connectivity_callback_failed", error=str(exc))

    async def check(self) -> bool:
        """
        Probe the origin with a HEAD request and update the state.

        Without a probe URL or client the current state is returned unchanged.
        Any HTTP answer counts as online; only transport errors mean offline.
        """
        if self._probe_url is None or self._client is None:
            return self._state.online
        try:
            await self._client.head(self._probe_url, timeout=PROBE_TIMEOUT)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            self._state.consecutive_failures += 1
            logger.warning(
                "connectivity_probe_failed",
                url=self._probe_url,
                failures=self._state.consecutive_failures,
                error=str(exc),
            )
            await self.set_online(False)
            return False
        self._state.consecutive_failures = 0
        await self.set_online(True)
        return True
