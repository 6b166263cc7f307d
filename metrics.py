"""
metrics.py
──────────
Hit/miss instrumentation for cache reads.

``instrument_lookup`` wraps the Strategy Executor's cache-read call: every
lookup bumps ``EngineState.counters`` and every ``HIT_RATE_REPORT_INTERVAL``
lookups the running hit rate is logged.
"""

from __future__ import annotations

import functools
from typing import Awaitable, Callable, Optional

from config import HIT_RATE_REPORT_INTERVAL
from logging_config import get_logger
from models import CacheEntry
from state import EngineState

logger = get_logger(__name__)

Lookup = Callable[..., Awaitable[Optional[CacheEntry]]]


def instrument_lookup(read: Lookup, state: EngineState) -> Lookup:
    """Return ``read`` wrapped so that each call updates the performance counters."""

    @functools.wraps(read)
    async def _counted(*args, **kwargs) -> Optional[CacheEntry]:
        entry    = await read(*args, **kwargs)
        counters = state.counters
        counters.total += 1
        if entry is not None:
            counters.hits += 1
        else:
            counters.misses += 1

        if counters.total % HIT_RATE_REPORT_INTERVAL == 0:
            logger.info(
                "cache_hit_rate",
                hit_rate=round(counters.hit_rate * 100, 1),
                hits=counters.hits,
                misses=counters.misses,
                total=counters.total,
            )
        return entry

    return _counted
