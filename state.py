"""
state.py
────────
Per-version engine context passed explicitly to every component.

Holds what would otherwise be module globals: the running version tag, the
cache names derived from it, the origin the engine fronts, the clock and the
process-wide performance counters.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from config import CACHE_PREFIX
from models import CacheRole, PerformanceCounters, normalize_url


@dataclass
class EngineState:
    version:  str
    origin:   str
    clock:    Callable[[], float] = time.time
    counters: PerformanceCounters = field(init=False)

    def __post_init__(self) -> None:
        self.origin   = self.origin.rstrip("/")
        self.counters = PerformanceCounters(started_at=self.clock())

    def now(self) -> float:
        return self.clock()

    def cache_name(self, role: CacheRole) -> str:
        return f"{CACHE_PREFIX}-{role.value}-{self.version}"

    def expected_cache_names(self) -> set[str]:
        return {self.cache_name(role) for role in CacheRole}

    def absolute(self, path_or_url: str) -> str:
        """Resolve a manifest path against the origin; absolute URLs pass through."""
        if "://" in path_or_url:
            return normalize_url(path_or_url)
        return normalize_url(self.origin + path_or_url)

    def reset_counters(self) -> None:
        self.counters = PerformanceCounters(started_at=self.clock())
