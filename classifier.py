"""
classifier.py
─────────────
Map an intercepted request to the caching policy that serves it.

``classify()`` walks ``RULES``, an ordered table of ``(predicate, policy)``
pairs, and returns the policy of the first predicate that matches.  Non-GET
requests and non-http(s) URLs return ``None``: they are passed straight
through to the network and never touch a cache.

Rule order (first match wins):

    1. image extension / image directory   → image,   cache-first,   7 d
    2. static extension                    → static,  cache-first,  30 d
    3. API path / dynamic endpoint         → api,     network-first-with-cache, 5 min
    4. network-first integration prefix    → runtime, network-first, 5 min
    5. allow-listed CDN / font host        → runtime, stale-while-revalidate, 1 d
    6. anything else (documents)           → network-with-offline-fallback

Rules 1-4 only apply to the engine's own origin; absolute entries in
``NETWORK_FIRST_PREFIXES`` let rule 4 match third-party URLs as well.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlsplit

from config import (
    API_PATH_PREFIXES,
    DYNAMIC_ENDPOINTS,
    EXTERNAL_ORIGINS,
    IMAGE_DIRECTORIES,
    IMAGE_EXTENSIONS,
    MAX_AGE,
    NETWORK_FIRST_MAX_AGE,
    NETWORK_FIRST_PREFIXES,
    STATIC_EXTENSIONS,
)
from models import CacheRole, FetchRequest, Strategy, normalize_url


@dataclass(frozen=True)
class Policy:
    role:     Optional[CacheRole]
    strategy: Strategy
    max_age:  Optional[float]


@dataclass(frozen=True)
class _Target:
    url:         str
    path:        str
    host:        str
    same_origin: bool


Predicate = Callable[[_Target], bool]


def _extension(path: str) -> str:
    return posixpath.splitext(path.lower())[1]


def _is_image(t: _Target) -> bool:
    if not t.same_origin:
        return False
    path = t.path.lower()
    return _extension(path) in IMAGE_EXTENSIONS or path.startswith(IMAGE_DIRECTORIES)


def _is_static(t: _Target) -> bool:
    return t.same_origin and _extension(t.path) in STATIC_EXTENSIONS


def _is_api(t: _Target) -> bool:
    if not t.same_origin:
        return False
    return t.path.startswith(API_PATH_PREFIXES) or t.path in DYNAMIC_ENDPOINTS


def _is_network_first(t: _Target) -> bool:
    for prefix in NETWORK_FIRST_PREFIXES:
        if "://" in prefix:
            if t.url.startswith(prefix):
                return True
        elif t.same_origin and t.path.startswith(prefix):
            return True
    return False


def _is_external_cdn(t: _Target) -> bool:
    return not t.same_origin and t.host in EXTERNAL_ORIGINS


RULES: tuple[tuple[Predicate, Policy], ...] = (
    (_is_image,         Policy(CacheRole.IMAGE,   Strategy.CACHE_FIRST,              MAX_AGE["image"])),
    (_is_static,        Policy(CacheRole.STATIC,  Strategy.CACHE_FIRST,              MAX_AGE["static"])),
    (_is_api,           Policy(CacheRole.API,     Strategy.NETWORK_FIRST_WITH_CACHE, MAX_AGE["api"])),
    (_is_network_first, Policy(CacheRole.RUNTIME, Strategy.NETWORK_FIRST,            NETWORK_FIRST_MAX_AGE)),
    (_is_external_cdn,  Policy(CacheRole.RUNTIME, Strategy.STALE_WHILE_REVALIDATE,   MAX_AGE["runtime"])),
)

DEFAULT_POLICY = Policy(None, Strategy.NETWORK_WITH_OFFLINE_FALLBACK, None)


def classify(request: FetchRequest, origin: str) -> Optional[Policy]:
    """
    Return the ``Policy`` for ``request``, or ``None`` for pass-through.

    Pure: the same request and origin always yield the same policy.
    """
    if request.method != "GET":
        return None

    url   = request.identity
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return None

    own = urlsplit(normalize_url(origin))
    target = _Target(
        url=url,
        path=parts.path or "/",
        host=parts.hostname or "",
        same_origin=(parts.scheme, parts.netloc) == (own.scheme, own.netloc),
    )
    for predicate, policy in RULES:
        if predicate(target):
            return policy
    return DEFAULT_POLICY
