"""
config.py
─────────
Caching policy constants and runtime settings.

Constants are the engine's fixed policy (ages, caps, manifests, path
conventions).  ``load_settings()`` reads the deployment-specific values from
the environment every time it is called so tests can patch ``os.environ``
without reloading the module.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

# ──────────────────────────────────────────────────────────────────────────────
# Versioning
# ──────────────────────────────────────────────────────────────────────────────

CACHE_VERSION = "v1.0.0"
CACHE_PREFIX  = "portfolio"

# ──────────────────────────────────────────────────────────────────────────────
# Expiry (seconds) and per-role entry caps
# ──────────────────────────────────────────────────────────────────────────────

MINUTE = 60
HOUR   = 60 * MINUTE
DAY    = 24 * HOUR

MAX_AGE: dict[str, int] = {
    "image":   7 * DAY,
    "static":  30 * DAY,
    "api":     5 * MINUTE,
    "runtime": 1 * DAY,
}

NETWORK_FIRST_MAX_AGE = 5 * MINUTE

MAX_ENTRIES: dict[str, int] = {
    "static":  50,
    "image":   100,
    "runtime": 50,
    "api":     20,
}

# ──────────────────────────────────────────────────────────────────────────────
# Precache manifest
# ──────────────────────────────────────────────────────────────────────────────

OFFLINE_PAGE = "/offline.html"

PRECACHE_MANIFEST: dict[str, tuple[str, ...]] = {
    "static": (
        "/",
        "/index.html",
        "/css/reset.css",
        "/css/modern-style.css",
        "/js/modern-script.js",
        "/js/contact-form.js",
        "/js/security.js",
    ),
    "image": (
        "/img/favicon.ico",
        "/img/ogp.png",
    ),
}

# ──────────────────────────────────────────────────────────────────────────────
# Classification tables
# ──────────────────────────────────────────────────────────────────────────────

IMAGE_EXTENSIONS = frozenset(
    (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".avif", ".bmp")
)
IMAGE_DIRECTORIES = ("/img/", "/images/", "/assets/images/")

STATIC_EXTENSIONS = frozenset(
    (".css", ".js", ".mjs", ".woff", ".woff2", ".ttf", ".otf", ".eot", ".json")
)

API_PATH_PREFIXES = ("/api/",)
DYNAMIC_ENDPOINTS = ("/contact", "/search")

NETWORK_FIRST_PREFIXES = (
    "/.netlify/",
    "/emailjs/",
    "https://api.emailjs.com/",
)

EXTERNAL_ORIGINS = frozenset((
    "fonts.googleapis.com",
    "fonts.gstatic.com",
    "cdnjs.cloudflare.com",
    "unpkg.com",
    "cdn.jsdelivr.net",
))

# ──────────────────────────────────────────────────────────────────────────────
# Timing / queue
# ──────────────────────────────────────────────────────────────────────────────

NETWORK_FIRST_TIMEOUT    = 10.0   # hard cutoff, no retries
FALLBACK_SYNC_INTERVAL   = 30.0
DEFAULT_MAX_RETRIES      = 3
HIT_RATE_REPORT_INTERVAL = 100
NOTIFICATION_BUFFER_SIZE = 50

SYNC_FORM_KINDS = ("contact", "feedback", "generic")


# ──────────────────────────────────────────────────────────────────────────────
# Runtime settings
# ──────────────────────────────────────────────────────────────────────────────

def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    origin:                    str  = "http://localhost:8080"
    db_path:                   str  = "offline_engine.db"
    cache_version:             str  = CACHE_VERSION
    log_level:                 str  = "INFO"
    background_sync_supported: bool = False
    backup_submissions:        bool = True


def load_settings() -> Settings:
    """Build a ``Settings`` snapshot from the current environment."""
    return Settings(
        origin=os.getenv("ENGINE_ORIGIN", "http://localhost:8080").rstrip("/"),
        db_path=os.getenv("ENGINE_DB_PATH", "offline_engine.db"),
        cache_version=os.getenv("ENGINE_CACHE_VERSION", CACHE_VERSION),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        background_sync_supported=_env_flag("ENGINE_BACKGROUND_SYNC", "false"),
        backup_submissions=_env_flag("ENGINE_BACKUP_SUBMISSIONS", "true"),
    )
