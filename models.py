"""
models.py
─────────
Pydantic V2 models shared by every engine component and the HTTP layer.

• Request / response snapshots that flow through the strategies.
• Cache and queue records as they are persisted.
• The closed set of control-channel commands (discriminated on ``type``).
• Uniform envelope for HTTP replies:  {ok, data, error, ts}.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field, field_validator

# ──────────────────────────────────────────────────────────────────────────────
# Enumerations
# ──────────────────────────────────────────────────────────────────────────────


class CacheRole(str, Enum):
    STATIC  = "static"
    IMAGE   = "image"
    RUNTIME = "runtime"
    API     = "api"
    OFFLINE = "offline"


class Strategy(str, Enum):
    CACHE_FIRST                   = "cache-first-with-expiry"
    NETWORK_FIRST_WITH_CACHE      = "network-first-with-cache"
    NETWORK_FIRST                 = "network-first"
    STALE_WHILE_REVALIDATE        = "stale-while-revalidate-with-expiry"
    NETWORK_WITH_OFFLINE_FALLBACK = "network-with-offline-fallback"


class ResponseSource(str, Enum):
    NETWORK   = "network"
    CACHE     = "cache"
    STALE     = "stale"
    SYNTHETIC = "synthetic"


class SubmissionKind(str, Enum):
    CONTACT   = "contact"
    FEEDBACK  = "feedback"
    GENERIC   = "generic"
    ANALYTICS = "analytics"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    FAILED  = "failed"
    SYNCED  = "synced"


# ──────────────────────────────────────────────────────────────────────────────
# URL identity
# ──────────────────────────────────────────────────────────────────────────────

_DEFAULT_PORTS = {"http": "80", "https": "443"}


def normalize_url(url: str) -> str:
    """
    Canonical absolute form used as the cache key.

    Lower-cases scheme and host, drops an explicit default port and the
    fragment, and gives an empty path a single ``/``.
    """
    parts  = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    host, _, port = netloc.rpartition(":")
    if host and port == _DEFAULT_PORTS.get(scheme):
        netloc = host
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


# ──────────────────────────────────────────────────────────────────────────────
# Request / response snapshots
# ──────────────────────────────────────────────────────────────────────────────


class FetchRequest(BaseModel):
    url:         str
    method:      str            = "GET"
    headers:     dict[str, str] = {}
    destination: str            = ""
    body:        bytes          = b""

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.upper()

    @field_validator("headers")
    @classmethod
    def lower_header_names(cls, v: dict[str, str]) -> dict[str, str]:
        return {k.lower(): val for k, val in v.items()}

    @property
    def identity(self) -> str:
        return normalize_url(self.url)

    @property
    def is_navigation(self) -> bool:
        """True for requests that load a top-level document."""
        if self.destination:
            return self.destination == "document"
        mode = self.headers.get("sec-fetch-mode", "")
        if mode == "navigate":
            return True
        return "text/html" in self.headers.get("accept", "")


class ResponseSnapshot(BaseModel):
    status:  int
    headers: dict[str, str]  = {}
    body:    bytes           = b""
    url:     str             = ""
    source:  ResponseSource  = ResponseSource.NETWORK

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class CacheEntry(BaseModel):
    key:       str
    status:    int             = 200
    headers:   dict[str, str]  = {}
    body:      bytes           = b""
    stored_at: Optional[float] = None

    def to_response(self, source: ResponseSource = ResponseSource.CACHE) -> ResponseSnapshot:
        return ResponseSnapshot(
            status=self.status,
            headers=dict(self.headers),
            body=self.body,
            url=self.key,
            source=source,
        )


# ──────────────────────────────────────────────────────────────────────────────
# Offline submission queue
# ──────────────────────────────────────────────────────────────────────────────


class FormSubmission(BaseModel):
    """A form-submit event as reported by the page."""

    kind:        SubmissionKind = SubmissionKind.CONTACT
    payload:     dict[str, str]
    destination: str
    method:      str            = "POST"
    online:      bool           = True

    @field_validator("destination")
    @classmethod
    def check_destination(cls, v: str) -> str:
        if urlsplit(v).scheme not in ("http", "https"):
            raise ValueError("destination must be an absolute http(s) URL.")
        return v


class QueuedSubmission(BaseModel):
    id:           str
    kind:         SubmissionKind
    payload:      dict[str, str]
    destination:  str
    method:       str              = "POST"
    enqueued_at:  float
    status:       SubmissionStatus = SubmissionStatus.PENDING
    retry_count:  int              = Field(default=0, ge=0)
    max_retries:  int              = Field(default=3, ge=1)
    backup:       bool             = False
    last_attempt: Optional[float]  = None
    error:        Optional[str]    = None


class QueueStats(BaseModel):
    total:   int             = 0
    pending: int             = 0
    failed:  int             = 0
    oldest:  Optional[float] = None


class DrainReport(BaseModel):
    trigger:   str
    attempted: int       = 0
    succeeded: int       = 0
    failed:    int       = 0
    exhausted: list[str] = []


# ──────────────────────────────────────────────────────────────────────────────
# Diagnostics
# ──────────────────────────────────────────────────────────────────────────────


class PerformanceCounters(BaseModel):
    hits:       int = 0
    misses:     int = 0
    total:      int = 0
    started_at: float

    @property
    def hit_rate(self) -> float:
        return self.hits / self.total if self.total else 0.0


class CacheStatsReply(BaseModel):
    counters: PerformanceCounters
    hit_rate: float
    caches:   dict[str, int]


class Notification(BaseModel):
    level:   Literal["info", "success", "warning", "error"]
    event:   str
    message: str
    data:    dict[str, Any] = {}
    ts:      datetime       = Field(default_factory=lambda: datetime.now(timezone.utc))


# ──────────────────────────────────────────────────────────────────────────────
# Control channel commands
# ──────────────────────────────────────────────────────────────────────────────


class SkipWaitingCommand(BaseModel):
    type: Literal["SKIP_WAITING"]


class GetVersionCommand(BaseModel):
    type: Literal["GET_VERSION"]


class ClearCacheCommand(BaseModel):
    type: Literal["CLEAR_CACHE"]


class CacheUrlsCommand(BaseModel):
    type: Literal["CACHE_URLS"]
    urls: list[str] = Field(min_length=1)


class GetCacheStatsCommand(BaseModel):
    type: Literal["GET_CACHE_STATS"]


class CleanupCacheCommand(BaseModel):
    type: Literal["CLEANUP_CACHE"]


ControlCommand = Annotated[
    Union[
        SkipWaitingCommand,
        GetVersionCommand,
        ClearCacheCommand,
        CacheUrlsCommand,
        GetCacheStatsCommand,
        CleanupCacheCommand,
    ],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────────────────────────────────────
# HTTP envelope / small request bodies
# ──────────────────────────────────────────────────────────────────────────────


class APIResponse(BaseModel):
    ok:    bool          = True
    data:  Optional[Any] = None
    error: Optional[str] = None
    ts:    datetime      = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def success(cls, data: Any = None) -> "APIResponse":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, message: str) -> "APIResponse":
        return cls(ok=False, error=message)


class ConnectivityEvent(BaseModel):
    online: bool


class UpdateRequest(BaseModel):
    version: Annotated[str, Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9._\-]+$")]
