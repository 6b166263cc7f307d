"""
logging_config.py
─────────────────
Structured JSON logging for the offline engine.

Every log record is emitted as a single JSON line so that request traces,
eviction sweeps and queue drains can be grepped or shipped to an aggregator
without parsing free text.

Usage
-----
    from logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("cache_hit", url="https://example.com/css/site.css", role="static")

Keyword fields are folded into the record (``extra``) by ``_FieldLogger`` and
rendered as top-level keys by ``_JSONFormatter``.
"""

import json
import logging
import time
from typing import Any, MutableMapping


class _JSONFormatter(logging.Formatter):
    """Emit each record as a single compact JSON object."""

    _RESERVED = frozenset(
        ("name", "msg", "args", "levelname", "levelno", "pathname",
         "filename", "module", "exc_info", "exc_text", "stack_info",
         "lineno", "funcName", "created", "msecs", "relativeCreated",
         "thread", "threadName", "processName", "process", "message",
         "taskName")
    )

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        record.message = record.getMessage()
        payload: dict[str, Any] = {
            "ts":      time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level":   record.levelname,
            "logger":  record.name,
            "msg":     record.message,
            "module":  record.module,
            "line":    record.lineno,
        }
        for key, val in record.__dict__.items():
            if key not in self._RESERVED and not key.startswith("_"):
                payload[key] = val

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)


class _FieldLogger(logging.LoggerAdapter):
    """
    Accept arbitrary keyword fields on every log call.

    ``logger.warning("eviction_failed", role="image", error="disk I/O")``
    becomes a record whose ``extra`` carries ``role`` and ``error``.
    Standard keywords (``exc_info``, ``stack_info``, ``stacklevel``) pass
    through untouched.
    """

    _PASSTHROUGH = frozenset(("exc_info", "stack_info", "stacklevel", "extra"))

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in self._PASSTHROUGH}
        extra = dict(kwargs.get("extra") or {})
        extra.update(fields)
        kwargs["extra"] = extra
        return msg, kwargs


def configure_logging(level: str = "INFO") -> None:
    """
    Call once at application startup (the FastAPI lifespan in main.py).
    Replaces the root handler's formatter with the JSON one.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not root.handlers:
        handler = logging.StreamHandler()
    else:
        handler = root.handlers[0]

    handler.setFormatter(_JSONFormatter())
    if handler not in root.handlers:
        root.addHandler(handler)

    for lib in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(lib).setLevel(logging.WARNING)


def get_logger(name: str) -> _FieldLogger:
    """Return a named logger that accepts keyword fields."""
    return _FieldLogger(logging.getLogger(name), {})
