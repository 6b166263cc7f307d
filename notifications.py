"""
notifications.py
────────────────
User-facing notifications published by the engine.

The engine never renders anything itself; it publishes ``Notification``
records (queued, synced, terminal failure, connectivity change, controller
change) to registered listeners and keeps a bounded buffer of the most recent
ones for the host's ``GET /sw/notifications`` endpoint.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Callable, Optional

from config import NOTIFICATION_BUFFER_SIZE
from logging_config import get_logger
from models import Notification

logger = get_logger(__name__)

Listener = Callable[[Notification], None]


class Notifier:

    def __init__(self, buffer_size: int = NOTIFICATION_BUFFER_SIZE) -> None:
        self._listeners: list[Listener] = []
        self._recent: deque[Notification] = deque(maxlen=buffer_size)

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, level: str, event: str, message: str, **data: Any) -> Notification:
        note = Notification(level=level, event=event, message=message, data=data)
        self._recent.append(note)
        for listener in list(self._listeners):
            try:
                listener(note)
            except Exception as exc:  # noqa: BLE001
                logger.error("notification_listener_failed", event=event, error=str(exc))
        return note

    def recent(self, limit: Optional[int] = None) -> list[Notification]:
        """Most recent notifications, newest last."""
        items = list(self._recent)
        return items[-limit:] if limit else items

    def clear(self) -> None:
        self._recent.clear()
