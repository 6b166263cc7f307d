"""
errors.py
─────────
Exception taxonomy for the offline engine.

Only ``QueueError`` and ``InstallError`` are meant to reach a caller outside
the engine: everything else is caught inside the component that raised it and
degraded to a cache fallback, a miss or a no-op.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by the engine."""


class NetworkError(EngineError):
    """A fetch failed at the transport level or exceeded its cutoff."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url    = url
        self.reason = reason


class StorageError(EngineError):
    """The embedded database rejected a read or write."""


class QueueError(StorageError):
    """A submission could not be persisted; the user's data was not saved."""


class UnknownSubmissionError(EngineError):
    """No queued submission exists with the given id."""

    def __init__(self, submission_id: str) -> None:
        super().__init__(f"submission not found: {submission_id}")
        self.submission_id = submission_id


class InstallError(EngineError):
    """A critical precache step failed; the version must not activate."""
