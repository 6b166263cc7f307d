"""
offline_queue.py
────────────────
Durable queue of form submissions waiting for delivery.

Two layers:

• ``SubmissionRepository``: awaitable ``get / put / delete / list_by_index``
  over the ``submissions`` table.  Hides SQLite entirely; every storage
  failure surfaces as ``StorageError``.
• ``SubmissionQueue``: the queue contract used by the form handler and the
  sync coordinator: ``enqueue``, ``list_pending``, ``mark_status``,
  ``remove``, plus ``stats`` and ``clear_all``.

Retry bookkeeping
─────────────────
``mark_status(id, FAILED, error)`` increments ``retry_count`` (never past
``max_retries``).  Below the cap the record goes back to ``pending``; at the
cap it becomes ``failed``, which is terminal: it no longer appears in
``list_pending()`` and the caller removes it and tells the user.  The
read-modify-write runs in one transaction so it is atomic per record.
"""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from typing import Callable, Iterable, Optional

from config import DEFAULT_MAX_RETRIES
from errors import QueueError, StorageError, UnknownSubmissionError
from logging_config import get_logger
from models import (
    FormSubmission,
    QueuedSubmission,
    QueueStats,
    SubmissionKind,
    SubmissionStatus,
)

logger = get_logger(__name__)

_INDEXES = {
    "status":      "status",
    "enqueued_at": "enqueued_at",
    "kind":        "kind",
}

_COLUMNS = (
    "id", "kind", "payload_json", "destination", "method", "enqueued_at",
    "status", "retry_count", "max_retries", "backup", "last_attempt", "error",
)


def _to_row(item: QueuedSubmission) -> tuple:
    return (
        item.id,
        item.kind.value,
        json.dumps(item.payload, ensure_ascii=False),
        item.destination,
        item.method,
        item.enqueued_at,
        item.status.value,
        item.retry_count,
        item.max_retries,
        int(item.backup),
        item.last_attempt,
        item.error,
    )


def _from_row(row: sqlite3.Row) -> QueuedSubmission:
    return QueuedSubmission(
        id=row["id"],
        kind=SubmissionKind(row["kind"]),
        payload=json.loads(row["payload_json"]),
        destination=row["destination"],
        method=row["method"],
        enqueued_at=row["enqueued_at"],
        status=SubmissionStatus(row["status"]),
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        backup=bool(row["backup"]),
        last_attempt=row["last_attempt"],
        error=row["error"],
    )


# ──────────────────────────────────────────────────────────────────────────────
# Repository
# ──────────────────────────────────────────────────────────────────────────────

class SubmissionRepository:

    def __init__(self, db) -> None:
        self._db = db

    async def get(self, submission_id: str) -> Optional[QueuedSubmission]:
        def _get(conn: sqlite3.Connection) -> Optional[QueuedSubmission]:
            row = conn.execute("SELECT * FROM submissions WHERE id = ?", (submission_id,)).fetchone()
            return _from_row(row) if row else None

        return await self._db.run(_get)

    async def put(self, item: QueuedSubmission) -> None:
        placeholders = ", ".join("?" for _ in _COLUMNS)

        def _put(conn: sqlite3.Connection) -> None:
            conn.execute(
                f"INSERT OR REPLACE INTO submissions ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                _to_row(item),
            )

        await self._db.write(_put)

    async def delete(self, submission_id: str) -> bool:
        def _delete(conn: sqlite3.Connection) -> bool:
            return conn.execute("DELETE FROM submissions WHERE id = ?", (submission_id,)).rowcount > 0

        return await self._db.write(_delete)

    async def list_by_index(
        self,
        index: str,
        value: Optional[object] = None,
    ) -> list[QueuedSubmission]:
        """
        Records ordered by ``index``; with ``value`` only those whose indexed
        column equals it.  Ties always fall back to ``enqueued_at`` order.
        """
        column = _INDEXES.get(index)
        if column is None:
            raise ValueError(f"unknown index: {index}")

        def _list(conn: sqlite3.Connection) -> list[QueuedSubmission]:
            if value is None:
                sql, params = f"SELECT * FROM submissions ORDER BY {column}, enqueued_at, rowid", ()
            else:
                sql    = f"SELECT * FROM submissions WHERE {column} = ? ORDER BY enqueued_at, rowid"
                params = (getattr(value, "value", value),)
            return [_from_row(row) for row in conn.execute(sql, params).fetchall()]

        return await self._db.run(_list)

    async def update(
        self,
        submission_id: str,
        mutate: Callable[[QueuedSubmission], QueuedSubmission],
    ) -> QueuedSubmission:
        """Atomic read-modify-write of one record.  Raises ``UnknownSubmissionError``."""
        def _update(conn: sqlite3.Connection) -> QueuedSubmission:
            row = conn.execute("SELECT * FROM submissions WHERE id = ?", (submission_id,)).fetchone()
            if row is None:
                raise UnknownSubmissionError(submission_id)
            updated = mutate(_from_row(row))
            conn.execute(
                """
                UPDATE submissions
                   SET status = ?, retry_count = ?, last_attempt = ?, error = ?
                 WHERE id = ?
                """,
                (
                    updated.status.value,
                    updated.retry_count,
                    updated.last_attempt,
                    updated.error,
                    submission_id,
                ),
            )
            return updated

        return await self._db.write(_update)

    async def clear(self) -> int:
        def _clear(conn: sqlite3.Connection) -> int:
            return conn.execute("DELETE FROM submissions").rowcount

        return await self._db.write(_clear)


# ──────────────────────────────────────────────────────────────────────────────
# Queue
# ──────────────────────────────────────────────────────────────────────────────

class SubmissionQueue:

    def __init__(
        self,
        repository:  SubmissionRepository,
        clock:       Callable[[], float] = time.time,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self._repo        = repository
        self._clock       = clock
        self._max_retries = max_retries

    async def enqueue(self, submission: FormSubmission, backup: bool = False) -> QueuedSubmission:
        """
        Persist ``submission`` as a new pending record and return it.

        Raises ``QueueError`` if it could not be stored: the caller must tell
        the user their submission was not saved.
        """
        item = QueuedSubmission(
            id=uuid.uuid4().hex,
            kind=submission.kind,
            payload=submission.payload,
            destination=submission.destination,
            method=submission.method.upper(),
            enqueued_at=self._clock(),
            max_retries=self._max_retries,
            backup=backup,
        )
        try:
            await self._repo.put(item)
        except StorageError as exc:
            logger.error("enqueue_failed", kind=submission.kind.value, error=str(exc))
            raise QueueError(f"submission could not be saved: {exc}") from exc

        logger.info("submission_enqueued", submission_id=item.id, kind=item.kind.value, backup=backup)
        return item

    async def list_pending(
        self, kinds: Optional[Iterable[SubmissionKind]] = None
    ) -> list[QueuedSubmission]:
        """Pending submissions, oldest first, optionally restricted to ``kinds``."""
        pending = await self._repo.list_by_index("status", SubmissionStatus.PENDING)
        if kinds is None:
            return pending
        wanted = set(kinds)
        return [item for item in pending if item.kind in wanted]

    async def mark_status(
        self,
        submission_id: str,
        status: SubmissionStatus,
        error: Optional[str] = None,
    ) -> QueuedSubmission:
        now = self._clock()

        def _apply(item: QueuedSubmission) -> QueuedSubmission:
            if status is SubmissionStatus.FAILED:
                retries = min(item.retry_count + 1, item.max_retries)
                final   = SubmissionStatus.FAILED if retries >= item.max_retries else SubmissionStatus.PENDING
                return item.model_copy(update={
                    "retry_count":  retries,
                    "status":       final,
                    "last_attempt": now,
                    "error":        error,
                })
            return item.model_copy(update={
                "status":       status,
                "last_attempt": now,
                "error":        error,
            })

        updated = await self._repo.update(submission_id, _apply)
        logger.debug(
            "submission_status",
            submission_id=submission_id,
            status=updated.status.value,
            retry_count=updated.retry_count,
        )
        return updated

    async def remove(self, submission_id: str) -> bool:
        return await self._repo.delete(submission_id)

    async def get(self, submission_id: str) -> Optional[QueuedSubmission]:
        return await self._repo.get(submission_id)

    async def stats(self) -> QueueStats:
        items = await self._repo.list_by_index("enqueued_at")
        return QueueStats(
            total=len(items),
            pending=sum(1 for i in items if i.status is SubmissionStatus.PENDING),
            failed=sum(1 for i in items if i.status is SubmissionStatus.FAILED),
            oldest=items[0].enqueued_at if items else None,
        )

    async def clear_all(self) -> int:
        removed = await self._repo.clear()
        logger.info("queue_cleared", removed=removed)
        return removed
