"""
sync_coordinator.py
───────────────────
Drains the offline submission queue and runs the named background routines.

State machine:  idle ─► draining ─► idle

Triggers
────────
1. Connectivity restored (``on_connectivity_change(True)``).
2. A named background trigger (``handle_tag``).
3. A 30 s fallback timer, started only when the platform has no native
   background-trigger support.

Only one drain runs at a time: a trigger that arrives while draining is a
no-op, and records enqueued meanwhile are picked up by the next drain.  The
guard is checked and set without an ``await`` in between, so two tasks can
never both pass it.

A drain attempts every pending record concurrently and then settles the
results one by one: success deletes the record; failure bumps its retry
count, and a record that has exhausted its retries is deleted and reported
to the user as terminal.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Iterable, Optional, assert_never

from config import FALLBACK_SYNC_INTERVAL, SYNC_FORM_KINDS
from connectivity import ConnectionMonitor
from errors import EngineError, NetworkError, StorageError
from eviction import EvictionManager
from logging_config import get_logger
from models import DrainReport, QueuedSubmission, SubmissionKind, SubmissionStatus
from network import Fetcher
from notifications import Notifier
from offline_queue import SubmissionQueue
from state import EngineState

logger = get_logger(__name__)

FORM_KINDS = tuple(SubmissionKind(k) for k in SYNC_FORM_KINDS)


class SyncTag(str, Enum):
    CONTACT_FORM       = "contact-form-sync"
    ANALYTICS          = "analytics-sync"
    CACHE_CLEANUP      = "cache-cleanup"
    PERFORMANCE_REPORT = "performance-report"


class CoordinatorState(str, Enum):
    IDLE     = "idle"
    DRAINING = "draining"


class SyncCoordinator:

    def __init__(
        self,
        state:    EngineState,
        queue:    SubmissionQueue,
        fetcher:  Fetcher,
        monitor:  ConnectionMonitor,
        notifier: Notifier,
        eviction: EvictionManager,
        background_sync_supported: bool = False,
        interval: float = FALLBACK_SYNC_INTERVAL,
    ) -> None:
        self._engine_state = state
        self._queue        = queue
        self._fetcher      = fetcher
        self._monitor      = monitor
        self._notifier     = notifier
        self._eviction     = eviction
        self._native_sync  = background_sync_supported
        self._interval     = interval
        self._timer: Optional[asyncio.Task] = None
        self.state = CoordinatorState.IDLE

    # ── Draining ──────────────────────────────────────────────────────────────

    async def drain(
        self,
        trigger: str,
        kinds:   Optional[Iterable[SubmissionKind]] = None,
    ) -> Optional[DrainReport]:
        """
        Attempt delivery of every pending submission (of ``kinds``, if given).

        Returns ``None`` when skipped: a drain is already running or the
        engine is offline.
        """
        if self.state is CoordinatorState.DRAINING:
            logger.info("drain_skipped", trigger=trigger, reason="already_draining")
            return None
        if not self._monitor.is_online:
            logger.info("drain_skipped", trigger=trigger, reason="offline")
            return None

        self.state = CoordinatorState.DRAINING
        report = DrainReport(trigger=trigger)
        try:
            try:
                pending = await self._queue.list_pending(kinds)
            except StorageError as exc:
                logger.error("drain_list_failed", trigger=trigger, error=str(exc))
                return report
            if not pending:
                return report

            logger.info("drain_start", trigger=trigger, pending=len(pending))
            self._notifier.publish(
                "info", "sync_started",
                f"Sending {len(pending)} saved form(s)...",
                count=len(pending),
            )

            results = await asyncio.gather(
                *(self._deliver(item) for item in pending),
                return_exceptions=True,
            )
            report.attempted = len(pending)
            for item, result in zip(pending, results):
                await self._settle(item, result, report)

            self._publish_result(report)
            logger.info(
                "drain_done",
                trigger=trigger,
                attempted=report.attempted,
                succeeded=report.succeeded,
                failed=report.failed,
                exhausted=len(report.exhausted),
            )
            return report
        finally:
            self.state = CoordinatorState.IDLE

    async def _deliver(self, item: QueuedSubmission) -> None:
        response = await self._fetcher.submit(item)
        if not response.ok:
            raise NetworkError(item.destination, f"status {response.status}")

    async def _settle(self, item: QueuedSubmission, result: Any, report: DrainReport) -> None:
        try:
            if not isinstance(result, BaseException):
                await self._queue.remove(item.id)
                report.succeeded += 1
                return

            report.failed += 1
            updated = await self._queue.mark_status(item.id, SubmissionStatus.FAILED, str(result))
            if updated.status is SubmissionStatus.FAILED:
                await self._queue.remove(item.id)
                report.exhausted.append(item.id)
                logger.warning(
                    "submission_exhausted",
                    submission_id=item.id,
                    retries=updated.retry_count,
                    error=str(result),
                )
                self._notifier.publish(
                    "error", "submission_failed",
                    "A saved form could not be sent after several attempts. Please submit it again.",
                    submission_id=item.id, kind=item.kind.value, payload=item.payload,
                )
        except EngineError as exc:
            logger.error("drain_settle_failed", submission_id=item.id, error=str(exc))

    def _publish_result(self, report: DrainReport) -> None:
        ok, bad = report.succeeded, report.failed
        if ok and not bad:
            self._notifier.publish("success", "sync_done", f"{ok} form(s) sent.", succeeded=ok)
        elif ok and bad:
            self._notifier.publish(
                "warning", "sync_partial", f"{ok} form(s) sent, {bad} failed.",
                succeeded=ok, failed=bad,
            )
        elif bad:
            self._notifier.publish("error", "sync_failed", f"{bad} form(s) could not be sent.", failed=bad)

    # ── Background triggers ───────────────────────────────────────────────────

    async def handle_tag(self, tag: SyncTag) -> dict[str, Any]:
        match tag:
            case SyncTag.CONTACT_FORM:
                report = await self.drain(tag.value, FORM_KINDS)
                return {"tag": tag.value, "report": report.model_dump() if report else None}
            case SyncTag.ANALYTICS:
                report = await self.drain(tag.value, (SubmissionKind.ANALYTICS,))
                return {"tag": tag.value, "report": report.model_dump() if report else None}
            case SyncTag.CACHE_CLEANUP:
                removed = await self._eviction.sweep()
                return {"tag": tag.value, "removed": removed}
            case SyncTag.PERFORMANCE_REPORT:
                counters = self._engine_state.counters
                snapshot = {**counters.model_dump(), "hit_rate": counters.hit_rate}
                logger.info("performance_report", **snapshot)
                self._notifier.publish("info", "performance_report", "Cache performance snapshot.", **snapshot)
                return {"tag": tag.value, "counters": snapshot}
            case _:
                assert_never(tag)

    async def on_connectivity_change(self, online: bool) -> None:
        if not online:
            self._notifier.publish("warning", "offline", "You are offline. Forms will be saved automatically.")
            return
        self._notifier.publish("success", "online", "Connection restored.")
        await self.drain("online")

    # ── Fallback timer ────────────────────────────────────────────────────────

    async def _fallback_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not self._monitor.is_online:
                continue
            try:
                await self.drain("timer")
            except Exception as exc:  # noqa: BLE001
                logger.error("fallback_drain_failed", error=str(exc))

    def start(self) -> None:
        self._monitor.register_callback(self.on_connectivity_change)
        if not self._native_sync and self._timer is None:
            self._timer = asyncio.create_task(self._fallback_loop())
            logger.info("fallback_sync_started", interval=self._interval)

    async def stop(self) -> None:
        self._monitor.unregister_callback(self.on_connectivity_change)
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
