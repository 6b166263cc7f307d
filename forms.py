"""
forms.py
────────
Form-submit events from the page.

    offline  → queue it, suppress the page's own submit, tell the user it was saved
    online   → let the page submit normally; with backup mode on, also queue a
               shadow copy in case the live attempt silently fails

A failure to queue while offline raises ``QueueError`` after publishing an
error notification: the user's data was not saved and they must know.  A
failure to queue the *backup* copy is only logged, since the live submit
still goes ahead.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from errors import QueueError
from logging_config import get_logger
from models import FormSubmission
from notifications import Notifier
from offline_queue import SubmissionQueue

logger = get_logger(__name__)


class SubmitAction(str, Enum):
    QUEUED = "queued"   # page must suppress its default submit
    SUBMIT = "submit"   # page submits normally


class SubmitOutcome(BaseModel):
    action:        SubmitAction
    submission_id: Optional[str] = None
    backup:        bool          = False


class FormSubmissionHandler:

    def __init__(
        self,
        queue:    SubmissionQueue,
        notifier: Notifier,
        backup_enabled: bool = True,
    ) -> None:
        self._queue    = queue
        self._notifier = notifier
        self._backup   = backup_enabled

    async def handle(self, submission: FormSubmission, online: Optional[bool] = None) -> SubmitOutcome:
        """``online`` overrides the flag the page sent with the event."""
        is_online = submission.online if online is None else online
        if not is_online:
            return await self._queue_offline(submission)
        if not self._backup:
            return SubmitOutcome(action=SubmitAction.SUBMIT)

        try:
            item = await self._queue.enqueue(submission, backup=True)
        except QueueError as exc:
            logger.warning("backup_enqueue_failed", kind=submission.kind.value, error=str(exc))
            return SubmitOutcome(action=SubmitAction.SUBMIT)
        return SubmitOutcome(action=SubmitAction.SUBMIT, submission_id=item.id, backup=True)

    async def _queue_offline(self, submission: FormSubmission) -> SubmitOutcome:
        try:
            item = await self._queue.enqueue(submission)
        except QueueError:
            self._notifier.publish(
                "error", "submission_not_saved",
                "Your form could not be saved. Please try again.",
                kind=submission.kind.value,
            )
            raise

        self._notifier.publish(
            "info", "submission_queued",
            "Form saved. It will be sent automatically when you are back online.",
            submission_id=item.id, kind=item.kind.value,
        )
        return SubmitOutcome(action=SubmitAction.QUEUED, submission_id=item.id)
