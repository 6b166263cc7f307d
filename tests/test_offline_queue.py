"""Tests for the durable submission queue."""

from __future__ import annotations

import pytest

from database import Database
from errors import QueueError, StorageError, UnknownSubmissionError
from models import FormSubmission, SubmissionKind, SubmissionStatus
from offline_queue import SubmissionQueue, SubmissionRepository

from conftest import START, FakeClock

DEST = "https://forms.example.com/contact"


def _form(kind: SubmissionKind = SubmissionKind.CONTACT, **payload: str) -> FormSubmission:
    return FormSubmission(kind=kind, payload=payload or {"name": "Ada"}, destination=DEST, online=False)


@pytest.fixture
def queue(db: Database, clock: FakeClock) -> SubmissionQueue:
    return SubmissionQueue(SubmissionRepository(db), clock=clock)


class _BrokenRepository:
    async def put(self, item) -> None:
        raise StorageError("database is locked")


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_assigns_id_timestamp_and_retry_fields(self, queue: SubmissionQueue) -> None:
        item = await queue.enqueue(_form(message="hello"))

        assert item.id
        assert item.enqueued_at == START
        assert item.status is SubmissionStatus.PENDING
        assert item.retry_count == 0
        assert item.max_retries == 3
        assert item.backup is False

        stored = await queue.get(item.id)
        assert stored == item

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, queue: SubmissionQueue) -> None:
        ids = {(await queue.enqueue(_form())).id for _ in range(5)}
        assert len(ids) == 5

    @pytest.mark.asyncio
    async def test_storage_failure_raises_queue_error(self, clock: FakeClock) -> None:
        queue = SubmissionQueue(_BrokenRepository(), clock=clock)

        with pytest.raises(QueueError):
            await queue.enqueue(_form())


class TestListPending:

    @pytest.mark.asyncio
    async def test_oldest_first(self, queue: SubmissionQueue, clock: FakeClock) -> None:
        first = await queue.enqueue(_form())
        clock.advance(10)
        second = await queue.enqueue(_form())

        assert [i.id for i in await queue.list_pending()] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_filter_by_kind(self, queue: SubmissionQueue) -> None:
        await queue.enqueue(_form(SubmissionKind.CONTACT))
        analytics = await queue.enqueue(_form(SubmissionKind.ANALYTICS))

        only = await queue.list_pending([SubmissionKind.ANALYTICS])

        assert [i.id for i in only] == [analytics.id]


class TestMarkStatus:

    @pytest.mark.asyncio
    async def test_failure_increments_retry_and_stays_pending(
        self, queue: SubmissionQueue, clock: FakeClock
    ) -> None:
        item = await queue.enqueue(_form())
        clock.advance(30)

        updated = await queue.mark_status(item.id, SubmissionStatus.FAILED, "HTTP 502")

        assert updated.retry_count == 1
        assert updated.status is SubmissionStatus.PENDING
        assert updated.error == "HTTP 502"
        assert updated.last_attempt == START + 30
        assert (await queue.get(item.id)).retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_count_never_exceeds_max(self, queue: SubmissionQueue) -> None:
        """At the cap the record turns failed and leaves the pending list."""
        item = await queue.enqueue(_form())

        for _ in range(5):
            updated = await queue.mark_status(item.id, SubmissionStatus.FAILED, "down")
            assert updated.retry_count <= updated.max_retries

        assert updated.retry_count == 3
        assert updated.status is SubmissionStatus.FAILED
        assert await queue.list_pending() == []

    @pytest.mark.asyncio
    async def test_unknown_id_raises(self, queue: SubmissionQueue) -> None:
        with pytest.raises(UnknownSubmissionError):
            await queue.mark_status("missing", SubmissionStatus.FAILED)


class TestRemoveAndStats:

    @pytest.mark.asyncio
    async def test_remove(self, queue: SubmissionQueue) -> None:
        item = await queue.enqueue(_form())

        assert await queue.remove(item.id) is True
        assert await queue.get(item.id) is None
        assert await queue.remove(item.id) is False

    @pytest.mark.asyncio
    async def test_stats_and_clear_all(self, queue: SubmissionQueue, clock: FakeClock) -> None:
        first = await queue.enqueue(_form())
        clock.advance(5)
        second = await queue.enqueue(_form(), backup=True)
        for _ in range(3):
            await queue.mark_status(second.id, SubmissionStatus.FAILED)

        stats = await queue.stats()

        assert stats.total == 2
        assert stats.pending == 1
        assert stats.failed == 1
        assert stats.oldest == first.enqueued_at

        assert await queue.clear_all() == 2
        assert (await queue.stats()).total == 0


class TestRepository:

    @pytest.mark.asyncio
    async def test_list_by_unknown_index_is_rejected(self, db: Database) -> None:
        with pytest.raises(ValueError):
            await SubmissionRepository(db).list_by_index("payload")
