"""Tests for conductor.daemon.queue.JobQueue.

Covers FIFO ordering, delayed eligibility, retry backoff, retention of
terminal entries, counters, removal and closing.
"""

from __future__ import annotations

import asyncio
import time

import pytest

from conductor.core.errors import QueueClosedError
from conductor.daemon.event_bus import EventBroadcaster
from conductor.daemon.queue import JobQueue
from conductor.daemon.types import (
    BackoffPolicy,
    EventKind,
    JobOptions,
    JobType,
    RetentionPolicy,
)


def _options(**overrides) -> JobOptions:
    base = {"backoff": BackoffPolicy(kind="fixed", delay_seconds=0.0)}
    base.update(overrides)
    return JobOptions(**base)


class TestOrdering:
    """Tests for dequeue order and readiness."""

    @pytest.mark.asyncio
    async def test_fifo_for_ready_entries(self):
        """Ready entries leave in submission order."""
        queue = JobQueue()
        for job_id in ("a", "b", "c"):
            await queue.enqueue(job_id, JobType.ECHO, {"message": job_id}, _options())
        order = [(await queue.dequeue()).job_id for _ in range(3)]
        assert order == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_delayed_entry_waits(self):
        """A delayed entry is not delivered before its delay elapses."""
        queue = JobQueue()
        start = time.monotonic()
        await queue.enqueue("late", JobType.ECHO, {}, _options(delay_seconds=0.1))
        entry = await asyncio.wait_for(queue.dequeue(), timeout=2.0)
        assert entry.job_id == "late"
        assert time.monotonic() - start >= 0.09

    @pytest.mark.asyncio
    async def test_ready_entry_overtakes_delayed(self):
        """An immediately-ready entry is served before an earlier delayed one."""
        queue = JobQueue()
        await queue.enqueue("delayed", JobType.ECHO, {}, _options(delay_seconds=0.2))
        await queue.enqueue("now", JobType.ECHO, {}, _options())
        first = await asyncio.wait_for(queue.dequeue(), timeout=1.0)
        second = await asyncio.wait_for(queue.dequeue(), timeout=2.0)
        assert [first.job_id, second.job_id] == ["now", "delayed"]

    @pytest.mark.asyncio
    async def test_dequeue_wakes_on_enqueue(self):
        """A blocked dequeue returns once an entry is added."""
        queue = JobQueue()
        waiter = asyncio.create_task(queue.dequeue())
        await asyncio.sleep(0.01)
        assert not waiter.done()
        await queue.enqueue("a", JobType.ECHO, {}, _options())
        entry = await asyncio.wait_for(waiter, timeout=1.0)
        assert entry.job_id == "a"

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_rejected(self):
        """A job cannot be queued twice while waiting or active."""
        queue = JobQueue()
        await queue.enqueue("a", JobType.ECHO, {}, _options())
        with pytest.raises(ValueError, match="already queued"):
            await queue.enqueue("a", JobType.ECHO, {}, _options())


class TestRetry:
    """Tests for retry bookkeeping and backoff."""

    @pytest.mark.asyncio
    async def test_can_retry_counts_attempts(self):
        """can_retry is true until the final attempt has been used."""
        queue = JobQueue()
        await queue.enqueue("a", JobType.ECHO, {}, _options(attempts=2))
        entry = await queue.dequeue()
        assert queue.can_retry(entry)
        await queue.retry(entry)
        entry = await queue.dequeue()
        assert entry.attempts_made == 1
        assert not queue.can_retry(entry)

    @pytest.mark.asyncio
    async def test_exponential_backoff_delays(self):
        """Retry delays double with each failed attempt."""
        queue = JobQueue()
        backoff = BackoffPolicy(kind="exponential", delay_seconds=0.01)
        await queue.enqueue("a", JobType.ECHO, {}, _options(attempts=4, backoff=backoff))
        delays = []
        for _ in range(3):
            entry = await asyncio.wait_for(queue.dequeue(), timeout=2.0)
            delays.append(await queue.retry(entry))
        assert delays == pytest.approx([0.01, 0.02, 0.04])

    @pytest.mark.asyncio
    async def test_retry_respects_backoff_delay(self):
        """A retried entry is not re-delivered before its backoff elapses."""
        queue = JobQueue()
        backoff = BackoffPolicy(kind="fixed", delay_seconds=0.1)
        await queue.enqueue("a", JobType.ECHO, {}, _options(attempts=2, backoff=backoff))
        entry = await queue.dequeue()
        retried_at = time.monotonic()
        await queue.retry(entry)
        entry = await asyncio.wait_for(queue.dequeue(), timeout=2.0)
        assert time.monotonic() - retried_at >= 0.09

    @pytest.mark.asyncio
    async def test_retry_without_attempts_left(self):
        """Retrying an exhausted entry records it failed and raises."""
        queue = JobQueue()
        await queue.enqueue("a", JobType.ECHO, {}, _options(attempts=1))
        entry = await queue.dequeue()
        with pytest.raises(ValueError, match="no attempts left"):
            await queue.retry(entry)
        assert queue.stats().failed == 1

    @pytest.mark.asyncio
    async def test_retry_requires_active_entry(self):
        """Only active entries can be retried."""
        queue = JobQueue()
        entry = await queue.enqueue("a", JobType.ECHO, {}, _options())
        with pytest.raises(ValueError, match="not active"):
            await queue.retry(entry)

    @pytest.mark.asyncio
    async def test_queued_events(self):
        """Enqueue and retry each publish a queued event with the attempt number."""
        bus = EventBroadcaster()
        sub = bus.subscribe("a")
        queue = JobQueue(bus)
        await queue.enqueue("a", JobType.ECHO, {}, _options(attempts=3))
        entry = await queue.dequeue()
        await queue.retry(entry)
        events = sub.pending()
        assert [e.kind for e in events] == [EventKind.QUEUED, EventKind.QUEUED]
        assert [e.payload["attempt"] for e in events] == [1, 2]
        assert events[0].payload["max_attempts"] == 3


class TestCountersAndRetention:
    """Tests for stats() and retention of terminal entries."""

    @pytest.mark.asyncio
    async def test_stats_track_lifecycle(self):
        """Counts move from waiting to active to completed or failed."""
        queue = JobQueue()
        await queue.enqueue("a", JobType.ECHO, {}, _options())
        await queue.enqueue("b", JobType.ECHO, {}, _options())
        assert queue.stats().to_dict() == {"waiting": 2, "active": 0, "completed": 0, "failed": 0}

        first = await queue.dequeue()
        assert queue.is_active("a")
        assert queue.is_waiting("b")
        assert queue.stats().active == 1

        await queue.complete(first)
        second = await queue.dequeue()
        await queue.fail(second)
        assert queue.stats().to_dict() == {"waiting": 0, "active": 0, "completed": 1, "failed": 1}

    @pytest.mark.asyncio
    async def test_retention_bounds_completed(self):
        """Only the most recent N completed entries are retained."""
        queue = JobQueue()
        options = _options(retention=RetentionPolicy(completed=2, failed=1))
        for i in range(5):
            await queue.enqueue(f"job-{i}", JobType.ECHO, {}, options)
        for _ in range(5):
            await queue.complete(await queue.dequeue())
        assert queue.stats().completed == 2

    @pytest.mark.asyncio
    async def test_retention_bounds_failed(self):
        """Only the most recent M failed entries are retained."""
        queue = JobQueue()
        options = _options(retention=RetentionPolicy(completed=2, failed=1))
        for i in range(3):
            await queue.enqueue(f"job-{i}", JobType.ECHO, {}, options)
        for _ in range(3):
            await queue.fail(await queue.dequeue())
        assert queue.stats().failed == 1


class TestRemoveAndClose:
    """Tests for remove() and close()."""

    @pytest.mark.asyncio
    async def test_remove_waiting_entry(self):
        """A removed entry is never delivered."""
        queue = JobQueue()
        await queue.enqueue("a", JobType.ECHO, {}, _options())
        await queue.enqueue("b", JobType.ECHO, {}, _options())
        assert await queue.remove("a") is True
        entry = await asyncio.wait_for(queue.dequeue(), timeout=1.0)
        assert entry.job_id == "b"
        assert queue.stats().waiting == 0

    @pytest.mark.asyncio
    async def test_remove_unknown_or_active(self):
        """Only waiting entries can be removed."""
        queue = JobQueue()
        await queue.enqueue("a", JobType.ECHO, {}, _options())
        await queue.dequeue()
        assert await queue.remove("a") is False
        assert await queue.remove("missing") is False

    @pytest.mark.asyncio
    async def test_drain_takes_waiting_entries(self):
        """Waiting entries come out earliest first; active entries stay put."""
        queue = JobQueue()
        await queue.enqueue("running", JobType.ECHO, {}, _options())
        await queue.dequeue()
        await queue.enqueue("late", JobType.ECHO, {}, _options(delay_seconds=30))
        await queue.enqueue("soon", JobType.ECHO, {}, _options(delay_seconds=10))
        await queue.enqueue("gone", JobType.ECHO, {}, _options())
        await queue.remove("gone")
        await queue.close()

        drained = await queue.drain()

        assert [entry.job_id for entry in drained] == ["soon", "late"]
        assert queue.stats().to_dict() == {"waiting": 0, "active": 1, "completed": 0, "failed": 2}
        assert queue.is_active("running")
        assert await queue.drain() == []

    @pytest.mark.asyncio
    async def test_close_wakes_dequeue(self):
        """Closing raises QueueClosedError in blocked consumers."""
        queue = JobQueue()
        waiter = asyncio.create_task(queue.dequeue())
        await asyncio.sleep(0.01)
        await queue.close()
        with pytest.raises(QueueClosedError):
            await asyncio.wait_for(waiter, timeout=1.0)
        assert queue.closed

    @pytest.mark.asyncio
    async def test_enqueue_after_close(self):
        """A closed queue rejects new work."""
        queue = JobQueue()
        await queue.close()
        with pytest.raises(QueueClosedError):
            await queue.enqueue("a", JobType.ECHO, {}, _options())

    @pytest.mark.asyncio
    async def test_retry_after_close(self):
        """Retrying into a closed queue fails the entry."""
        queue = JobQueue()
        await queue.enqueue("a", JobType.ECHO, {}, _options(attempts=3))
        entry = await queue.dequeue()
        await queue.close()
        with pytest.raises(QueueClosedError):
            await queue.retry(entry)
        assert queue.stats().failed == 1
