"""In-memory job queue with delayed entries and retry backoff.

Entries sit in a min-heap ordered by ``(ready_at, seq)``: an entry becomes
eligible once its readiness time has passed, and entries that become ready
at the same time leave in submission order. ``dequeue()`` suspends on an
``asyncio.Condition`` until the earliest entry is due (or a new entry
arrives) rather than polling.

All counter mutations happen under the condition's lock, so waiting /
active / completed / failed counts stay consistent across concurrent
enqueue, dequeue and retry calls.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from conductor.core.errors import QueueClosedError
from conductor.core.logging import get_logger
from conductor.daemon.event_bus import EventBroadcaster
from conductor.daemon.types import EventKind, JobOptions, JobType

_logger = get_logger("daemon.queue")


@dataclass(order=True)
class QueueEntry:
    """Scheduling wrapper around one job.

    Ordered by (ready_at, seq); the remaining fields are excluded from
    comparison so heapq ordering depends only on readiness and arrival.
    """

    ready_at: float
    seq: int
    job_id: str = field(compare=False)
    job_type: JobType = field(compare=False)
    payload: dict[str, Any] = field(compare=False)
    options: JobOptions = field(compare=False)
    attempts_made: int = field(default=0, compare=False)
    enqueued_at: float = field(default_factory=time.monotonic, compare=False)
    removed: bool = field(default=False, compare=False)

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.options.attempts - self.attempts_made)


@dataclass
class QueueStats:
    """Snapshot of queue counters."""

    waiting: int
    active: int
    completed: int
    failed: int

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
        }


class JobQueue:
    """Readiness-ordered FIFO of pending jobs.

    Lifecycle of an entry::

        enqueue() -> waiting -> dequeue() -> active
            active -> complete()          -> completed (retained up to N)
            active -> retry()             -> waiting (after backoff)
            active -> fail()              -> failed (retained up to M)
            waiting -> remove()           -> dropped
            waiting -> drain()            -> failed

    Args:
        broadcaster: Receives a ``queued`` event for every enqueue and
            every retry re-enqueue. Optional for standalone use.
    """

    def __init__(self, broadcaster: EventBroadcaster | None = None) -> None:
        self._broadcaster = broadcaster
        self._heap: list[QueueEntry] = []
        self._waiting: dict[str, QueueEntry] = {}
        self._active: dict[str, QueueEntry] = {}
        self._completed: deque[str] = deque()
        self._failed: deque[str] = deque()
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def enqueue(
        self,
        job_id: str,
        job_type: JobType,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> QueueEntry:
        """Add a job; it becomes eligible after ``options.delay_seconds``.

        Raises:
            QueueClosedError: If the queue has been closed.
            ValueError: If the job is already waiting or active.
        """
        options = options or JobOptions()
        async with self._cond:
            if self._closed:
                raise QueueClosedError("Queue is closed")
            if job_id in self._waiting or job_id in self._active:
                raise ValueError(f"Job {job_id} is already queued")
            entry = QueueEntry(
                ready_at=time.monotonic() + options.delay_seconds,
                seq=next(self._seq),
                job_id=job_id,
                job_type=job_type,
                payload=payload,
                options=options,
            )
            self._push(entry)
            self._cond.notify_all()

        _logger.debug(
            "queue.enqueued",
            job_id=job_id,
            job_type=job_type.value,
            delay_seconds=options.delay_seconds,
        )
        self._emit_queued(entry, delay_seconds=options.delay_seconds)
        return entry

    async def dequeue(self) -> QueueEntry:
        """Wait for the next ready entry and mark it active.

        Raises:
            QueueClosedError: Once the queue is closed.
        """
        async with self._cond:
            while True:
                if self._closed:
                    raise QueueClosedError("Queue is closed")
                self._drop_removed_head()
                timeout: float | None = None
                if self._heap:
                    head = self._heap[0]
                    wait = head.ready_at - time.monotonic()
                    if wait <= 0:
                        heapq.heappop(self._heap)
                        del self._waiting[head.job_id]
                        self._active[head.job_id] = head
                        return head
                    timeout = wait
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=timeout)
                except TimeoutError:
                    # Earliest delayed entry is now due
                    continue

    def can_retry(self, entry: QueueEntry) -> bool:
        """Whether a failed attempt of ``entry`` has attempts left.

        ``attempts_made`` counts the attempt that just failed.
        """
        return entry.attempts_made + 1 < entry.options.attempts

    async def retry(self, entry: QueueEntry) -> float:
        """Re-enqueue an active entry after its backoff delay.

        Returns:
            The backoff delay in seconds.

        Raises:
            ValueError: If the entry is not active or has no attempts left.
        """
        async with self._cond:
            if self._active.pop(entry.job_id, None) is None:
                raise ValueError(f"Job {entry.job_id} is not active")
            if not self.can_retry(entry):
                self._record_terminal(entry, failed=True)
                raise ValueError(f"Job {entry.job_id} has no attempts left")
            entry.attempts_made += 1
            delay = entry.options.backoff.compute(entry.attempts_made)
            entry.ready_at = time.monotonic() + delay
            entry.seq = next(self._seq)
            if self._closed:
                self._record_terminal(entry, failed=True)
                raise QueueClosedError("Queue is closed")
            self._push(entry)
            self._cond.notify_all()

        _logger.info(
            "queue.retry_scheduled",
            job_id=entry.job_id,
            attempts_made=entry.attempts_made,
            max_attempts=entry.options.attempts,
            delay_seconds=round(delay, 3),
        )
        self._emit_queued(entry, delay_seconds=delay)
        return delay

    async def complete(self, entry: QueueEntry) -> None:
        """Record a successful terminal outcome for an active entry."""
        async with self._cond:
            self._active.pop(entry.job_id, None)
            entry.attempts_made += 1
            self._record_terminal(entry, failed=False)

    async def fail(self, entry: QueueEntry) -> None:
        """Record a failed terminal outcome for an active entry (no retry)."""
        async with self._cond:
            self._active.pop(entry.job_id, None)
            entry.attempts_made += 1
            self._record_terminal(entry, failed=True)

    async def remove(self, job_id: str) -> bool:
        """Drop a waiting entry (used for cancellation before start).

        Returns:
            True if a waiting entry was removed.
        """
        async with self._cond:
            entry = self._waiting.pop(job_id, None)
            if entry is None:
                return False
            # Lazy deletion: the heap slot is skipped on the next dequeue
            entry.removed = True
            self._cond.notify_all()
        _logger.debug("queue.removed", job_id=job_id)
        return True

    def stats(self) -> QueueStats:
        """Current counts. Retained terminal entries are bounded by retention."""
        return QueueStats(
            waiting=len(self._waiting),
            active=len(self._active),
            completed=len(self._completed),
            failed=len(self._failed),
        )

    def is_waiting(self, job_id: str) -> bool:
        return job_id in self._waiting

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    async def drain(self) -> list[QueueEntry]:
        """Take every waiting entry out of the queue, earliest first.

        Drained entries count as failed. Used at shutdown so delayed and
        backing-off jobs are not left waiting on a queue nobody reads.
        """
        async with self._cond:
            entries = sorted(self._waiting.values())
            self._waiting.clear()
            self._heap.clear()
            for entry in entries:
                self._record_terminal(entry, failed=True)
            self._cond.notify_all()
        if entries:
            _logger.info("queue.drained", count=len(entries))
        return entries

    async def close(self) -> None:
        """Wake every blocked ``dequeue()`` with QueueClosedError."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()
        _logger.debug("queue.closed", waiting=len(self._waiting), active=len(self._active))

    # ─── Internals ─────────────────────────────────────────────────

    def _push(self, entry: QueueEntry) -> None:
        entry.removed = False
        heapq.heappush(self._heap, entry)
        self._waiting[entry.job_id] = entry

    def _drop_removed_head(self) -> None:
        while self._heap and self._heap[0].removed:
            heapq.heappop(self._heap)

    def _record_terminal(self, entry: QueueEntry, *, failed: bool) -> None:
        retained = self._failed if failed else self._completed
        limit = entry.options.retention.failed if failed else entry.options.retention.completed
        retained.append(entry.job_id)
        while len(retained) > limit:
            retained.popleft()

    def _emit_queued(self, entry: QueueEntry, *, delay_seconds: float) -> None:
        if self._broadcaster is None:
            return
        self._broadcaster.publish(
            entry.job_id,
            EventKind.QUEUED,
            {
                "attempt": entry.attempts_made + 1,
                "max_attempts": entry.options.attempts,
                "delay_seconds": delay_seconds,
            },
        )


__all__ = ["JobQueue", "QueueEntry", "QueueStats"]
