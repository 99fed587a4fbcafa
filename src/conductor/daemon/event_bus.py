"""Per-job pub/sub event broadcaster for the Conductor daemon.

Routes JobEvents from the worker pool, queue and runner to observers
(real-time transports, the CLI, tests). Observers subscribe to one job's
channel and receive every event published for that job after they joined,
in publish order. There is no replay for late subscribers.

Each subscription owns a bounded deque; when a slow observer falls behind,
the oldest undelivered event is dropped rather than blocking the publisher.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

from conductor.core.logging import get_logger
from conductor.daemon.types import EventKind, JobEvent

_logger = get_logger("daemon.event_bus")


class Subscription:
    """One observer's view of a job channel.

    Iterate with ``async for`` to receive events; iteration ends after
    ``close()`` (or leaving the ``async with`` block, which also
    unsubscribes).

    Usage::

        async with broadcaster.subscribe(job_id) as sub:
            async for event in sub:
                if event.kind.is_terminal:
                    break
    """

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        job_id: str,
        *,
        max_queue_size: int,
    ) -> None:
        self.subscription_id = uuid.uuid4().hex
        self.job_id = job_id
        self._broadcaster = broadcaster
        self._events: deque[JobEvent] = deque()
        self._max_queue_size = max_queue_size
        self._wakeup = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: JobEvent) -> None:
        if self._closed:
            return
        if len(self._events) >= self._max_queue_size:
            self._events.popleft()
            self.dropped += 1
            _logger.warning(
                "event_bus.subscriber_overflow",
                job_id=self.job_id,
                subscription_id=self.subscription_id,
                dropped=self.dropped,
            )
        self._events.append(event)
        self._wakeup.set()

    async def get(self, timeout: float | None = None) -> JobEvent | None:
        """Wait for the next event.

        Returns None when the subscription is closed and drained.

        Raises:
            TimeoutError: If ``timeout`` elapses with no event.
        """
        while not self._events:
            if self._closed:
                return None
            self._wakeup.clear()
            if timeout is None:
                await self._wakeup.wait()
            else:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        return self._events.popleft()

    def pending(self) -> list[JobEvent]:
        """Drain and return every event received but not yet consumed."""
        events = list(self._events)
        self._events.clear()
        return events

    def close(self) -> None:
        """Stop receiving events and detach from the broadcaster."""
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()
        self._broadcaster.unsubscribe(self.job_id, self)

    def __aiter__(self) -> AsyncIterator[JobEvent]:
        return self

    async def __anext__(self) -> JobEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class EventBroadcaster:
    """Fan-out of job lifecycle events to per-job subscribers.

    ``publish()`` is synchronous and non-blocking, so it can be called from
    stdout reader loops without reordering chunks. All subscribers of a
    job see that job's events in exactly the order they were published.

    Usage::

        broadcaster = EventBroadcaster(max_queue_size=1000)
        sub = broadcaster.subscribe(job_id)
        broadcaster.publish(job_id, EventKind.LOG, {"text": "ok\\n"})
        event = await sub.get()
        broadcaster.unsubscribe(job_id, sub)
    """

    def __init__(self, *, max_queue_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._channels: dict[str, dict[str, Subscription]] = {}

    def subscribe(self, job_id: str) -> Subscription:
        """Register an observer for one job's events."""
        sub = Subscription(self, job_id, max_queue_size=self._max_queue_size)
        self._channels.setdefault(job_id, {})[sub.subscription_id] = sub
        _logger.debug(
            "event_bus.subscribed",
            job_id=job_id,
            subscription_id=sub.subscription_id,
        )
        return sub

    def unsubscribe(self, job_id: str, subscription: Subscription) -> bool:
        """Remove an observer.

        Returns:
            True if the subscription existed and was removed.
        """
        channel = self._channels.get(job_id)
        if channel is None:
            return False
        removed = channel.pop(subscription.subscription_id, None) is not None
        if not channel:
            del self._channels[job_id]
        if removed:
            subscription.close()
            _logger.debug(
                "event_bus.unsubscribed",
                job_id=job_id,
                subscription_id=subscription.subscription_id,
            )
        return removed

    def publish(
        self,
        job_id: str,
        kind: EventKind,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Publish an event to every current subscriber of ``job_id``.

        Returns:
            Number of subscribers the event was delivered to.
        """
        channel = self._channels.get(job_id)
        if not channel:
            return 0
        event = JobEvent(job_id=job_id, kind=kind, payload=payload or {})
        # Copy: a subscriber may unsubscribe while we iterate
        subscribers = list(channel.values())
        for sub in subscribers:
            sub._deliver(event)
        return len(subscribers)

    def subscriber_count(self, job_id: str | None = None) -> int:
        """Number of subscribers for one job, or across all jobs."""
        if job_id is not None:
            return len(self._channels.get(job_id, {}))
        return sum(len(channel) for channel in self._channels.values())

    def close(self) -> None:
        """Close every subscription (ends their iteration)."""
        for channel in list(self._channels.values()):
            for sub in list(channel.values()):
                sub.close()
        self._channels.clear()
        _logger.debug("event_bus.closed")


__all__ = ["EventBroadcaster", "Subscription"]
