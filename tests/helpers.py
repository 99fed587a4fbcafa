"""Shared test helpers for Conductor tests."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

from conductor.backends.base import OutputSink
from conductor.backends.simulated import Transcript
from conductor.daemon.types import JobResult, JobType


def failing_transcript(exit_code: int = 2, stderr: str = "boom") -> Transcript:
    """Transcript that prints one line and exits non-zero."""
    return Transcript(chunks=["working...\n"], exit_code=exit_code, stderr=stderr)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class ScriptedRunner:
    """Stand-in for JobRunner that records concurrency.

    Each attempt sleeps ``delay`` seconds, then consumes the next entry of
    ``outcomes``: an exception is raised, a JobResult is returned, and an
    exhausted list means success. ``fail_with`` makes every attempt raise
    a fresh exception from that factory instead.
    """

    def __init__(
        self,
        outcomes: list[Any] | None = None,
        *,
        delay: float = 0.0,
        fail_with: Callable[[], BaseException] | None = None,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.fail_with = fail_with
        self.calls: list[tuple[str, float]] = []
        self.active: set[str] = set()
        self.max_active = 0
        self.overlaps: list[str] = []
        self.cancelled: list[str] = []

    async def run(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        job_id: str,
        sink: OutputSink,
    ) -> JobResult:
        if job_id in self.active:
            self.overlaps.append(job_id)
        self.active.add(job_id)
        self.max_active = max(self.max_active, len(self.active))
        self.calls.append((job_id, time.monotonic()))
        try:
            await asyncio.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with()
            outcome = self.outcomes.pop(0) if self.outcomes else None
            if isinstance(outcome, BaseException):
                raise outcome
            sink(f"{job_id} ran\n")
            return outcome or JobResult(output=f"ran {job_type.value}")
        except asyncio.CancelledError:
            self.cancelled.append(job_id)
            raise
        finally:
            self.active.discard(job_id)

    def attempts_for(self, job_id: str) -> list[float]:
        return [started for jid, started in self.calls if jid == job_id]
