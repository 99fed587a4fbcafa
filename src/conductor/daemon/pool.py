"""Worker pool: bounded concurrent execution of queued jobs.

Each of ``concurrency`` slots is a long-lived asyncio task that loops:

    dequeue -> mark running -> run attempt -> record outcome

The attempt itself runs in its own task so it can be cancelled on
request without disturbing the slot. Outcomes follow one state machine:

- success: ``completed`` with the runner's result
- retriable error with attempts left: back to ``queued``; the queue
  re-delivers the entry after its backoff delay
- anything else: ``failed`` with the error details
- cancellation request: ``cancelled``
- timeout: ``failed`` (timeouts are never retried)

Only the slot holding a job writes its registry record, and a slot runs
one job at a time, so no two slots ever hold the same job ``running``.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

from conductor.core.errors import ConductorError, JobTimeoutError, QueueClosedError
from conductor.core.logging import ExecutionContext, get_logger, with_context
from conductor.daemon.event_bus import EventBroadcaster
from conductor.daemon.queue import JobQueue, QueueEntry
from conductor.daemon.registry import JobRegistry
from conductor.daemon.task_utils import log_task_exception
from conductor.daemon.types import EventKind, Job, JobResult
from conductor.runner.runner import JobRunner

_logger = get_logger("daemon.pool")

SHUTDOWN_MESSAGE = "worker pool shut down"


class WorkerPool:
    """Fixed-size pool of worker slots fed by a JobQueue.

    Args:
        queue: Source of ready entries.
        registry: Authoritative job records.
        runner: Executes one attempt of a job.
        broadcaster: Receives started/log/completed/failed/cancelled events.
        concurrency: Number of slots.
        job_timeout_seconds: Per-attempt limit for jobs whose options don't
            set one. None means unlimited.
        max_log_bytes: Tail of stdout kept on each job record.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        registry: JobRegistry,
        runner: JobRunner,
        broadcaster: EventBroadcaster,
        concurrency: int = 3,
        job_timeout_seconds: float | None = None,
        max_log_bytes: int = 1024 * 1024,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._registry = registry
        self._runner = runner
        self._broadcaster = broadcaster
        self._concurrency = concurrency
        self._job_timeout_seconds = job_timeout_seconds
        self._max_log_bytes = max_log_bytes
        self._slots: list[asyncio.Task[None]] = []
        self._running: dict[str, asyncio.Task[JobResult]] = {}
        self._cancel_requested: dict[str, str] = {}

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def started(self) -> bool:
        return bool(self._slots)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    def start(self) -> None:
        """Spawn the slot tasks."""
        if self._slots:
            return
        for slot in range(self._concurrency):
            task = asyncio.create_task(self._slot_loop(slot), name=f"conductor-slot-{slot}")
            task.add_done_callback(
                lambda t: log_task_exception(t, _logger, "pool.slot_died")
            )
            self._slots.append(task)
        _logger.info("pool.started", concurrency=self._concurrency)

    async def cancel(self, job_id: str, reason: str = "Cancelled by request") -> bool:
        """Cancel the running attempt of ``job_id``.

        The job ends ``cancelled`` once its process group is gone and its
        scoped directory removed.

        A failed attempt whose outcome is still being recorded is caught
        before its retry is scheduled.

        Returns:
            True if the job has been asked to stop.
        """
        task = self._running.get(job_id)
        if task is None:
            if not self._queue.is_active(job_id):
                return False
            # Dequeued but the attempt has not started yet
            self._cancel_requested[job_id] = reason
            _logger.info("pool.cancel_requested", job_id=job_id, reason=reason)
            return True
        if task.done():
            if task.cancelled() or task.exception() is None:
                return False
            # Attempt failed; the retry-or-fail decision has not been recorded yet
            self._cancel_requested[job_id] = reason
            _logger.info("pool.cancel_requested", job_id=job_id, reason=reason)
            return True
        self._cancel_requested[job_id] = reason
        task.cancel(msg=reason)
        _logger.info("pool.cancel_requested", job_id=job_id, reason=reason)
        return True

    async def shutdown(self, *, timeout: float | None = None) -> None:
        """Stop all slots.

        Waits up to ``timeout`` seconds for running attempts to finish,
        then cancels what is left; interrupted jobs end ``failed``. A
        timeout of 0 or None cancels immediately. Jobs still waiting in
        the queue (delayed or backing off before a retry) end ``failed``
        as well.
        """
        if not self._slots:
            return
        _logger.info(
            "pool.shutting_down",
            running_jobs=self.running_count,
            timeout_seconds=timeout,
        )
        await self._queue.close()

        pending = [t for t in self._slots if not t.done()]
        if pending and timeout:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            pending = list(still_running)
        for task in pending:
            task.cancel(msg="worker pool shutdown")
        results = await asyncio.gather(*self._slots, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                _logger.warning(
                    "pool.shutdown_task_exception",
                    error=str(result),
                    error_type=type(result).__name__,
                )
        self._slots.clear()
        await self._fail_abandoned(await self._queue.drain())
        _logger.info("pool.stopped")

    # ─── Slot loop ─────────────────────────────────────────────────

    async def _slot_loop(self, slot: int) -> None:
        while True:
            try:
                entry = await self._queue.dequeue()
            except QueueClosedError:
                _logger.debug("pool.slot_exiting", slot=slot)
                return
            try:
                await self._process(entry, slot)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Registry or bookkeeping failure; the slot keeps serving
                _logger.exception("pool.slot_error", slot=slot, job_id=entry.job_id)

    async def _process(self, entry: QueueEntry, slot: int) -> None:
        job = await self._registry.get(entry.job_id)
        if job is None:
            _logger.warning("pool.unknown_job", job_id=entry.job_id, slot=slot)
            await self._queue.fail(entry)
            return
        if job.status.is_terminal:
            _logger.info("pool.skipping_terminal_job", job_id=job.job_id, status=job.status.value)
            await self._queue.fail(entry)
            return
        if job.job_id in self._cancel_requested:
            reason = self._cancel_requested.pop(job.job_id)
            await self._finish_cancelled(job, entry, reason)
            return

        job.mark_running()
        await self._registry.save(job)
        self._broadcaster.publish(
            job.job_id,
            EventKind.STARTED,
            {"attempt": job.attempts, "max_attempts": entry.options.attempts, "slot": slot},
        )
        _logger.info(
            "pool.job_started",
            job_id=job.job_id,
            job_type=job.job_type.value,
            attempt=job.attempts,
            slot=slot,
        )

        ctx = ExecutionContext(
            job_id=job.job_id,
            attempt=job.attempts,
            job_type=job.job_type.value,
            component="runner",
            slot=slot,
        )
        attempt = asyncio.create_task(
            self._run_attempt(job, entry, ctx),
            name=f"conductor-job-{job.job_id}",
        )
        self._running[job.job_id] = attempt
        if job.job_id in self._cancel_requested:
            attempt.cancel(msg=self._cancel_requested[job.job_id])
        try:
            result = await attempt
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                # The slot itself is being stopped
                await self._finish_failed(
                    job, entry, {"error": SHUTDOWN_MESSAGE, "error_type": "internal"},
                )
                raise
            reason = self._cancel_requested.get(job.job_id, "Cancelled")
            await self._finish_cancelled(job, entry, reason)
        except Exception as exc:
            await self._handle_error(job, entry, exc)
        else:
            await self._finish_completed(job, entry, result)
        finally:
            self._running.pop(job.job_id, None)
            self._cancel_requested.pop(job.job_id, None)

    async def _run_attempt(self, job: Job, entry: QueueEntry, ctx: ExecutionContext) -> JobResult:
        timeout = entry.options.timeout_seconds or self._job_timeout_seconds

        def sink(chunk: str) -> None:
            job.append_log(chunk, self._max_log_bytes)
            self._broadcaster.publish(
                job.job_id,
                EventKind.LOG,
                {"text": chunk, "timestamp": datetime.now(UTC).isoformat()},
            )

        with with_context(ctx):
            try:
                return await asyncio.wait_for(
                    self._runner.run(job.job_type, job.payload, job_id=job.job_id, sink=sink),
                    timeout=timeout,
                )
            except TimeoutError as exc:
                raise JobTimeoutError(timeout or 0.0) from exc

    # ─── Outcomes ──────────────────────────────────────────────────

    async def _fail_abandoned(self, entries: list[QueueEntry]) -> None:
        for entry in entries:
            job = await self._registry.get(entry.job_id)
            if job is None or job.status.is_terminal:
                continue
            error = {
                "error": SHUTDOWN_MESSAGE,
                "error_type": "internal",
                "attempts": job.attempts,
            }
            job.mark_failed(error)
            await self._registry.save(job)
            self._broadcaster.publish(job.job_id, EventKind.FAILED, error)
            _logger.warning("pool.job_abandoned", job_id=job.job_id, attempts=job.attempts)

    async def _handle_error(self, job: Job, entry: QueueEntry, exc: Exception) -> None:
        if isinstance(exc, ConductorError):
            error = exc.to_dict()
            retriable = exc.retriable
            _logger.warning(
                "pool.attempt_failed",
                job_id=job.job_id,
                attempt=job.attempts,
                error=exc.message,
                error_type=exc.error_type,
            )
        else:
            error = {"error": f"Unexpected internal error: {exc}", "error_type": "internal"}
            retriable = True
            _logger.exception("pool.attempt_crashed", job_id=job.job_id, attempt=job.attempts)
        error["attempts"] = job.attempts

        if job.job_id in self._cancel_requested:
            await self._finish_cancelled(job, entry, self._cancel_requested[job.job_id])
            return
        if not (retriable and self._queue.can_retry(entry)):
            await self._finish_failed(job, entry, error)
            return

        job.mark_queued()
        await self._registry.save(job)
        if job.job_id in self._cancel_requested:
            await self._finish_cancelled(job, entry, self._cancel_requested[job.job_id])
            return
        try:
            delay = await self._queue.retry(entry)
        except QueueClosedError:
            error = {**error, "error": f"{error['error']} ({SHUTDOWN_MESSAGE} before retry)"}
            job.mark_failed(error)
            await self._registry.save(job)
            self._broadcaster.publish(job.job_id, EventKind.FAILED, error)
            return
        _logger.info(
            "pool.retry_scheduled",
            job_id=job.job_id,
            next_attempt=job.attempts + 1,
            max_attempts=entry.options.attempts,
            delay_seconds=round(delay, 3),
        )

    async def _finish_completed(self, job: Job, entry: QueueEntry, result: JobResult) -> None:
        job.mark_completed(result)
        await self._registry.save(job)
        await self._queue.complete(entry)
        self._broadcaster.publish(job.job_id, EventKind.COMPLETED, dict(job.result or {}))
        _logger.info(
            "pool.job_completed",
            job_id=job.job_id,
            attempt=job.attempts,
            backend=result.backend,
        )

    async def _finish_failed(self, job: Job, entry: QueueEntry, error: dict[str, Any]) -> None:
        job.mark_failed(error)
        await self._registry.save(job)
        await self._queue.fail(entry)
        self._broadcaster.publish(job.job_id, EventKind.FAILED, error)
        _logger.error(
            "pool.job_failed",
            job_id=job.job_id,
            attempts=job.attempts,
            error=error.get("error"),
            error_type=error.get("error_type"),
        )

    async def _finish_cancelled(self, job: Job, entry: QueueEntry, reason: str) -> None:
        job.mark_cancelled(reason)
        await self._registry.save(job)
        await self._queue.fail(entry)
        self._broadcaster.publish(job.job_id, EventKind.CANCELLED, {"reason": reason})
        _logger.info("pool.job_cancelled", job_id=job.job_id, reason=reason)


__all__ = ["SHUTDOWN_MESSAGE", "WorkerPool"]
