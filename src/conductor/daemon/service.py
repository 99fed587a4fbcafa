"""Job service: the facade callers use to submit and observe jobs.

Owns the wiring of the registry, queue, worker pool, runner and event
broadcaster. Every collaborator is constructed here (or injected by the
caller); none of them reaches for global state.

The service has no dependency on Rich, Typer or any transport. The CLI
and any API layer are thin wrappers around it.

Usage::

    async with JobService(config) as service:
        job_id = await service.submit_job("echo", "hello", {"message": "ping"})
        job = await service.wait_for_job(job_id, timeout=30)
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any

from conductor.core.errors import JobNotFoundError, QueueClosedError, ValidationError
from conductor.core.logging import get_logger
from conductor.daemon.config import ConductorConfig
from conductor.daemon.event_bus import EventBroadcaster, Subscription
from conductor.daemon.pool import WorkerPool
from conductor.daemon.queue import JobQueue, QueueStats
from conductor.daemon.registry import InMemoryJobRegistry, JobRegistry, SqliteJobRegistry
from conductor.daemon.types import EventKind, Job, JobOptions, JobStatus, JobType
from conductor.runner.payloads import validate_payload
from conductor.runner.runner import JobRunner

_logger = get_logger("daemon.service")


def build_registry(config: ConductorConfig) -> JobRegistry:
    """Create the registry selected by ``config.registry.backend``."""
    if config.registry.backend == "sqlite":
        return SqliteJobRegistry(config.registry.db_path.expanduser())
    return InMemoryJobRegistry(max_job_history=config.registry.max_job_history)


class JobService:
    """Submit, query, observe and cancel jobs.

    Args:
        config: Conductor configuration. Defaults apply when omitted.
        registry: Job record store. Built from ``config.registry`` if omitted.
        runner: Attempt executor. Built from ``config.execution`` (and
            ``config.mode``) if omitted.
        broadcaster: Event fan-out. Built from ``config.events`` if omitted.
    """

    def __init__(
        self,
        config: ConductorConfig | None = None,
        *,
        registry: JobRegistry | None = None,
        runner: JobRunner | None = None,
        broadcaster: EventBroadcaster | None = None,
    ) -> None:
        self.config = config or ConductorConfig()
        self.broadcaster = broadcaster or EventBroadcaster(
            max_queue_size=self.config.events.max_queue_size,
        )
        self.registry = registry or build_registry(self.config)
        self.runner = runner or JobRunner.from_config(
            self.config.execution, demo=self.config.mode == "demo",
        )
        self.queue = JobQueue(self.broadcaster)
        self.pool = WorkerPool(
            queue=self.queue,
            registry=self.registry,
            runner=self.runner,
            broadcaster=self.broadcaster,
            concurrency=self.config.workers,
            job_timeout_seconds=self.config.job_timeout_seconds,
            max_log_bytes=self.config.execution.max_log_bytes,
        )
        self._started = False

    # ─── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        """Open the registry and start the worker slots."""
        if self._started:
            return
        await self.registry.open()
        self.pool.start()
        self._started = True
        _logger.info(
            "service.started",
            mode=self.config.mode,
            workers=self.config.workers,
            registry=self.config.registry.backend,
        )

    async def shutdown(self) -> None:
        """Stop the pool, end every subscription and close the registry."""
        if not self._started:
            return
        await self.pool.shutdown(timeout=self.config.shutdown_timeout_seconds)
        self.broadcaster.close()
        await self.registry.close()
        self._started = False
        _logger.info("service.stopped")

    async def __aenter__(self) -> JobService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ─── Submission ────────────────────────────────────────────────

    async def submit_job(
        self,
        job_type: JobType | str,
        name: str,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> str:
        """Validate and enqueue a job.

        Returns immediately with the job ``queued``.

        Raises:
            ValidationError: Unknown job type, malformed payload or options.
                The job is not recorded.
            QueueClosedError: The service is shutting down.
        """
        try:
            job_type = JobType(job_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown job type: {job_type}", field="type") from exc
        validate_payload(job_type, payload)
        job_options = self._resolve_options(options)
        if self.queue.closed:
            raise QueueClosedError("Conductor is shutting down")

        job = Job(
            job_type=job_type,
            name=name or job_type.value,
            payload=copy.deepcopy(payload),
            max_attempts=job_options.attempts,
        )
        await self.registry.add(job)
        job.mark_queued()
        await self.registry.save(job)
        await self.queue.enqueue(job.job_id, job.job_type, job.payload, job_options)
        _logger.info(
            "service.job_submitted",
            job_id=job.job_id,
            job_type=job_type.value,
            job_name=job.name,
            attempts=job_options.attempts,
        )
        return job.job_id

    def _resolve_options(self, options: JobOptions | dict[str, Any] | None) -> JobOptions:
        if options is None:
            return self.config.job_defaults.model_copy(deep=True)
        if isinstance(options, JobOptions):
            return options
        merged = {**self.config.job_defaults.model_dump(), **options}
        try:
            return JobOptions.model_validate(merged)
        except ValueError as exc:
            raise ValidationError(f"Invalid job options: {exc}", field="options") from exc

    # ─── Queries ───────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Job | None:
        return await self.registry.get(job_id)

    async def list_jobs(
        self,
        limit: int | None = None,
        *,
        status: JobStatus | None = None,
    ) -> list[Job]:
        """Jobs ordered most recent first."""
        return await self.registry.list_jobs(limit=limit, status=status)

    def get_queue_stats(self) -> QueueStats:
        return self.queue.stats()

    # ─── Observation ───────────────────────────────────────────────

    def subscribe(self, job_id: str) -> Subscription:
        """Receive every event published for ``job_id`` from now on."""
        return self.broadcaster.subscribe(job_id)

    def unsubscribe(self, job_id: str, subscription: Subscription) -> bool:
        return self.broadcaster.unsubscribe(job_id, subscription)

    async def wait_for_job(self, job_id: str, timeout: float | None = None) -> Job:
        """Wait until ``job_id`` reaches a terminal status.

        Returns the job as recorded at that point. If the service shuts
        down first, returns the job in whatever state it was left.

        Raises:
            JobNotFoundError: Unknown job id.
            TimeoutError: ``timeout`` elapsed first.
        """
        # Subscribe before reading so a terminal event can't slip between
        sub = self.broadcaster.subscribe(job_id)
        try:
            job = await self.registry.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if not job.status.is_terminal:
                await asyncio.wait_for(self._until_terminal(sub), timeout=timeout)
        finally:
            sub.close()
        job = await self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    @staticmethod
    async def _until_terminal(sub: Subscription) -> None:
        async for event in sub:
            if event.kind.is_terminal:
                return

    # ─── Control ───────────────────────────────────────────────────

    async def cancel_job(self, job_id: str, reason: str = "Cancelled by request") -> bool:
        """Cancel a queued or running job.

        Returns:
            False if the job already finished.

        Raises:
            JobNotFoundError: Unknown job id.
        """
        job = await self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.status.is_terminal:
            return False

        if await self.queue.remove(job_id):
            job.mark_cancelled(reason)
            await self.registry.save(job)
            self.broadcaster.publish(job_id, EventKind.CANCELLED, {"reason": reason})
            _logger.info("service.job_cancelled", job_id=job_id, while_status="queued")
            return True

        return await self.pool.cancel(job_id, reason)


__all__ = ["JobService", "build_registry"]
