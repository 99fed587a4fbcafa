"""Shared data types for the Conductor daemon.

Defines the job model and its lifecycle state machine, per-job scheduling
options, execution results and the event envelope delivered to subscribers.
Option models are Pydantic v2 so they validate user input at the
submission boundary; runtime records are plain dataclasses.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from conductor.core.errors import InvalidTransitionError


class JobType(str, Enum):
    """Kinds of work the runner knows how to execute."""

    PLAYBOOK_RUN = "playbook-run"
    PLAN = "plan"
    APPLY = "apply"
    ECHO = "echo"


class JobStatus(str, Enum):
    """Lifecycle status of a job.

    Inherits from ``str`` so statuses serialize directly as plain strings.
    """

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# running -> queued is the retry edge; everything else moves forward only
_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
        JobStatus.QUEUED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class EventKind(str, Enum):
    """Lifecycle events published for each job."""

    QUEUED = "queued"
    STARTED = "started"
    LOG = "log"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EventKind.COMPLETED, EventKind.FAILED, EventKind.CANCELLED)


# ─── Scheduling options ────────────────────────────────────────────


class BackoffPolicy(BaseModel):
    """Delay between a failed attempt and the next one."""

    kind: Literal["exponential", "fixed"] = Field(
        default="exponential",
        description="exponential doubles the base delay after every failure; "
        "fixed always waits the base delay",
    )
    delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Base delay in seconds",
    )

    def compute(self, attempts_made: int) -> float:
        """Delay before the next attempt after ``attempts_made`` failures."""
        if self.kind == "fixed" or attempts_made < 1:
            return self.delay_seconds
        return self.delay_seconds * (2 ** (attempts_made - 1))


class RetentionPolicy(BaseModel):
    """How many terminal queue entries the queue keeps for its counters."""

    completed: int = Field(default=50, ge=0)
    failed: int = Field(default=20, ge=0)


class JobOptions(BaseModel):
    """Per-job scheduling options accepted at submission."""

    attempts: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Maximum attempts including the first",
    )
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    delay_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Deferral before the first attempt becomes eligible",
    )
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    timeout_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Per-attempt wall-clock limit. None falls back to the "
        "conductor-wide job_timeout_seconds.",
    )


# ─── Runtime records ───────────────────────────────────────────────


@dataclass
class JobResult:
    """Structured outcome of a successful job attempt."""

    output: str
    exit_code: int = 0
    summary: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float | None = None
    backend: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "output": self.output,
            "exit_code": self.exit_code,
            "summary": self.summary,
        }
        if self.duration_seconds is not None:
            result["duration_seconds"] = round(self.duration_seconds, 3)
        if self.backend is not None:
            result["backend"] = self.backend
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result


def _new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    """One requested automation task and its lifecycle record.

    Status changes go through the ``mark_*`` methods, which enforce the
    lifecycle state machine and set timestamps exactly once.
    """

    job_type: JobType
    name: str
    payload: dict[str, Any]
    job_id: str = field(default_factory=_new_job_id)
    status: JobStatus = JobStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    result: dict[str, Any] | None = None
    attempts: int = 0
    max_attempts: int = 1
    logs: str = ""

    def _transition(self, target: JobStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.job_id}: cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def mark_queued(self) -> None:
        """Enter ``queued`` on submission or when re-enqueued for a retry."""
        self._transition(JobStatus.QUEUED)

    def mark_running(self) -> None:
        """Enter ``running`` at the start of an attempt."""
        self._transition(JobStatus.RUNNING)
        self.attempts += 1
        if self.started_at is None:
            self.started_at = time.time()

    def mark_completed(self, result: JobResult) -> None:
        self._transition(JobStatus.COMPLETED)
        self.result = result.to_dict()
        self._set_completed_at()

    def mark_failed(self, error: dict[str, Any]) -> None:
        self._transition(JobStatus.FAILED)
        self.result = error
        self._set_completed_at()

    def mark_cancelled(self, reason: str = "Cancelled") -> None:
        self._transition(JobStatus.CANCELLED)
        self.result = {"error": reason, "error_type": "cancelled"}
        self._set_completed_at()

    def _set_completed_at(self) -> None:
        if self.completed_at is None:
            self.completed_at = time.time()

    def append_log(self, chunk: str, max_bytes: int) -> None:
        """Append stdout text, keeping only the last ``max_bytes`` characters."""
        if max_bytes <= 0:
            return
        self.logs = (self.logs + chunk)[-max_bytes:]

    def to_dict(self, *, include_logs: bool = False) -> dict[str, Any]:
        """Serialize in the persisted job record shape."""
        result: dict[str, Any] = {
            "job_id": self.job_id,
            "name": self.name,
            "type": self.job_type.value,
            "status": self.status.value,
            "payload": self.payload,
            "result": self.result,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
        if include_logs:
            result["logs"] = self.logs
        return result


@dataclass(frozen=True)
class JobEvent:
    """Envelope delivered to subscribers of a job's channel."""

    job_id: str
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "timestamp": datetime.fromtimestamp(self.timestamp, UTC).isoformat(),
        }


__all__ = [
    "BackoffPolicy",
    "EventKind",
    "Job",
    "JobEvent",
    "JobOptions",
    "JobResult",
    "JobStatus",
    "JobType",
    "RetentionPolicy",
    "TERMINAL_STATUSES",
]
