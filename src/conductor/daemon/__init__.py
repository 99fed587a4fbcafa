"""Conductor daemon: job queue, worker pool, registry and event fan-out.

The pool and service modules depend on the runner package and are
imported from their own modules (``conductor.daemon.service``).
"""

from conductor.daemon.config import ConductorConfig, load_config
from conductor.daemon.event_bus import EventBroadcaster, Subscription
from conductor.daemon.queue import JobQueue, QueueEntry, QueueStats
from conductor.daemon.registry import InMemoryJobRegistry, JobRegistry, SqliteJobRegistry
from conductor.daemon.types import (
    EventKind,
    Job,
    JobEvent,
    JobOptions,
    JobResult,
    JobStatus,
    JobType,
)

__all__ = [
    "ConductorConfig",
    "EventBroadcaster",
    "EventKind",
    "InMemoryJobRegistry",
    "Job",
    "JobEvent",
    "JobOptions",
    "JobQueue",
    "JobRegistry",
    "JobResult",
    "JobStatus",
    "JobType",
    "QueueEntry",
    "QueueStats",
    "SqliteJobRegistry",
    "Subscription",
    "load_config",
]
