"""Helpers for background asyncio.Task lifecycles in the daemon."""

from __future__ import annotations

import asyncio
from typing import Any

from conductor.core.logging import ConductorLogger


def log_task_exception(
    task: asyncio.Task[Any],
    logger: ConductorLogger,
    event: str,
    *,
    level: str = "error",
) -> BaseException | None:
    """Log the exception a finished task died with, if any.

    Meant for ``add_done_callback`` handlers, where an exception would
    otherwise only surface as "Task exception was never retrieved" at
    garbage collection.

    Returns:
        The exception, or None if the task finished normally or was
        cancelled.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        log_fn = getattr(logger, level, logger.error)
        log_fn(event, error=str(exc), error_class=type(exc).__name__, task_name=task.get_name())
    return exc


__all__ = ["log_task_exception"]
