"""Core infrastructure shared by every Conductor component."""

from conductor.core.logging import (
    ExecutionContext,
    configure_logging,
    get_logger,
    with_context,
)

__all__ = [
    "ExecutionContext",
    "configure_logging",
    "get_logger",
    "with_context",
]
