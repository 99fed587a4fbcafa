"""Structured logging for Conductor.

structlog renders every record; the stdlib logging module only routes
the rendered lines to stderr and an optional rotating file. Inside a job
attempt the worker pool sets an ``ExecutionContext`` so every line logged
by the runner and backends carries the job id, attempt and slot.

Example usage:
    from conductor.core.logging import get_logger, configure_logging, with_context

    configure_logging(level="DEBUG", format="console")

    logger = get_logger("daemon.pool")
    logger.info("pool.started", workers=3)

    with with_context(ExecutionContext(job_id="4f1c...", attempt=2)):
        logger.info("runner.starting")  # carries job_id and attempt
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Keys containing any of these are redacted
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "auth",
    "bearer",
    "vault_pass",
    "become_pass",
})

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console", "both"]

MAX_LOG_FILE_BYTES = 50 * 1024 * 1024
LOG_FILE_BACKUPS = 5


@dataclass(frozen=True)
class ExecutionContext:
    """Correlation fields for one job attempt.

    Attributes:
        job_id: The job identifier.
        attempt: 1-indexed attempt number.
        job_type: The job type being executed.
        component: Component doing the work.
        slot: Worker slot index executing the job.
    """

    job_id: str
    attempt: int | None = None
    job_type: str | None = None
    component: str = "unknown"
    slot: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Fields that are set, ready to merge into a log record."""
        return {key: value for key, value in asdict(self).items() if value is not None}


# One value per asyncio task, so concurrent attempts never mix contexts
_current_context: ContextVar[ExecutionContext | None] = ContextVar(
    "conductor_context", default=None
)


def get_current_context() -> ExecutionContext | None:
    return _current_context.get()


@contextmanager
def with_context(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    """Make ``ctx`` the current ExecutionContext for the block."""
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in SENSITIVE_PATTERNS)


def _redact(key: Any, value: Any) -> Any:
    return "[REDACTED]" if isinstance(key, str) and _is_sensitive(key) else value


def _redact_sensitive(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Redact sensitive keys at the top level and one mapping deep."""
    return {
        key: (
            {k: _redact(k, v) for k, v in value.items()}
            if isinstance(value, dict)
            else _redact(key, value)
        )
        for key, value in event_dict.items()
    }


def _merge_execution_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add the current ExecutionContext; explicit fields win."""
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class ConductorLogger:
    """structlog logger bound to a component name.

    The structlog logger is looked up on every call, so module-level
    loggers created before ``configure_logging()`` still honour it.
    """

    def __init__(self, component: str, **context: Any) -> None:
        self._context: dict[str, Any] = {"component": component, **context}

    def bind(self, **context: Any) -> ConductorLogger:
        return ConductorLogger(**{**self._context, **context})

    def _log(self, method: str, event: str, kw: dict[str, Any]) -> None:
        getattr(structlog.get_logger().bind(**self._context), method)(event, **kw)

    def debug(self, event: str, **kw: Any) -> None:
        self._log("debug", event, kw)

    def info(self, event: str, **kw: Any) -> None:
        self._log("info", event, kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._log("warning", event, kw)

    def error(self, event: str, **kw: Any) -> None:
        self._log("error", event, kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._log("exception", event, kw)


def configure_logging(
    level: LogLevel = "INFO",
    format: LogFormat = "console",  # noqa: A002
    file_path: Path | None = None,
) -> None:
    """Configure Conductor structured logging.

    Args:
        level: Minimum log level to capture.
        format: "console" for human-readable lines, "json" for one JSON
            object per line, "both" for console lines on stderr plus the
            same lines in ``file_path``.
        file_path: Optional rotating log file. Required for "both". A
            JSON log with a file goes only to the file.

    Raises:
        ValueError: If format="both" but file_path is not provided.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    handlers: list[logging.Handler] = []
    if format != "json" or file_path is None:
        # stdout is reserved for job output
        handlers.append(logging.StreamHandler(sys.stderr))
    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                file_path,
                maxBytes=MAX_LOG_FILE_BYTES,
                backupCount=LOG_FILE_BACKUPS,
                encoding="utf-8",
            )
        )

    log_level = getattr(logging, level)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=format == "console")

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _redact_sensitive,
            _merge_execution_context,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **context: Any) -> ConductorLogger:
    """Logger bound to a component name such as ``"daemon.pool"``."""
    return ConductorLogger(component, **context)


__all__ = [
    "ConductorLogger",
    "ExecutionContext",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
