"""Exception hierarchy for Conductor.

All Conductor exceptions inherit from ConductorError, enabling callers to
catch broad (ConductorError) or narrow (e.g., ToolUnavailableError).
Each error knows whether a failed attempt should be retried and how it
serializes into a job's failure result.
"""

from __future__ import annotations

from typing import Any


class ConductorError(Exception):
    """Base exception for all Conductor errors."""

    error_type: str = "internal"
    retriable: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Serialize into the ``result`` payload of a failed job."""
        return {"error": self.message, "error_type": self.error_type}


class ValidationError(ConductorError):
    """Missing or malformed job payload.

    Raised at submission time so the job never enters the queue. Never
    retried if it surfaces during execution.
    """

    error_type = "validation"
    retriable = False

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field is not None:
            result["field"] = self.field
        return result


class ExecutionError(ConductorError):
    """An external process failed: non-zero exit, signal, or spawn failure.

    Attributes:
        stage: Workflow stage that failed (e.g. "playbook", "init", "plan").
        exit_code: Process exit code, if the process exited normally.
        stderr: Captured standard error text.
    """

    error_type = "execution"

    def __init__(
        self,
        message: str,
        *,
        stage: str = "execute",
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.exit_code = exit_code
        self.stderr = stderr

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["stage"] = self.stage
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        if self.stderr:
            result["stderr"] = self.stderr
        return result


class ToolUnavailableError(ExecutionError):
    """The external tool is not installed or cannot be invoked.

    Subclasses ExecutionError so a failed fallback surfaces as an execution
    failure, while ``error_type`` keeps "misconfigured environment" apart
    from "the automation itself failed".
    """

    error_type = "tool_unavailable"

    def __init__(self, tool: str, message: str | None = None, *, stage: str = "execute") -> None:
        super().__init__(
            message or f"{tool} is not installed or not on PATH",
            stage=stage,
            exit_code=127,
        )
        self.tool = tool


class JobTimeoutError(ExecutionError):
    """A job attempt exceeded its configured timeout and was terminated."""

    error_type = "timeout"
    retriable = False

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            f"Job timed out after {timeout_seconds}s",
            stage="timeout",
        )
        self.timeout_seconds = timeout_seconds


class ResourceError(ConductorError):
    """A scoped resource (e.g. temporary directory) could not be created or cleaned."""

    error_type = "resource"

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class InvalidTransitionError(ConductorError):
    """A job status change that violates the lifecycle state machine."""

    retriable = False


class QueueClosedError(ConductorError):
    """Raised by JobQueue.dequeue() after the queue has been closed."""


class JobNotFoundError(ConductorError):
    """Raised when an operation refers to an unknown job id."""

    retriable = False


__all__ = [
    "ConductorError",
    "ExecutionError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "JobTimeoutError",
    "QueueClosedError",
    "ResourceError",
    "ToolUnavailableError",
    "ValidationError",
]
