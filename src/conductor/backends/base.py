"""Abstract base for execution backends.

An execution backend runs one external command to completion, forwarding
stdout chunks to a sink as they arrive, and reports the captured output
and exit code. Containerized, host and simulated execution all satisfy
the same contract so the runner can pick one at run time.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

OutputSink = Callable[[str], None]
"""Receives each decoded stdout chunk, in arrival order."""


def null_sink(chunk: str) -> None:
    """Sink that discards output."""


@dataclass
class ExecutionResult:
    """Outcome of a command that exited with status 0."""

    output: str
    """Captured standard output."""

    stderr: str
    """Captured standard error (never forwarded to the sink)."""

    exit_code: int
    """Process exit code."""

    duration_seconds: float
    """Wall-clock duration of the process."""

    backend: str
    """Name of the backend that ran the command."""


class ExecutionBackend(ABC):
    """Runs external commands for the job runner."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name (e.g. "local", "container")."""

    @abstractmethod
    async def execute(
        self,
        command: list[str],
        *,
        cwd: Path,
        sink: OutputSink = null_sink,
        timeout_seconds: float | None = None,
        volumes: Mapping[Path, str] | None = None,
        stage: str = "execute",
    ) -> ExecutionResult:
        """Run ``command`` in ``cwd`` and wait for it to exit.

        Args:
            command: Executable and arguments (never passed through a shell).
            cwd: Working directory. Containerized backends mount it
                read/write and run the command inside it.
            sink: Receives stdout chunks as they arrive.
            timeout_seconds: Kill the process after this many seconds.
            volumes: Extra host directories the command needs, mapped to
                the path they should appear at inside a container.
                Host backends ignore this mapping.
            stage: Workflow stage name recorded on errors.

        Returns:
            ExecutionResult for a zero exit status.

        Raises:
            ExecutionError: Non-zero exit, signal, or timeout.
            ToolUnavailableError: The executable could not be started.
        """

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap probe for whether this backend can run commands right now."""

    def resolve_path(
        self,
        host_path: Path,
        volumes: Mapping[Path, str] | None = None,
    ) -> str:
        """Path under which ``host_path`` is visible to the command.

        Host backends see the host path unchanged.
        """
        return str(host_path)


__all__ = ["ExecutionBackend", "ExecutionResult", "OutputSink", "null_sink"]
