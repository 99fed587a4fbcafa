"""Host execution backend.

Runs tools directly on the conductor host through ``ProcessManager``.
Used when the container runtime is unavailable or disabled.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from conductor.backends.base import ExecutionBackend, ExecutionResult, OutputSink, null_sink
from conductor.backends.process_manager import ProcessManager, ProcessResult, get_signal_name
from conductor.core.errors import ExecutionError, JobTimeoutError
from conductor.core.logging import get_logger

_logger = get_logger("backend.local")

# Keep only the tail of stderr in error messages
STDERR_EXCERPT_CHARS = 2000


def check_result(
    result: ProcessResult,
    *,
    tool: str,
    stage: str,
    timeout_seconds: float | None = None,
) -> None:
    """Translate a finished process into an exception if it did not succeed.

    Raises:
        JobTimeoutError: The process was killed for exceeding its timeout.
        ExecutionError: Non-zero exit status or termination by signal.
    """
    if result.timed_out:
        raise JobTimeoutError(timeout_seconds or round(result.duration_seconds, 3))
    stderr = result.stderr[-STDERR_EXCERPT_CHARS:]
    if result.exit_signal is not None:
        raise ExecutionError(
            f"{tool} killed by {get_signal_name(result.exit_signal)}",
            stage=stage,
            stderr=stderr,
        )
    if result.returncode != 0:
        raise ExecutionError(
            f"{tool} exited with code {result.returncode}",
            stage=stage,
            exit_code=result.returncode,
            stderr=stderr,
        )


class LocalBackend(ExecutionBackend):
    """Run commands as host processes."""

    def __init__(self, process_manager: ProcessManager | None = None) -> None:
        self._processes = process_manager or ProcessManager()

    @property
    def name(self) -> str:
        return "local"

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
        _logger.info("local.executing", tool=command[0], stage=stage, cwd=str(cwd))
        result = await self._processes.run(
            command,
            cwd=cwd,
            on_stdout=sink,
            timeout_seconds=timeout_seconds,
            stage=stage,
        )
        check_result(result, tool=command[0], stage=stage, timeout_seconds=timeout_seconds)
        return ExecutionResult(
            output=result.stdout,
            stderr=result.stderr,
            exit_code=0,
            duration_seconds=result.duration_seconds,
            backend=self.name,
        )

    async def is_available(self) -> bool:
        return True


__all__ = ["LocalBackend", "check_result"]
