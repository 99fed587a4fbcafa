"""Subprocess manager shared by the host and container backends.

Handles subprocess lifecycle: spawn, stream, timeout, cancellation,
cleanup. Each process runs in its own session (``start_new_session=True``)
so termination signals reach the whole process group, including any
children the tool spawned.

Security Note: Uses asyncio.create_subprocess_exec() which is shell-injection
safe - arguments are passed as a list, not interpolated into a shell command.

Example:

    mgr = ProcessManager()
    result = await mgr.run(
        ["ansible-playbook", "-i", "inventory.ini", "playbook.yml"],
        cwd=workdir,
        on_stdout=lambda chunk: print(chunk, end=""),
    )
    if result.returncode != 0:
        ...
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from conductor.backends.base import OutputSink
from conductor.core.errors import ExecutionError, ToolUnavailableError
from conductor.core.logging import get_logger

_logger = get_logger("backend.process_manager")

# Seconds between SIGTERM and SIGKILL when stopping a process group
GRACEFUL_TERMINATION_TIMEOUT: float = 5.0

READ_CHUNK_SIZE = 4096

SIGNAL_NAMES: dict[int, str] = {
    signal.SIGTERM: "SIGTERM",
    signal.SIGKILL: "SIGKILL",
    signal.SIGINT: "SIGINT",
    signal.SIGSEGV: "SIGSEGV",
    signal.SIGABRT: "SIGABRT",
    signal.SIGHUP: "SIGHUP",
    signal.SIGPIPE: "SIGPIPE",
}


def get_signal_name(sig_num: int) -> str:
    """Get human-readable signal name."""
    return SIGNAL_NAMES.get(sig_num, f"signal {sig_num}")


@dataclass
class ProcessResult:
    """Result of running a subprocess."""

    stdout: str
    stderr: str
    returncode: int | None
    exit_signal: int | None
    duration_seconds: float
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ProcessManager:
    """Manages subprocess lifecycle with guaranteed cleanup.

    - stdout is decoded incrementally and handed to ``on_stdout`` chunk by
      chunk, as the pipe delivers it
    - stderr is captured only
    - on timeout the process group gets SIGTERM, then SIGKILL after
      ``grace_seconds``
    - on task cancellation the process group is killed before the
      CancelledError propagates, so no orphan survives its job
    """

    def __init__(self, *, grace_seconds: float = GRACEFUL_TERMINATION_TIMEOUT) -> None:
        self.grace_seconds = grace_seconds

    async def run(
        self,
        cmd: list[str],
        *,
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
        on_stdout: OutputSink | None = None,
        timeout_seconds: float | None = None,
        stage: str = "execute",
    ) -> ProcessResult:
        """Run a subprocess to completion.

        Raises:
            ToolUnavailableError: The executable does not exist or is not
                executable.
            ExecutionError: The working directory does not exist.
        """
        if not cmd:
            raise ValueError("cmd must not be empty")
        if cwd is not None and not Path(cwd).is_dir():
            raise ExecutionError(
                f"Working directory does not exist: {cwd}",
                stage=stage,
            )
        if env is None:
            env = os.environ.copy()

        start_time = time.monotonic()
        _logger.debug(
            "process.starting",
            command=cmd[0],
            args_count=len(cmd) - 1,
            cwd=str(cwd) if cwd else None,
            timeout_seconds=timeout_seconds,
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise ToolUnavailableError(cmd[0], stage=stage) from exc
        except PermissionError as exc:
            raise ToolUnavailableError(
                cmd[0], f"{cmd[0]} is not executable", stage=stage,
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                self._stream(process, on_stdout),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            await self.terminate(process)
            duration = time.monotonic() - start_time
            _logger.warning(
                "process.timeout",
                pid=process.pid,
                timeout_seconds=timeout_seconds,
                duration_seconds=duration,
            )
            return ProcessResult(
                stdout="",
                stderr=f"Process timed out after {timeout_seconds}s",
                returncode=None,
                exit_signal=signal.SIGKILL,
                duration_seconds=duration,
                timed_out=True,
            )
        except BaseException:
            # Cancellation or a failing sink: never leave the child behind
            if process.returncode is None:
                _logger.warning("process.killing_orphan", pid=process.pid)
                await self.terminate(process)
            raise

        duration = time.monotonic() - start_time
        returncode = process.returncode
        exit_signal = None
        if returncode is not None and returncode < 0:
            exit_signal = -returncode
            returncode = None

        _logger.debug(
            "process.completed",
            pid=process.pid,
            returncode=returncode,
            exit_signal=exit_signal,
            duration_seconds=round(duration, 3),
            stdout_bytes=len(stdout),
            stderr_bytes=len(stderr),
        )
        return ProcessResult(
            stdout=stdout,
            stderr=stderr,
            returncode=returncode,
            exit_signal=exit_signal,
            duration_seconds=duration,
        )

    async def probe(self, cmd: list[str], *, timeout_seconds: float) -> bool:
        """Run a lightweight command; True only if it exits 0 in time."""
        try:
            result = await self.run(cmd, timeout_seconds=timeout_seconds, stage="probe")
        except ExecutionError:
            return False
        except OSError as exc:
            _logger.debug("process.probe_failed", command=cmd[0], error=str(exc))
            return False
        return result.success

    async def _stream(
        self,
        process: asyncio.subprocess.Process,
        on_stdout: OutputSink | None,
    ) -> tuple[str, str]:
        stdout_parts: list[str] = []
        stderr_chunks: list[bytes] = []

        async def read_stdout() -> None:
            if process.stdout is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                text = decoder.decode(chunk, final=not chunk)
                if text:
                    stdout_parts.append(text)
                    if on_stdout is not None:
                        on_stdout(text)
                if not chunk:
                    break

        async def read_stderr() -> None:
            if process.stderr is None:
                return
            while True:
                chunk = await process.stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                stderr_chunks.append(chunk)

        await asyncio.gather(read_stdout(), read_stderr())
        await process.wait()
        return "".join(stdout_parts), b"".join(stderr_chunks).decode("utf-8", errors="replace")

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, escalating to SIGKILL after the grace period."""
        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_seconds)
        except TimeoutError:
            _logger.warning("process.kill_escalated", pid=process.pid)
            self._signal_group(process, signal.SIGKILL)
            await process.wait()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
        # start_new_session makes the child its own group leader (pgid == pid)
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass


__all__ = [
    "GRACEFUL_TERMINATION_TIMEOUT",
    "ProcessManager",
    "ProcessResult",
    "get_signal_name",
]
