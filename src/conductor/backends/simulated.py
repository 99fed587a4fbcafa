"""Deterministic delay-based backend for demo mode and tests.

Instead of spawning a process, ``SimulatedBackend`` replays a scripted
``Transcript``: stdout chunks emitted to the sink one after another with a
fixed delay between them, followed by a scripted exit code. Transcripts
are selected by the command's executable and subcommand, so one backend
instance can stand in for Ansible and Terraform at once.

The built-in demo transcripts reproduce canned tool output; apply takes
longer than plan, as the real tools would.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from conductor.backends.base import ExecutionBackend, ExecutionResult, OutputSink, null_sink
from conductor.core.errors import ExecutionError, JobTimeoutError, ToolUnavailableError
from conductor.core.logging import get_logger

_logger = get_logger("backend.simulated")


@dataclass
class Transcript:
    """Scripted outcome of one simulated command."""

    chunks: list[str] = field(default_factory=list)
    chunk_delay_seconds: float = 0.0
    exit_code: int = 0
    stderr: str = ""


_PLAYBOOK_TRANSCRIPT = Transcript(
    chunks=[
        "PLAY [all] *******************************************************************\n\n",
        "TASK [Gathering Facts] *******************************************************\n",
        "ok: [localhost]\n\n",
        "TASK [Debug message] *********************************************************\n",
        'ok: [localhost] => {\n    "msg": "Playbook executed by Conductor"\n}\n\n',
        "PLAY RECAP *******************************************************************\n",
        "localhost                  : ok=2    changed=0    unreachable=0    failed=0"
        "    skipped=0    rescued=0    ignored=0\n",
    ],
    chunk_delay_seconds=0.7,
)

_INIT_TRANSCRIPT = Transcript(
    chunks=[
        "Initializing the backend...\n",
        "Initializing provider plugins...\n",
        "Terraform has been successfully initialized!\n",
    ],
    chunk_delay_seconds=0.2,
)

_PLAN_TRANSCRIPT = Transcript(
    chunks=[
        "Terraform used the selected providers to generate the following execution plan.\n",
        "Resource actions are indicated with the following symbols:\n  + create\n\n",
        "Terraform will perform the following actions:\n\n",
        '  # aws_instance.example will be created\n  + resource "aws_instance" "example" {\n'
        '      + ami                    = "ami-0c02fb55956c7d316"\n'
        '      + instance_type          = "t3.micro"\n    }\n\n',
        "Plan: 1 to add, 0 to change, 0 to destroy.\n",
    ],
    chunk_delay_seconds=0.5,
)

_APPLY_TRANSCRIPT = Transcript(
    chunks=[
        "aws_instance.example: Creating...\n",
        "aws_instance.example: Still creating... [10s elapsed]\n",
        "aws_instance.example: Still creating... [20s elapsed]\n",
        "aws_instance.example: Creation complete after 22s [id=i-0abc123def456]\n\n",
        "Apply complete! Resources: 1 added, 0 changed, 0 destroyed.\n\n",
        'Outputs:\n\ninstance_ip = "54.123.45.67"\n',
    ],
    chunk_delay_seconds=1.0,
)

DEMO_TRANSCRIPTS: dict[str, Transcript] = {
    "ansible-playbook": _PLAYBOOK_TRANSCRIPT,
    "terraform init": _INIT_TRANSCRIPT,
    "terraform plan": _PLAN_TRANSCRIPT,
    "terraform apply": _APPLY_TRANSCRIPT,
}


class SimulatedBackend(ExecutionBackend):
    """Replay scripted transcripts instead of running processes.

    Args:
        transcripts: Transcript per command key. A key is either the
            executable name (``"ansible-playbook"``) or the executable and
            its first argument (``"terraform plan"``); the longer key wins.
        default: Transcript for commands with no matching key.
        available: Value reported by ``is_available()``. When False,
            ``execute()`` raises ToolUnavailableError like a missing binary.
        speed: Multiplier applied to every chunk delay (0 for no delay).
        name: Backend name reported in results.
    """

    def __init__(
        self,
        transcripts: Mapping[str, Transcript] | None = None,
        *,
        default: Transcript | None = None,
        available: bool = True,
        speed: float = 1.0,
        name: str = "simulated",
    ) -> None:
        self._transcripts = dict(DEMO_TRANSCRIPTS if transcripts is None else transcripts)
        self._default = default or Transcript()
        self.available = available
        self.speed = speed
        self._name = name
        self.calls: list[list[str]] = []

    @property
    def name(self) -> str:
        return self._name

    def transcript_for(self, command: list[str]) -> Transcript:
        if len(command) > 1:
            keyed = self._transcripts.get(f"{Path(command[0]).name} {command[1]}")
            if keyed is not None:
                return keyed
        return self._transcripts.get(Path(command[0]).name, self._default)

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
        self.calls.append(list(command))
        if not self.available:
            raise ToolUnavailableError(command[0], stage=stage)

        transcript = self.transcript_for(command)
        _logger.debug(
            "simulated.executing",
            tool=command[0],
            stage=stage,
            chunks=len(transcript.chunks),
        )
        start = time.monotonic()
        try:
            output = await asyncio.wait_for(
                self._replay(transcript, sink),
                timeout=timeout_seconds,
            )
        except TimeoutError as exc:
            raise JobTimeoutError(timeout_seconds or 0.0) from exc
        duration = time.monotonic() - start

        if transcript.exit_code != 0:
            raise ExecutionError(
                f"{command[0]} exited with code {transcript.exit_code}",
                stage=stage,
                exit_code=transcript.exit_code,
                stderr=transcript.stderr,
            )
        return ExecutionResult(
            output=output,
            stderr=transcript.stderr,
            exit_code=0,
            duration_seconds=duration,
            backend=self.name,
        )

    async def _replay(self, transcript: Transcript, sink: OutputSink) -> str:
        emitted: list[str] = []
        for chunk in transcript.chunks:
            delay = transcript.chunk_delay_seconds * self.speed
            if delay > 0:
                await asyncio.sleep(delay)
            emitted.append(chunk)
            sink(chunk)
        return "".join(emitted)

    async def is_available(self) -> bool:
        return self.available


__all__ = ["DEMO_TRANSCRIPTS", "SimulatedBackend", "Transcript"]
