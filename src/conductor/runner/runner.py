"""Job runner: executes one attempt of a job.

Maps a job type and payload onto a tool workflow and runs it through an
execution backend:

- ``echo``: no process; returns ``Echo: <message>`` after a short delay
- ``playbook-run``: scoped directory with ``inventory.ini``,
  ``playbook.yml`` and optional ``vars.yml``, then ``ansible-playbook``
- ``plan`` / ``apply``: ``terraform init`` when needed, then
  ``terraform plan`` or ``terraform apply -auto-approve`` in the job's
  working directory, with variables passed through a scoped var file

Tools run in a container when the container runtime answers its probe,
and on the host otherwise. A container run that fails because the
runtime cannot be invoked falls back to the host once.

The runner knows nothing about queues, retries or registries; it either
returns a JobResult or raises a ConductorError for the worker pool to act
on.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from conductor.backends.base import ExecutionBackend, ExecutionResult, OutputSink, null_sink
from conductor.backends.container import ContainerBackend
from conductor.backends.local import LocalBackend
from conductor.backends.process_manager import ProcessManager
from conductor.backends.simulated import SimulatedBackend
from conductor.core.errors import ToolUnavailableError, ValidationError
from conductor.core.logging import get_logger
from conductor.daemon.config import ExecutionConfig
from conductor.daemon.types import JobResult, JobType
from conductor.runner.inventory import render_inventory
from conductor.runner.payloads import (
    EchoPayload,
    PlaybookRunPayload,
    TerraformPayload,
    validate_payload,
)
from conductor.runner.summary import parse_apply, parse_plan, parse_play_recap
from conductor.runner.workspace import ScopedWorkdir

_logger = get_logger("runner")

INVENTORY_FILE = "inventory.ini"
PLAYBOOK_FILE = "playbook.yml"
VARS_FILE = "vars.yml"
TFVARS_FILE = "conductor.tfvars.json"

# Where the scoped var-file directory appears inside a terraform container
TFVARS_MOUNT = "/conductor"


@dataclass
class Tool:
    """An external tool and the backends that can run it."""

    name: str
    """Executable name inside the container image."""

    host_command: str
    """Executable used for host execution."""

    container: ExecutionBackend | None
    """Preferred backend, or None to always run on the host."""

    def executable_for(self, backend: ExecutionBackend) -> str:
        return self.name if backend is self.container else self.host_command


class JobRunner:
    """Run a single job attempt.

    Args:
        config: Execution settings (tool commands, delays, scoped dir root).
        local: Host backend, also the fallback for container failures.
        ansible_container: Backend preferred for ``ansible-playbook``.
        terraform_container: Backend preferred for ``terraform``.
        verify_working_dir: Reject plan/apply jobs whose working directory
            does not exist. Disabled in demo mode, where nothing touches disk.
    """

    def __init__(
        self,
        config: ExecutionConfig,
        *,
        local: ExecutionBackend,
        ansible_container: ExecutionBackend | None = None,
        terraform_container: ExecutionBackend | None = None,
        verify_working_dir: bool = True,
    ) -> None:
        self.config = config
        self.local = local
        self.ansible = Tool("ansible-playbook", config.ansible_command, ansible_container)
        self.terraform = Tool("terraform", config.terraform_command, terraform_container)
        self.verify_working_dir = verify_working_dir
        self._dir_locks: dict[Path, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config: ExecutionConfig, *, demo: bool = False) -> JobRunner:
        """Build a runner with the backends ``config`` asks for.

        Demo mode replaces every backend with the simulated one.
        """
        if demo:
            return cls(
                config,
                local=SimulatedBackend(speed=config.demo_speed),
                verify_working_dir=False,
            )

        processes = ProcessManager()
        ansible_container: ExecutionBackend | None = None
        terraform_container: ExecutionBackend | None = None
        if config.container_enabled:
            ansible_container = ContainerBackend(
                config.ansible_image,
                runtime=config.container_runtime,
                probe_timeout_seconds=config.probe_timeout_seconds,
                probe_cache_seconds=config.probe_cache_seconds,
                process_manager=processes,
            )
            terraform_container = ContainerBackend(
                config.terraform_image,
                runtime=config.container_runtime,
                probe_timeout_seconds=config.probe_timeout_seconds,
                probe_cache_seconds=config.probe_cache_seconds,
                process_manager=processes,
            )
        return cls(
            config,
            local=LocalBackend(processes),
            ansible_container=ansible_container,
            terraform_container=terraform_container,
        )

    async def run(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        job_id: str,
        sink: OutputSink = null_sink,
    ) -> JobResult:
        """Execute one attempt of a job.

        Raises:
            ValidationError: Malformed payload.
            ExecutionError: The tool failed (ToolUnavailableError when it
                could not be started by any backend).
            ResourceError: The scoped directory could not be created.
        """
        parsed = validate_payload(job_type, payload)
        start = time.monotonic()
        _logger.info("runner.starting", job_id=job_id, job_type=job_type.value)

        if isinstance(parsed, EchoPayload):
            result = await self._run_echo(parsed, sink)
        elif isinstance(parsed, PlaybookRunPayload):
            result = await self._run_playbook(parsed, job_id=job_id, sink=sink)
        elif isinstance(parsed, TerraformPayload):
            result = await self._run_terraform(
                parsed, apply=job_type is JobType.APPLY, job_id=job_id, sink=sink,
            )
        else:  # pragma: no cover - PAYLOAD_MODELS covers every JobType
            raise ValidationError(f"Unsupported job type: {job_type.value}")

        result.duration_seconds = time.monotonic() - start
        _logger.info(
            "runner.finished",
            job_id=job_id,
            job_type=job_type.value,
            backend=result.backend,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    # ─── Workflows ─────────────────────────────────────────────────

    async def _run_echo(self, payload: EchoPayload, sink: OutputSink) -> JobResult:
        if self.config.echo_delay_seconds > 0:
            await asyncio.sleep(self.config.echo_delay_seconds)
        output = f"Echo: {payload.message}"
        sink(output + "\n")
        return JobResult(output=output, exit_code=0)

    async def _run_playbook(
        self,
        payload: PlaybookRunPayload,
        *,
        job_id: str,
        sink: OutputSink,
    ) -> JobResult:
        scope = ScopedWorkdir(job_id, root=self.config.workdir_root)
        with scope as workdir:
            (workdir / INVENTORY_FILE).write_text(render_inventory(payload.inventory))
            (workdir / PLAYBOOK_FILE).write_text(payload.playbook)
            args = ["-i", INVENTORY_FILE, PLAYBOOK_FILE]
            if payload.variables:
                (workdir / VARS_FILE).write_text(
                    yaml.safe_dump(payload.variables, default_flow_style=False, sort_keys=False)
                )
                args.extend(["--extra-vars", f"@{VARS_FILE}"])

            execution = await self._execute(
                self.ansible,
                lambda backend: args,
                cwd=workdir,
                sink=sink,
                stage="playbook",
            )

        return JobResult(
            output=execution.output,
            exit_code=execution.exit_code,
            summary=parse_play_recap(execution.output),
            backend=execution.backend,
            warnings=[scope.cleanup_error] if scope.cleanup_error else [],
        )

    async def _run_terraform(
        self,
        payload: TerraformPayload,
        *,
        apply: bool,
        job_id: str,
        sink: OutputSink,
    ) -> JobResult:
        working_dir = Path(payload.working_dir).expanduser().resolve()
        if self.verify_working_dir and not working_dir.is_dir():
            raise ValidationError(
                f"Working directory does not exist: {working_dir}",
                field="workingDir",
            )

        lock = self._dir_locks.setdefault(working_dir, asyncio.Lock())
        if lock.locked():
            _logger.info("runner.waiting_for_working_dir", job_id=job_id, path=str(working_dir))

        scope = ScopedWorkdir(job_id, root=self.config.workdir_root)
        async with lock:
            with scope as var_dir:
                volumes: dict[Path, str] = {}
                var_file: Path | None = None
                if payload.variables:
                    var_file = var_dir / TFVARS_FILE
                    var_file.write_text(json.dumps(payload.variables, indent=2))
                    volumes[var_dir] = TFVARS_MOUNT

                def var_args(backend: ExecutionBackend) -> list[str]:
                    if var_file is None:
                        return []
                    return [f"-var-file={backend.resolve_path(var_file, volumes)}"]

                outputs: list[str] = []
                if not (working_dir / ".terraform").is_dir():
                    init = await self._execute(
                        self.terraform,
                        lambda backend: ["init", "-input=false", "-no-color"],
                        cwd=working_dir,
                        sink=sink,
                        stage="init",
                    )
                    outputs.append(init.output)

                if apply:
                    command = ["apply", "-auto-approve", "-input=false", "-no-color"]
                else:
                    command = ["plan", "-input=false", "-no-color"]
                execution = await self._execute(
                    self.terraform,
                    lambda backend: command + var_args(backend),
                    cwd=working_dir,
                    sink=sink,
                    volumes=volumes,
                    stage="apply" if apply else "plan",
                )
                outputs.append(execution.output)

        summary = parse_apply(execution.output) if apply else parse_plan(execution.output)
        return JobResult(
            output="".join(outputs),
            exit_code=execution.exit_code,
            summary=summary,
            backend=execution.backend,
            warnings=[scope.cleanup_error] if scope.cleanup_error else [],
        )

    # ─── Backend selection ─────────────────────────────────────────

    async def _execute(
        self,
        tool: Tool,
        build_args: Callable[[ExecutionBackend], list[str]],
        *,
        cwd: Path,
        sink: OutputSink,
        stage: str,
        volumes: Mapping[Path, str] | None = None,
    ) -> ExecutionResult:
        """Run ``tool`` in its container if possible, otherwise on the host."""
        container = tool.container
        if container is not None:
            if await container.is_available():
                try:
                    return await container.execute(
                        [tool.executable_for(container), *build_args(container)],
                        cwd=cwd,
                        sink=sink,
                        volumes=volumes,
                        stage=stage,
                    )
                except ToolUnavailableError as exc:
                    _logger.warning(
                        "runner.container_fallback",
                        tool=tool.name,
                        stage=stage,
                        error=exc.message,
                    )
            else:
                _logger.info("runner.container_unavailable", tool=tool.name, stage=stage)

        return await self.local.execute(
            [tool.executable_for(self.local), *build_args(self.local)],
            cwd=cwd,
            sink=sink,
            volumes=volumes,
            stage=stage,
        )


__all__ = ["JobRunner", "Tool"]
