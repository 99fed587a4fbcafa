"""Containerized execution backend.

Wraps a command in ``<runtime> run --rm`` so the tool runs from an image
instead of the host. The working directory is bind-mounted read/write at
``/workspace`` and used as the container's working directory, so relative
paths in the command resolve the same way they would on the host.

Example argv for an Ansible run::

    docker run --rm -v /tmp/job-abc:/workspace -w /workspace \\
        --entrypoint ansible-playbook quay.io/ansible/ansible-runner:latest \\
        -i inventory.ini playbook.yml
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from pathlib import Path, PurePosixPath

from conductor.backends.base import ExecutionBackend, ExecutionResult, OutputSink, null_sink
from conductor.backends.local import check_result
from conductor.backends.process_manager import ProcessManager
from conductor.core.logging import get_logger

_logger = get_logger("backend.container")

WORKSPACE_MOUNT = "/workspace"


class ContainerBackend(ExecutionBackend):
    """Run commands inside a throwaway container.

    Args:
        image: Image that provides the command's executable.
        runtime: Container runtime executable (``docker``, ``podman``).
        probe_timeout_seconds: Limit for the ``<runtime> --version`` probe.
        probe_cache_seconds: How long a probe answer is reused. 0 probes on
            every call.
        process_manager: Shared subprocess manager.
    """

    def __init__(
        self,
        image: str,
        *,
        runtime: str = "docker",
        probe_timeout_seconds: float = 5.0,
        probe_cache_seconds: float = 30.0,
        process_manager: ProcessManager | None = None,
    ) -> None:
        self.image = image
        self.runtime = runtime
        self.probe_timeout_seconds = probe_timeout_seconds
        self.probe_cache_seconds = probe_cache_seconds
        self._probed: tuple[float, bool] | None = None
        self._processes = process_manager or ProcessManager()

    @property
    def name(self) -> str:
        return "container"

    def build_command(
        self,
        command: list[str],
        *,
        cwd: Path,
        volumes: Mapping[Path, str] | None = None,
    ) -> list[str]:
        """Wrap ``command`` in a ``<runtime> run`` invocation."""
        argv = [
            self.runtime, "run", "--rm",
            "-v", f"{cwd}:{WORKSPACE_MOUNT}",
            "-w", WORKSPACE_MOUNT,
        ]
        for host_path, container_path in (volumes or {}).items():
            argv.extend(["-v", f"{host_path}:{container_path}"])
        argv.extend(["--entrypoint", command[0], self.image])
        argv.extend(command[1:])
        return argv

    def resolve_path(
        self,
        host_path: Path,
        volumes: Mapping[Path, str] | None = None,
    ) -> str:
        """Translate a host path under a mounted volume to its container path."""
        for mount_source, mount_target in (volumes or {}).items():
            try:
                relative = host_path.relative_to(mount_source)
            except ValueError:
                continue
            return str(PurePosixPath(mount_target) / relative.as_posix())
        return str(host_path)

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
        argv = self.build_command(command, cwd=cwd, volumes=volumes)
        _logger.info(
            "container.executing",
            tool=command[0],
            image=self.image,
            stage=stage,
            cwd=str(cwd),
        )
        result = await self._processes.run(
            argv,
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
        """Probe ``<runtime> --version``, reusing a recent answer."""
        now = time.monotonic()
        if self._probed is not None and now - self._probed[0] < self.probe_cache_seconds:
            return self._probed[1]
        available = await self._processes.probe(
            [self.runtime, "--version"],
            timeout_seconds=self.probe_timeout_seconds,
        )
        _logger.debug("container.probe", runtime=self.runtime, available=available)
        self._probed = (now, available)
        return available


__all__ = ["ContainerBackend", "WORKSPACE_MOUNT"]
