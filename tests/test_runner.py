"""Tests for conductor.runner.JobRunner.

Tool workflows run against the simulated backend (or a stub container
runtime script) so no Ansible, Terraform or container runtime is needed.
"""

from __future__ import annotations

import asyncio
import stat
from collections.abc import Mapping
from pathlib import Path

import pytest

from conductor.backends import ContainerBackend, ProcessManager, SimulatedBackend, Transcript
from conductor.backends.base import ExecutionResult, OutputSink, null_sink
from conductor.core.errors import ExecutionError, ValidationError
from conductor.daemon.config import ExecutionConfig
from conductor.daemon.types import JobType
from conductor.runner import JobRunner
from conductor.runner.runner import TFVARS_FILE
from tests.helpers import failing_transcript

PLAYBOOK = "- hosts: all\n  tasks:\n    - debug: msg=hi\n"
LOCAL_INVENTORY = {"all": {"hosts": {"localhost": {"ansible_connection": "local"}}}}


class CapturingBackend(SimulatedBackend):
    """Simulated backend that snapshots the files in ``cwd`` at execution time."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.files: dict[str, str] = {}
        self.cwds: list[Path] = []

    async def execute(self, command, *, cwd, sink=null_sink, **kwargs) -> ExecutionResult:
        self.cwds.append(cwd)
        self.files = {p.name: p.read_text() for p in cwd.iterdir() if p.is_file()}
        return await super().execute(command, cwd=cwd, sink=sink, **kwargs)


class ConcurrencyProbe(SimulatedBackend):
    """Simulated backend that tracks how many commands overlap per directory."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.active: dict[Path, int] = {}
        self.max_active: dict[Path, int] = {}
        self.max_total = 0

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
        self.active[cwd] = self.active.get(cwd, 0) + 1
        self.max_active[cwd] = max(self.max_active.get(cwd, 0), self.active[cwd])
        self.max_total = max(self.max_total, sum(self.active.values()))
        try:
            await asyncio.sleep(0.05)
            return await super().execute(command, cwd=cwd, sink=sink, stage=stage)
        finally:
            self.active[cwd] -= 1


class AdvertisedButBroken(SimulatedBackend):
    """Answers the availability probe but cannot actually start the tool."""

    async def is_available(self) -> bool:
        return True


def _fake_runtime(path: Path) -> Path:
    """Shell script standing in for a container runtime: prints its argv."""
    path.write_text('#!/bin/sh\necho "$@"\n')
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


# ============================================================================
# Echo
# ============================================================================


class TestEcho:
    """Tests for echo jobs."""

    @pytest.mark.asyncio
    async def test_echo_output(self, runner: JobRunner):
        chunks: list[str] = []
        result = await runner.run(
            JobType.ECHO, {"message": "ping"}, job_id="e1", sink=chunks.append,
        )
        assert result.output == "Echo: ping"
        assert result.exit_code == 0
        assert "".join(chunks) == "Echo: ping\n"
        assert result.duration_seconds is not None

    @pytest.mark.asyncio
    async def test_echo_delay(self, workdir_root: Path):
        config = ExecutionConfig(echo_delay_seconds=0.05, workdir_root=workdir_root)
        runner = JobRunner(config, local=SimulatedBackend(speed=0.0))
        result = await runner.run(JobType.ECHO, {"message": "slow"}, job_id="e2")
        assert result.duration_seconds is not None
        assert result.duration_seconds >= 0.04

    @pytest.mark.asyncio
    async def test_invalid_payload(self, runner: JobRunner):
        with pytest.raises(ValidationError):
            await runner.run(JobType.ECHO, {"msg": "typo"}, job_id="e3")


# ============================================================================
# Playbook runs
# ============================================================================


class TestPlaybookRun:
    """Tests for playbook-run jobs."""

    @pytest.mark.asyncio
    async def test_writes_inventory_and_playbook(self, execution_config: ExecutionConfig):
        """The tool sees the rendered inventory and the playbook text."""
        backend = CapturingBackend(speed=0.0)
        runner = JobRunner(execution_config, local=backend)
        result = await runner.run(
            JobType.PLAYBOOK_RUN,
            {"playbook": PLAYBOOK, "inventory": LOCAL_INVENTORY},
            job_id="p1",
        )
        assert backend.files["inventory.ini"] == "[all]\nlocalhost ansible_connection=local\n\n"
        assert backend.files["playbook.yml"] == PLAYBOOK
        assert "vars.yml" not in backend.files
        assert backend.calls == [["ansible-playbook", "-i", "inventory.ini", "playbook.yml"]]
        assert result.backend == "simulated"
        assert result.summary["hosts"]["localhost"]["ok"] == 2
        assert result.summary["failed"] is False

    @pytest.mark.asyncio
    async def test_variables_file(self, execution_config: ExecutionConfig):
        backend = CapturingBackend(speed=0.0)
        runner = JobRunner(execution_config, local=backend)
        await runner.run(
            JobType.PLAYBOOK_RUN,
            {"playbook": PLAYBOOK, "inventory": "[all]\nlocalhost\n", "variables": {"env": "prod"}},
            job_id="p2",
        )
        assert backend.files["vars.yml"] == "env: prod\n"
        assert backend.calls[0][-2:] == ["--extra-vars", "@vars.yml"]
        assert backend.files["inventory.ini"] == "[all]\nlocalhost\n"

    @pytest.mark.asyncio
    async def test_output_streams_to_sink(self, runner: JobRunner):
        chunks: list[str] = []
        result = await runner.run(
            JobType.PLAYBOOK_RUN,
            {"playbook": PLAYBOOK, "inventory": LOCAL_INVENTORY},
            job_id="p3",
            sink=chunks.append,
        )
        assert "".join(chunks) == result.output
        assert "PLAY RECAP" in result.output

    @pytest.mark.asyncio
    async def test_workdir_removed_after_success(self, runner: JobRunner, workdir_root: Path):
        await runner.run(
            JobType.PLAYBOOK_RUN,
            {"playbook": PLAYBOOK, "inventory": LOCAL_INVENTORY},
            job_id="p4",
        )
        assert list(workdir_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_workdir_removed_after_failure(
        self, execution_config: ExecutionConfig, workdir_root: Path,
    ):
        """A failing tool raises ExecutionError and still leaves no directory."""
        backend = SimulatedBackend({}, default=failing_transcript(exit_code=2), speed=0.0)
        runner = JobRunner(execution_config, local=backend)
        with pytest.raises(ExecutionError) as exc_info:
            await runner.run(
                JobType.PLAYBOOK_RUN,
                {"playbook": PLAYBOOK, "inventory": LOCAL_INVENTORY},
                job_id="p5",
            )
        assert exc_info.value.stage == "playbook"
        assert exc_info.value.exit_code == 2
        assert list(workdir_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_workdir_removed_after_cancel(
        self, execution_config: ExecutionConfig, workdir_root: Path,
    ):
        slow = Transcript(chunks=["a\n", "b\n"], chunk_delay_seconds=10.0)
        runner = JobRunner(execution_config, local=SimulatedBackend({}, default=slow))
        task = asyncio.create_task(
            runner.run(
                JobType.PLAYBOOK_RUN,
                {"playbook": PLAYBOOK, "inventory": LOCAL_INVENTORY},
                job_id="p6",
            )
        )
        await asyncio.sleep(0.05)
        assert len(list(workdir_root.iterdir())) == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert list(workdir_root.iterdir()) == []


# ============================================================================
# Backend selection
# ============================================================================


class TestBackendSelection:
    """Container preference and host fallback."""

    @pytest.mark.asyncio
    async def test_container_preferred(self, execution_config: ExecutionConfig):
        container = SimulatedBackend(speed=0.0, name="container")
        local = SimulatedBackend(speed=0.0)
        runner = JobRunner(execution_config, local=local, ansible_container=container)
        result = await runner.run(
            JobType.PLAYBOOK_RUN,
            {"playbook": PLAYBOOK, "inventory": LOCAL_INVENTORY},
            job_id="b1",
        )
        assert result.backend == "container"
        assert local.calls == []

    @pytest.mark.asyncio
    async def test_unavailable_container_uses_host(self, workdir_root: Path):
        """A failed probe routes to the host command."""
        config = ExecutionConfig(
            workdir_root=workdir_root, ansible_command="/opt/ansible/bin/ansible-playbook",
        )
        container = SimulatedBackend(available=False, name="container")
        local = SimulatedBackend(speed=0.0)
        runner = JobRunner(config, local=local, ansible_container=container)
        result = await runner.run(
            JobType.PLAYBOOK_RUN,
            {"playbook": PLAYBOOK, "inventory": LOCAL_INVENTORY},
            job_id="b2",
        )
        assert result.backend == "simulated"
        assert container.calls == []
        assert local.calls[0][0] == "/opt/ansible/bin/ansible-playbook"

    @pytest.mark.asyncio
    async def test_container_start_failure_falls_back_once(self, execution_config):
        """A container that cannot start the tool falls back to the host."""
        container = AdvertisedButBroken(available=False, name="container")
        local = SimulatedBackend(speed=0.0)
        runner = JobRunner(execution_config, local=local, ansible_container=container)
        result = await runner.run(
            JobType.PLAYBOOK_RUN,
            {"playbook": PLAYBOOK, "inventory": LOCAL_INVENTORY},
            job_id="b3",
        )
        assert result.backend == "simulated"
        assert len(container.calls) == 1
        assert len(local.calls) == 1

    @pytest.mark.asyncio
    async def test_tool_failure_in_container_does_not_fall_back(self, execution_config):
        """Only a start failure falls back; a failing tool is the job's failure."""
        container = SimulatedBackend({}, default=failing_transcript(), speed=0.0, name="container")
        local = SimulatedBackend(speed=0.0)
        runner = JobRunner(execution_config, local=local, ansible_container=container)
        with pytest.raises(ExecutionError):
            await runner.run(
                JobType.PLAYBOOK_RUN,
                {"playbook": PLAYBOOK, "inventory": LOCAL_INVENTORY},
                job_id="b4",
            )
        assert local.calls == []

    def test_from_config_demo(self):
        runner = JobRunner.from_config(ExecutionConfig(), demo=True)
        assert isinstance(runner.local, SimulatedBackend)
        assert runner.ansible.container is None
        assert not runner.verify_working_dir

    def test_from_config_containers(self):
        runner = JobRunner.from_config(
            ExecutionConfig(container_runtime="podman", probe_cache_seconds=5),
        )
        assert isinstance(runner.ansible.container, ContainerBackend)
        assert isinstance(runner.terraform.container, ContainerBackend)
        assert runner.terraform.container.runtime == "podman"
        assert runner.ansible.container.probe_cache_seconds == 5
        assert runner.local.name == "local"

    def test_from_config_host_only(self):
        runner = JobRunner.from_config(ExecutionConfig(container_enabled=False))
        assert runner.ansible.container is None
        assert runner.terraform.container is None


# ============================================================================
# Terraform plan / apply
# ============================================================================


class TestTerraform:
    """Tests for plan and apply jobs."""

    @pytest.mark.asyncio
    async def test_plan_runs_init_then_plan(self, runner: JobRunner, simulated, tmp_path: Path):
        infra = tmp_path / "infra"
        result = await runner.run(JobType.PLAN, {"workingDir": str(infra)}, job_id="t1")
        assert simulated.calls == [
            ["terraform", "init", "-input=false", "-no-color"],
            ["terraform", "plan", "-input=false", "-no-color"],
        ]
        assert "Terraform has been successfully initialized!" in result.output
        assert result.summary == {
            "plan": "Plan: 1 to add, 0 to change, 0 to destroy",
            "add": 1,
            "change": 0,
            "destroy": 0,
        }

    @pytest.mark.asyncio
    async def test_skip_init_when_initialized(self, execution_config, tmp_path: Path):
        infra = tmp_path / "infra"
        (infra / ".terraform").mkdir(parents=True)
        backend = SimulatedBackend(speed=0.0)
        runner = JobRunner(execution_config, local=backend)
        result = await runner.run(JobType.APPLY, {"workingDir": str(infra)}, job_id="t2")
        assert backend.calls == [
            ["terraform", "apply", "-auto-approve", "-input=false", "-no-color"],
        ]
        assert result.summary["added"] == 1

    @pytest.mark.asyncio
    async def test_variables_passed_as_var_file(
        self, runner: JobRunner, simulated, workdir_root: Path, tmp_path: Path,
    ):
        await runner.run(
            JobType.PLAN,
            {"workingDir": str(tmp_path), "variables": {"region": "eu-west-1"}},
            job_id="t3",
        )
        plan_call = simulated.calls[-1]
        var_arg = plan_call[-1]
        assert var_arg.startswith(f"-var-file={workdir_root}")
        assert var_arg.endswith(TFVARS_FILE)
        assert list(workdir_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_working_dir_rejected(self, execution_config, tmp_path: Path):
        runner = JobRunner(execution_config, local=SimulatedBackend(speed=0.0))
        with pytest.raises(ValidationError) as exc_info:
            await runner.run(JobType.PLAN, {"workingDir": str(tmp_path / "nope")}, job_id="t4")
        assert exc_info.value.field == "workingDir"

    @pytest.mark.asyncio
    async def test_stage_recorded_on_failure(self, execution_config, tmp_path: Path):
        backend = SimulatedBackend({"terraform init": failing_transcript(exit_code=1)}, speed=0.0)
        runner = JobRunner(execution_config, local=backend, verify_working_dir=False)
        with pytest.raises(ExecutionError) as exc_info:
            await runner.run(JobType.PLAN, {"workingDir": str(tmp_path)}, job_id="t5")
        assert exc_info.value.stage == "init"
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_container_sees_mounted_var_file(self, workdir_root: Path, tmp_path: Path):
        """Inside a container the var file is addressed by its mount path."""
        runtime = _fake_runtime(tmp_path / "fake-runtime")
        infra = tmp_path / "infra"
        (infra / ".terraform").mkdir(parents=True)
        processes = ProcessManager()
        container = ContainerBackend(
            "hashicorp/terraform:latest", runtime=str(runtime), process_manager=processes,
        )
        config = ExecutionConfig(workdir_root=workdir_root)
        runner = JobRunner(config, local=SimulatedBackend(speed=0.0), terraform_container=container)
        result = await runner.run(
            JobType.PLAN,
            {"workingDir": str(infra), "variables": {"count": 2}},
            job_id="t6",
        )
        assert result.backend == "container"
        argv = result.output.split()
        assert argv[:3] == ["run", "--rm", "-v"]
        assert "--entrypoint" in argv
        assert argv[-1] == f"-var-file=/conductor/{TFVARS_FILE}"

    @pytest.mark.asyncio
    async def test_same_directory_serialized(self, execution_config, tmp_path: Path):
        """Jobs on one working directory never overlap; different ones may."""
        shared = tmp_path / "shared"
        other = tmp_path / "other"
        for path in (shared, other):
            (path / ".terraform").mkdir(parents=True)
        backend = ConcurrencyProbe(speed=0.0)
        runner = JobRunner(execution_config, local=backend)

        await asyncio.gather(
            runner.run(JobType.PLAN, {"workingDir": str(shared)}, job_id="s1"),
            runner.run(JobType.APPLY, {"workingDir": str(shared)}, job_id="s2"),
            runner.run(JobType.PLAN, {"workingDir": str(other)}, job_id="s3"),
        )
        assert backend.max_active[shared.resolve()] == 1
        assert backend.max_total == 2
