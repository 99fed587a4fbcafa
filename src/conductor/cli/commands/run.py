"""Commands that submit one job and stream its output."""

from __future__ import annotations

from pathlib import Path

import typer

from conductor.daemon.types import JobType

from ..helpers import (
    load_inventory_file,
    load_variables_file,
    parse_var_assignments,
)
from ._shared import run_job


def echo(
    message: str = typer.Argument(..., help="Message to echo back"),
    name: str = typer.Option("echo", "--name", "-n", help="Job name"),
) -> None:
    """Run an echo job (pipeline smoke test)."""
    run_job(JobType.ECHO, name, {"message": message})


def playbook(
    playbook_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="Playbook YAML file",
    ),
    inventory: Path = typer.Option(
        ...,
        "--inventory",
        "-i",
        exists=True,
        dir_okay=False,
        readable=True,
        help="Inventory file (INI text, or YAML/JSON structured inventory)",
    ),
    vars_file: Path | None = typer.Option(
        None,
        "--vars",
        exists=True,
        dir_okay=False,
        readable=True,
        help="YAML file of extra variables",
    ),
    var: list[str] | None = typer.Option(
        None,
        "--var",
        "-e",
        help="Extra variable as key=value (repeatable)",
    ),
    name: str | None = typer.Option(None, "--name", "-n", help="Job name"),
) -> None:
    """Run an Ansible playbook."""
    variables = load_variables_file(vars_file)
    variables.update(parse_var_assignments(var))
    payload = {
        "playbook": playbook_file.read_text(),
        "inventory": load_inventory_file(inventory),
        "variables": variables,
    }
    run_job(JobType.PLAYBOOK_RUN, name or playbook_file.stem, payload)


def _terraform(job_type: JobType, workdir: Path, var: list[str] | None, name: str | None) -> None:
    payload = {
        "workingDir": str(workdir),
        "variables": parse_var_assignments(var),
    }
    run_job(job_type, name or f"{job_type.value} {workdir.name}", payload)


def plan(
    workdir: Path = typer.Argument(..., help="Terraform working directory"),
    var: list[str] | None = typer.Option(
        None, "--var", help="Terraform variable as key=value (repeatable)",
    ),
    name: str | None = typer.Option(None, "--name", "-n", help="Job name"),
) -> None:
    """Run terraform plan in a working directory."""
    _terraform(JobType.PLAN, workdir, var, name)


def apply(
    workdir: Path = typer.Argument(..., help="Terraform working directory"),
    var: list[str] | None = typer.Option(
        None, "--var", help="Terraform variable as key=value (repeatable)",
    ),
    name: str | None = typer.Option(None, "--name", "-n", help="Job name"),
) -> None:
    """Run terraform apply -auto-approve in a working directory."""
    _terraform(JobType.APPLY, workdir, var, name)
