"""Shared plumbing for commands that run a job in-process."""

from __future__ import annotations

import asyncio
from typing import Any

import typer
from rich.markup import escape

from conductor.core.errors import ConductorError
from conductor.daemon.config import ConductorConfig
from conductor.daemon.service import JobService
from conductor.daemon.types import Job, JobStatus, JobType

from ..helpers import build_config, configure_cli_logging, is_json
from ..output import build_result_panel, console, print_json, render_event


async def _run_and_stream(
    config: ConductorConfig,
    job_type: JobType,
    name: str,
    payload: dict[str, Any],
    *,
    stream: bool,
) -> Job:
    async with JobService(config) as service:
        job_id = await service.submit_job(job_type, name, payload)
        if not is_json():
            console.print(f"[dim]Submitted {job_type.value} job {job_id}[/dim]")
        async with service.subscribe(job_id) as sub:
            async for event in sub:
                if stream:
                    render_event(event)
                if event.kind.is_terminal:
                    break
        return await service.wait_for_job(job_id)


def run_job(job_type: JobType, name: str, payload: dict[str, Any]) -> None:
    """Start a service, run one job to completion and report it.

    Exits with status 1 unless the job completed.
    """
    config = build_config(console)
    configure_cli_logging(config, console)
    try:
        job = asyncio.run(
            _run_and_stream(config, job_type, name, payload, stream=not is_json())
        )
    except ConductorError as exc:
        if is_json():
            print_json(exc.to_dict())
        else:
            console.print(f"[red]Error:[/red] {escape(exc.message)}")
        raise typer.Exit(1) from None

    if is_json():
        print_json(job.to_dict(include_logs=True))
    else:
        console.print()
        console.print(build_result_panel(job))
    if job.status != JobStatus.COMPLETED:
        raise typer.Exit(1)
