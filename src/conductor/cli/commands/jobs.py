"""Job history command."""

from __future__ import annotations

import asyncio

import typer

from conductor.daemon.service import build_registry
from conductor.daemon.types import Job, JobStatus

from ..helpers import build_config, configure_cli_logging, is_json
from ..output import build_jobs_table, console, print_json


def jobs(
    limit: int = typer.Option(20, "--limit", "-l", min=1, help="Maximum jobs to show"),
    status: JobStatus | None = typer.Option(None, "--status", "-s", help="Only show this status"),
) -> None:
    """List recorded jobs, most recent first.

    Only the sqlite registry keeps history between invocations.
    """
    config = build_config(console)
    configure_cli_logging(config, console)
    if config.registry.backend != "sqlite" and not is_json():
        console.print(
            "[yellow]The memory registry keeps no history between runs; "
            "set registry.backend: sqlite in the config file.[/yellow]"
        )

    async def _list() -> list[Job]:
        async with build_registry(config) as registry:
            return await registry.list_jobs(limit=limit, status=status)

    found = asyncio.run(_list())
    if is_json():
        print_json([job.to_dict() for job in found])
        return
    if not found:
        console.print("[dim]No jobs found.[/dim]")
        return
    console.print(build_jobs_table(found))
