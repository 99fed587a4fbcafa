"""Rich output formatting for the Conductor CLI.

Centralizes the console instance, status colors and the job table and
result panel builders so every command renders jobs the same way.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from conductor.daemon.types import EventKind, Job, JobEvent, JobStatus

# =============================================================================
# Shared console instance
# =============================================================================

console = Console()


# =============================================================================
# Status colors
# =============================================================================


class StatusColors:
    """Color mapping for job statuses."""

    JOB_STATUS: dict[JobStatus, str] = {
        JobStatus.PENDING: "yellow",
        JobStatus.QUEUED: "yellow",
        JobStatus.RUNNING: "blue",
        JobStatus.COMPLETED: "green",
        JobStatus.FAILED: "red",
        JobStatus.CANCELLED: "dim",
    }

    @classmethod
    def for_status(cls, status: JobStatus) -> str:
        return cls.JOB_STATUS.get(status, "white")


def format_status(status: JobStatus) -> str:
    color = StatusColors.for_status(status)
    return f"[{color}]{status.value}[/{color}]"


# =============================================================================
# Formatters
# =============================================================================


def format_duration(seconds: float | None) -> str:
    """Format a duration as ``1.2s``, ``3m 05s`` or ``1h 02m``."""
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


def format_timestamp(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, UTC).strftime("%Y-%m-%d %H:%M:%S")


def job_duration(job: Job) -> float | None:
    if job.started_at is None:
        return None
    end = job.completed_at or datetime.now(UTC).timestamp()
    return max(0.0, end - job.started_at)


# =============================================================================
# Builders
# =============================================================================


def build_jobs_table(jobs: Sequence[Job]) -> Table:
    """Table of jobs, most recent first."""
    table = Table(title="Jobs", show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Created")
    table.add_column("Duration", justify="right")
    for job in jobs:
        table.add_row(
            job.job_id[:12],
            escape(job.name),
            job.job_type.value,
            format_status(job.status),
            f"{job.attempts}/{job.max_attempts}",
            format_timestamp(job.created_at),
            format_duration(job_duration(job)),
        )
    return table


def build_result_panel(job: Job) -> Panel:
    """Summary panel for a finished job."""
    result = job.result or {}
    lines = [
        f"[bold]Job:[/bold] {job.job_id}",
        f"[bold]Status:[/bold] {format_status(job.status)}",
        f"[bold]Attempts:[/bold] {job.attempts}/{job.max_attempts}",
        f"[bold]Duration:[/bold] {format_duration(job_duration(job))}",
    ]
    if job.status == JobStatus.COMPLETED:
        if result.get("backend"):
            lines.append(f"[bold]Backend:[/bold] {result['backend']}")
        for key, value in (result.get("summary") or {}).items():
            if key != "hosts":
                lines.append(f"[bold]{key}:[/bold] {value}")
        for warning in result.get("warnings", []):
            lines.append(f"[yellow]Warning:[/yellow] {escape(warning)}")
    else:
        lines.append(f"[bold]Error:[/bold] {escape(str(result.get('error', 'unknown error')))}")
        if result.get("stage"):
            lines.append(f"[bold]Stage:[/bold] {result['stage']}")
        if result.get("stderr"):
            lines.append(f"[dim]{escape(result['stderr'].strip())}[/dim]")
    color = StatusColors.for_status(job.status)
    return Panel("\n".join(lines), title=escape(job.name), border_style=color)


def print_json(data: Any, target: Console | None = None) -> None:
    """Print JSON verbatim, without Rich markup or line wrapping."""
    (target or console).print(
        json.dumps(data, indent=2, default=str),
        soft_wrap=True,
        highlight=False,
        markup=False,
    )


def render_event(event: JobEvent, target: Console | None = None) -> None:
    """Print one job event: log text verbatim, lifecycle events as notes."""
    out = target or console
    payload = event.payload
    if event.kind == EventKind.LOG:
        out.print(payload.get("text", ""), end="", markup=False, highlight=False)
    elif event.kind == EventKind.STARTED:
        out.print(
            f"[dim]Attempt {payload.get('attempt')}/{payload.get('max_attempts')} started[/dim]"
        )
    elif event.kind == EventKind.QUEUED and payload.get("attempt", 1) > 1:
        out.print(
            f"[yellow]Retrying in {payload.get('delay_seconds', 0):.1f}s "
            f"(attempt {payload['attempt']}/{payload.get('max_attempts')})[/yellow]"
        )


__all__ = [
    "StatusColors",
    "build_jobs_table",
    "build_result_panel",
    "console",
    "format_duration",
    "format_status",
    "format_timestamp",
    "print_json",
    "render_event",
]
