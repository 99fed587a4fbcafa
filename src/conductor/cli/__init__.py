"""Conductor CLI.

Built with Typer. Global options (config file, demo mode, worker count,
logging) are collected by the app callback into ``helpers.CliOptions``;
each run command then starts an in-process JobService, submits one job,
streams its log events to the console and exits non-zero unless the job
completed.

Package structure:
    cli/
    ├── __init__.py       # app assembly and global options
    ├── helpers.py        # option state, config loading, input parsing
    ├── output.py         # Rich formatting
    └── commands/
        ├── _shared.py    # submit-and-stream plumbing
        ├── run.py        # echo, playbook, plan, apply
        └── jobs.py       # jobs
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from conductor import __version__

from . import helpers as helpers
from .commands import apply, echo, jobs, plan, playbook
from .output import console

app = typer.Typer(
    name="conductor",
    help="Run infrastructure automation jobs with queueing, retries and live output",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Conductor v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="YAML configuration file",
            envvar="CONDUCTOR_CONFIG",
        ),
    ] = None,
    demo: bool = typer.Option(
        False,
        "--demo",
        help="Replay simulated tool output instead of running real tools",
    ),
    workers: Annotated[
        int | None,
        typer.Option("--workers", "-w", min=1, max=64, help="Concurrent worker slots"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="CONDUCTOR_LOG_LEVEL",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option("--log-format", help="Log format: json, console, or both"),
    ] = None,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print machine-readable JSON instead of streaming output",
    ),
) -> None:
    """Conductor - infrastructure automation job runner."""
    helpers.reset_options()
    options = helpers.get_options()
    options.config_file = config_file
    options.demo = demo
    options.workers = workers
    if log_level is not None:
        level = log_level.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise typer.BadParameter(f"unknown log level {log_level!r}", param_hint="--log-level")
        options.log_level = level  # type: ignore[assignment]
    if log_format is not None:
        if log_format not in ("json", "console", "both"):
            raise typer.BadParameter(
                f"unknown log format {log_format!r}", param_hint="--log-format",
            )
        options.log_format = log_format  # type: ignore[assignment]
    options.json_output = json_output


app.command()(echo)
app.command()(playbook)
app.command()(plan)
app.command()(apply)
app.command()(jobs)


__all__ = ["app", "console", "main"]
