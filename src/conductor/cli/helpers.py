"""Shared utilities for Conductor CLI commands.

Global options set by the app callback live in one module-level
``CliOptions`` instance so every command sees the same configuration
without threading it through each signature.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Literal

import typer
import yaml
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.markup import escape

from conductor.core.logging import configure_logging
from conductor.daemon.config import ConductorConfig, load_config


# =============================================================================
# Global option state
# =============================================================================


@dataclass
class CliOptions:
    """Options gathered by the app callback."""

    config_file: Path | None = None
    demo: bool = False
    workers: int | None = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None
    log_format: Literal["json", "console", "both"] | None = None
    json_output: bool = False
    logging_configured: bool = False


_options = CliOptions()


def get_options() -> CliOptions:
    return _options


def reset_options() -> None:
    """Restore defaults (primarily for testing)."""
    global _options
    _options = CliOptions()


def is_json() -> bool:
    return _options.json_output


# =============================================================================
# Configuration
# =============================================================================


def build_config(console: Console) -> ConductorConfig:
    """Load the config file and apply command-line overrides.

    Raises:
        typer.Exit: If the config file is invalid.
    """
    try:
        config = load_config(_options.config_file)
        overrides: dict[str, Any] = {}
        if _options.demo:
            overrides["mode"] = "demo"
        if _options.workers is not None:
            overrides["workers"] = _options.workers
        if _options.log_level is not None:
            overrides["log_level"] = _options.log_level.lower()
        if _options.log_format is not None:
            overrides["log_format"] = _options.log_format
        if overrides:
            config = ConductorConfig.model_validate({**config.model_dump(), **overrides})
    except (PydanticValidationError, yaml.YAMLError, OSError) as exc:
        console.print(f"[red]Error loading config:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from None
    return config


def configure_cli_logging(config: ConductorConfig, console: Console) -> None:
    """Configure structlog once per CLI session.

    Logs default to WARNING so tool output on stdout stays readable;
    ``--log-level`` or the config file raise verbosity.
    """
    if _options.logging_configured:
        return
    level = config.log_level.upper() if _options.log_level or _options.config_file else "WARNING"
    try:
        configure_logging(
            level=level,  # type: ignore[arg-type]
            format=config.log_format,
            file_path=config.log_file,
        )
    except ValueError as exc:
        console.print(f"[red]Logging configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from None
    _options.logging_configured = True


# =============================================================================
# Input parsing
# =============================================================================


def _plain(value: Any) -> Any:
    """Turn YAML timestamps back into text so values stay JSON-friendly."""
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


def parse_var_assignments(values: list[str] | None) -> dict[str, Any]:
    """Parse repeated ``--var key=value`` options.

    Values are read as YAML scalars, so ``count=3`` yields an int and
    ``enabled=true`` a bool. Dates such as ``start=2024-01-01`` stay text.

    Raises:
        typer.BadParameter: An assignment has no ``=`` or an empty key.
    """
    variables: dict[str, Any] = {}
    for item in values or []:
        key, sep, raw = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got {item!r}", param_hint="--var")
        try:
            variables[key] = _plain(yaml.safe_load(raw)) if raw else ""
        except yaml.YAMLError:
            variables[key] = raw
    return variables


def load_variables_file(path: Path | None) -> dict[str, Any]:
    """Read a YAML (or JSON) mapping of variables."""
    if path is None:
        return {}
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise typer.BadParameter(f"{path} must contain a mapping", param_hint="--vars")
    return _plain(data)


def load_inventory_file(path: Path) -> dict[str, Any] | str:
    """Read an inventory file.

    YAML and JSON files are parsed into a structured inventory; anything
    else (INI) is passed through as text.
    """
    text = path.read_text()
    if path.suffix.lower() in (".yml", ".yaml", ".json"):
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise typer.BadParameter(f"{path} must contain a mapping", param_hint="--inventory")
        return _plain(data)
    return text


__all__ = [
    "CliOptions",
    "build_config",
    "configure_cli_logging",
    "get_options",
    "is_json",
    "load_inventory_file",
    "load_variables_file",
    "parse_var_assignments",
    "reset_options",
]
