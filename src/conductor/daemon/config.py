"""Configuration models for the Conductor daemon.

Defines Pydantic v2 models for worker concurrency, default job options,
registry storage, execution backends and event delivery. Loaded from a
YAML file via ``load_config()``; every field has a working default so an
empty file (or no file) yields a usable configuration.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from conductor.core.logging import get_logger
from conductor.daemon.types import JobOptions

_logger = get_logger("daemon.config")


class RegistryConfig(BaseModel):
    """Where job records live."""

    backend: Literal["memory", "sqlite"] = Field(
        default="memory",
        description="memory keeps records for the lifetime of the process; "
        "sqlite persists them across restarts",
    )
    db_path: Path = Field(
        default=Path("~/.conductor/jobs.db"),
        description="SQLite database path (sqlite backend only). Tilde is expanded at runtime.",
    )
    max_job_history: int = Field(
        default=1000,
        ge=10,
        description="Maximum terminal jobs kept by the memory backend. "
        "Oldest terminal jobs are evicted first.",
    )


class ExecutionConfig(BaseModel):
    """How external tools are invoked."""

    container_enabled: bool = Field(
        default=True,
        description="Probe the container runtime and run tools inside containers "
        "when it is available. When False, tools always run on the host.",
    )
    container_runtime: str = Field(
        default="docker",
        description="Container runtime executable (docker, podman)",
    )
    ansible_image: str = Field(
        default="quay.io/ansible/ansible-runner:latest",
        description="Image providing ansible-playbook",
    )
    terraform_image: str = Field(
        default="hashicorp/terraform:latest",
        description="Image providing terraform",
    )
    ansible_command: str = Field(
        default="ansible-playbook",
        description="ansible-playbook executable for host execution",
    )
    terraform_command: str = Field(
        default="terraform",
        description="terraform executable for host execution",
    )
    probe_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Timeout for tool availability probes",
    )
    probe_cache_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="How long a container runtime probe answer is reused",
    )
    workdir_root: Path | None = Field(
        default=None,
        description="Parent for scoped job directories. None uses the system temp dir.",
    )
    echo_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Simulated work duration for echo jobs",
    )
    max_log_bytes: int = Field(
        default=1024 * 1024,
        ge=0,
        description="Tail of stdout kept in the job record. 0 disables log capture.",
    )
    demo_speed: float = Field(
        default=1.0,
        ge=0.0,
        description="Multiplier for simulated output delays in demo mode. 0 replays instantly.",
    )


class EventConfig(BaseModel):
    """Event broadcaster settings."""

    max_queue_size: int = Field(
        default=1000,
        ge=10,
        description="Maximum undelivered events per subscriber before drop-oldest.",
    )


class ConductorConfig(BaseModel):
    """Top-level configuration for the Conductor daemon."""

    mode: Literal["local", "demo"] = Field(
        default="local",
        description="demo replaces every execution backend with the simulated "
        "backend; no external tools are required.",
    )
    workers: int = Field(
        default=3,
        ge=1,
        le=64,
        description="Number of concurrent worker slots",
    )
    job_defaults: JobOptions = Field(
        default_factory=JobOptions,
        description="Options applied to submissions that don't override them",
    )
    job_timeout_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Default per-attempt timeout. None means no limit.",
    )
    shutdown_timeout_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Seconds to let running jobs finish during graceful shutdown",
    )
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    events: EventConfig = Field(default_factory=EventConfig)
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Minimum log level for structlog output",
    )
    log_format: Literal["console", "json", "both"] = Field(default="console")
    log_file: Path | None = Field(
        default=None,
        description="Log file path. None means log to stderr only.",
    )
    config_file: Path | None = Field(
        default=None,
        description="Path this config was loaded from. Set by load_config().",
    )

    @model_validator(mode="after")
    def _check_log_file(self) -> ConductorConfig:
        if self.log_format == "both" and self.log_file is None:
            raise ValueError("log_file is required when log_format is 'both'")
        return self


def load_config(config_file: Path | None) -> ConductorConfig:
    """Load ConductorConfig from a YAML file or return defaults."""
    if config_file is None:
        return ConductorConfig()
    if not config_file.exists():
        _logger.warning("config.file_missing", path=str(config_file))
        return ConductorConfig()
    with open(config_file) as f:
        data = yaml.safe_load(f) or {}
    config = ConductorConfig.model_validate(data)
    config.config_file = config_file.resolve()
    _logger.debug("config.loaded", path=str(config.config_file))
    return config


__all__ = [
    "ConductorConfig",
    "EventConfig",
    "ExecutionConfig",
    "RegistryConfig",
    "load_config",
]
