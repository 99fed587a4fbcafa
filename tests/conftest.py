"""Pytest fixtures for Conductor tests."""

from __future__ import annotations

import logging
import sys
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from conductor.backends.simulated import SimulatedBackend
from conductor.daemon.config import ExecutionConfig
from conductor.runner.runner import JobRunner


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog, root handlers and CLI option state around each test."""
    import conductor.cli.helpers as cli_helpers

    cli_helpers.reset_options()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_options()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)


@pytest.fixture
def python_cmd() -> list[str]:
    """Prefix for running inline Python scripts as real subprocesses."""
    return [sys.executable, "-c"]


@pytest.fixture
def workdir_root(tmp_path: Path) -> Path:
    """Parent directory for scoped job directories, so tests can inspect it."""
    root = tmp_path / "jobs"
    root.mkdir()
    return root


@pytest.fixture
def execution_config(workdir_root: Path) -> ExecutionConfig:
    """Execution settings with no echo delay and an inspectable workdir root."""
    return ExecutionConfig(echo_delay_seconds=0.0, workdir_root=workdir_root)


@pytest.fixture
def simulated() -> SimulatedBackend:
    """Instant simulated backend replaying the demo transcripts."""
    return SimulatedBackend(speed=0.0)


@pytest.fixture
def runner(execution_config: ExecutionConfig, simulated: SimulatedBackend) -> JobRunner:
    """Runner whose every tool goes through the simulated backend."""
    return JobRunner(execution_config, local=simulated, verify_working_dir=False)
