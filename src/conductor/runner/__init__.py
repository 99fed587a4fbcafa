"""Job runner: turns a job type and payload into tool invocations."""

from conductor.runner.inventory import render_inventory
from conductor.runner.payloads import validate_payload
from conductor.runner.runner import JobRunner
from conductor.runner.workspace import ScopedWorkdir

__all__ = ["JobRunner", "ScopedWorkdir", "render_inventory", "validate_payload"]
