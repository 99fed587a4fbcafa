"""Conductor CLI commands."""

from .jobs import jobs
from .run import apply, echo, plan, playbook

__all__ = ["apply", "echo", "jobs", "plan", "playbook"]
