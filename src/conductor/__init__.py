"""Conductor - job orchestration for infrastructure automation."""

__version__ = "0.1.0"
