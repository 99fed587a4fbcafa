"""Execution backends for running external tools.

Backends share the ExecutionBackend contract: run one command, stream
stdout to a sink, report the exit status. Available implementations:

- LocalBackend: host processes
- ContainerBackend: ``<runtime> run --rm`` with the working dir mounted
- SimulatedBackend: scripted transcripts for demo mode and tests
"""

from conductor.backends.base import ExecutionBackend, ExecutionResult, OutputSink, null_sink
from conductor.backends.container import ContainerBackend
from conductor.backends.local import LocalBackend
from conductor.backends.process_manager import ProcessManager, ProcessResult
from conductor.backends.simulated import DEMO_TRANSCRIPTS, SimulatedBackend, Transcript

__all__ = [
    "ContainerBackend",
    "DEMO_TRANSCRIPTS",
    "ExecutionBackend",
    "ExecutionResult",
    "LocalBackend",
    "OutputSink",
    "ProcessManager",
    "ProcessResult",
    "SimulatedBackend",
    "Transcript",
    "null_sink",
]
