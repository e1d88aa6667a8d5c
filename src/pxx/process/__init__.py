"""Child process execution for supervised commands."""

from pxx.process.runner import (
    Command,
    ExitedWithCode,
    ExitOutcome,
    ProcessHandle,
    SpawnFailed,
    TerminatedBySignal,
    start_process,
)

__all__ = [
    "Command",
    "ExitedWithCode",
    "ExitOutcome",
    "ProcessHandle",
    "SpawnFailed",
    "TerminatedBySignal",
    "start_process",
]
