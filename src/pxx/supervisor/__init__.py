"""Run supervision: lifecycle state machine and coordinated shutdown."""

from pxx.supervisor.state import InvalidTransition, RunStateMachine
from pxx.supervisor.supervisor import Supervisor

__all__ = ["InvalidTransition", "RunStateMachine", "Supervisor"]
