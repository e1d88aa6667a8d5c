"""
Supervisor state machine.

Holds the run's lifecycle state and decides, from command exits and
interrupts alone, when the run must start draining and what it reports at
the end. It performs no I/O so the termination policy can be tested without
sockets or processes.

    STARTING --started()------------> RUNNING
    STARTING --startup_failed()-----> DONE
    RUNNING  --termination met------> DRAINING
    RUNNING  --interrupt()----------> DRAINING
    DRAINING --drained()------------> DONE
"""

from pxx.models.enums import CommandMode, SupervisorState
from pxx.process.runner import ExitOutcome, SpawnFailed
from pxx.utils.logger import get_logger

logger = get_logger(__name__)

# Event -> (required state, resulting state)
TRANSITIONS: dict[str, tuple[SupervisorState, SupervisorState]] = {
    "started": (SupervisorState.STARTING, SupervisorState.RUNNING),
    "startup_failed": (SupervisorState.STARTING, SupervisorState.DONE),
    "drain": (SupervisorState.RUNNING, SupervisorState.DRAINING),
    "drained": (SupervisorState.DRAINING, SupervisorState.DONE),
}


class InvalidTransition(Exception):
    """An event arrived in a state that does not allow it."""

    def __init__(self, current: SupervisorState, target: SupervisorState):
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition {current.value} -> {target.value}")


class RunStateMachine:
    """
    Termination policy for one run.

    Parallel mode drains once every command has an outcome; replace mode
    drains as soon as its single command has one. An interrupt drains in
    either mode.
    """

    def __init__(self, mode: CommandMode, command_count: int):
        if mode == CommandMode.REPLACE and command_count != 1:
            raise ValueError("Replace mode requires exactly one command")
        self.mode = mode
        self.command_count = command_count
        self.state = SupervisorState.STARTING
        self.outcomes: dict[int, ExitOutcome] = {}
        self.trigger: int | None = None
        self.interrupted = False

    def _transition(self, event: str) -> None:
        source, target = TRANSITIONS[event]
        if self.state != source:
            raise InvalidTransition(self.state, target)
        logger.debug(f"Supervisor {self.state.value} -> {target.value}")
        self.state = target

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def started(self) -> None:
        self._transition("started")

    def startup_failed(self) -> None:
        self._transition("startup_failed")

    def command_exited(self, index: int, outcome: ExitOutcome) -> SupervisorState:
        """
        Record a command's outcome; returns the resulting state.

        Outcomes arriving while draining are recorded but never change state.
        """
        self.outcomes[index] = outcome
        if self.state != SupervisorState.RUNNING:
            return self.state

        if self.mode == CommandMode.REPLACE:
            self.trigger = index
            self._transition("drain")
        elif len(self.outcomes) >= self.command_count:
            self.trigger = index
            self._transition("drain")
        elif isinstance(outcome, SpawnFailed):
            logger.debug(f"Command {index} failed to spawn, others keep running")

        return self.state

    def interrupt(self) -> SupervisorState:
        """External stop request; drains from RUNNING, ignored otherwise."""
        self.interrupted = True
        if self.state == SupervisorState.RUNNING:
            self._transition("drain")
        return self.state

    def drained(self) -> None:
        self._transition("drained")

    # -------------------------------------------------------------------------
    # Result
    # -------------------------------------------------------------------------

    @property
    def draining(self) -> bool:
        return self.state == SupervisorState.DRAINING

    def exit_code(self) -> int:
        """
        Aggregate exit code.

        Replace mode: the command's own exit code. Parallel mode: the worst
        exit code, so any failure outranks success. No commands: 0.
        """
        if not self.outcomes:
            return 0
        if self.mode == CommandMode.REPLACE:
            index = self.trigger if self.trigger is not None else next(iter(self.outcomes))
            return self.outcomes[index].exit_code
        return max(outcome.exit_code for outcome in self.outcomes.values())
