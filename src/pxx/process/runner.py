"""
Process runner.

Spawns supervised commands through the platform shell (or directly, for raw
commands) with the parent's standard streams, and reports how they ended.
"""

import asyncio
import shlex
import signal
import sys
from dataclasses import dataclass, field

from pxx.config import IS_WINDOWS, config
from pxx.models.enums import CommandMode
from pxx.utils.logger import get_logger

logger = get_logger(__name__)

# Exit code reported when a command could not be started at all
SPAWN_FAILED_EXIT_CODE = 127

# Buffered output
PUMP_CHUNK_SIZE = 8 * 1024
MAX_PENDING_LINE = 64 * 1024


# =============================================================================
# Data Models
# =============================================================================


@dataclass(frozen=True)
class Command:
    """A command line to supervise."""

    text: str
    mode: CommandMode = CommandMode.PARALLEL
    raw: bool = False  # Split at whitespace and exec without a shell

    def argv(self, shell: str, shell_args: list[str]) -> list[str]:
        if self.raw:
            return self.text.split() if IS_WINDOWS else shlex.split(self.text)
        return [shell, *shell_args, self.text]


@dataclass(frozen=True)
class ExitedWithCode:
    code: int

    @property
    def exit_code(self) -> int:
        return self.code

    def __str__(self) -> str:
        return f"exited with code {self.code}"


@dataclass(frozen=True)
class TerminatedBySignal:
    signal: int

    @property
    def exit_code(self) -> int:
        # Shell convention
        return 128 + self.signal

    def __str__(self) -> str:
        try:
            name = signal.Signals(self.signal).name
        except ValueError:
            name = str(self.signal)
        return f"terminated by {name}"


@dataclass(frozen=True)
class SpawnFailed:
    reason: str

    @property
    def exit_code(self) -> int:
        return SPAWN_FAILED_EXIT_CODE

    def __str__(self) -> str:
        return f"failed to start: {self.reason}"


ExitOutcome = ExitedWithCode | TerminatedBySignal | SpawnFailed


def outcome_from_returncode(returncode: int) -> ExitOutcome:
    if returncode < 0 and not IS_WINDOWS:
        return TerminatedBySignal(-returncode)
    return ExitedWithCode(returncode)


# =============================================================================
# Process Handle
# =============================================================================


@dataclass
class ProcessHandle:
    """A started (or failed to start) command."""

    index: int
    command: Command
    argv: list[str]
    process: asyncio.subprocess.Process | None = None
    outcome: ExitOutcome | None = None
    _pumps: list[asyncio.Task] = field(default_factory=list)

    @property
    def log_prefix(self) -> str:
        return f"[Command {self.index}]"

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def running(self) -> bool:
        return self.outcome is None and self.process is not None

    async def wait(self) -> ExitOutcome:
        """Wait for the command to exit."""
        if self.outcome is not None:
            return self.outcome

        returncode = await self.process.wait()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)

        self.outcome = outcome_from_returncode(returncode)
        logger.info(f"{self.log_prefix} {self.outcome}")
        return self.outcome

    def terminate(self) -> None:
        """Ask the command to stop (SIGTERM, TerminateProcess on Windows)."""
        self._send(lambda p: p.terminate(), "terminate")

    def kill(self) -> None:
        """Force the command to stop."""
        self._send(lambda p: p.kill(), "kill")

    def _send(self, action, name: str) -> None:
        if not self.running:
            return
        try:
            action(self.process)
            logger.debug(f"{self.log_prefix} Sent {name} to pid {self.pid}")
        except ProcessLookupError:
            pass


# =============================================================================
# Buffered Output
# =============================================================================


async def _pump_lines(
    stream: asyncio.StreamReader,
    sink,
    lock: asyncio.Lock,
) -> None:
    """
    Copy a child pipe to `sink`, only ever writing whole lines under `lock`.

    A partial line longer than MAX_PENDING_LINE is written as is.
    """
    target = getattr(sink, "buffer", None)
    pending = b""
    while True:
        chunk = await stream.read(PUMP_CHUNK_SIZE)
        if chunk:
            pending += chunk
            cut = pending.rfind(b"\n") + 1
            if cut == 0:
                if len(pending) < MAX_PENDING_LINE:
                    continue
                cut = len(pending)
        else:
            cut = len(pending)
        if cut:
            data, pending = pending[:cut], pending[cut:]
            async with lock:
                if target is not None:
                    target.write(data)
                else:
                    sink.write(data.decode(errors="replace"))
                sink.flush()
        if not chunk:
            break


class OutputLocks:
    """Shared locks so buffered commands never interleave within a line."""

    def __init__(self):
        self.stdout = asyncio.Lock()
        self.stderr = asyncio.Lock()


# =============================================================================
# Spawning
# =============================================================================


async def start_process(
    command: Command,
    index: int = 1,
    *,
    shell: str | None = None,
    shell_args: list[str] | None = None,
    buffered: bool | None = None,
    output_locks: OutputLocks | None = None,
) -> ProcessHandle:
    """
    Start a command.

    Never raises for spawn errors: the returned handle carries a SpawnFailed
    outcome instead.

    Args:
        command: Command to run.
        index: Number used in log messages.
        shell: Shell executable, defaults to config.SHELL.
        shell_args: Arguments before the command text, defaults to config.SHELL_ARGS.
        buffered: Pipe output and re-emit it line by line.
        output_locks: Locks shared between buffered commands.
    """
    shell = shell or config.SHELL
    shell_args = config.SHELL_ARGS if shell_args is None else shell_args
    buffered = config.BUFFERED_OUTPUT if buffered is None else buffered

    try:
        argv = command.argv(shell, shell_args)
    except ValueError as e:
        handle = ProcessHandle(index, command, [])
        handle.outcome = SpawnFailed(f"invalid command line: {e}")
        logger.error(f"{handle.log_prefix} `{command.text}` {handle.outcome}")
        return handle

    handle = ProcessHandle(index, command, argv)
    if not argv:
        handle.outcome = SpawnFailed("empty command")
        logger.error(f"{handle.log_prefix} {handle.outcome}")
        return handle

    out = asyncio.subprocess.PIPE if buffered else None
    try:
        handle.process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=None,
            stdout=out,
            stderr=out,
        )
    except OSError as e:
        handle.outcome = SpawnFailed(e.strerror or str(e))
        logger.error(f"{handle.log_prefix} `{command.text}` {handle.outcome}")
        return handle

    logger.info(
        f"{handle.log_prefix} Started pid {handle.pid}: "
        f"{' '.join(shlex.quote(a) for a in argv)}"
    )

    if buffered:
        locks = output_locks or OutputLocks()
        handle._pumps = [
            asyncio.create_task(
                _pump_lines(handle.process.stdout, sys.stdout, locks.stdout)
            ),
            asyncio.create_task(
                _pump_lines(handle.process.stderr, sys.stderr, locks.stderr)
            ),
        ]

    return handle
