"""
Supervisor: runs the forwarders and the commands of one invocation.

Starting  bind every listener, then spawn every command
Running   forwarders serve; command exits arrive on a result queue
Draining  cancel forwarders, terminate commands, wait up to the grace period
Done      report the aggregate exit code
"""

import asyncio
import signal

from pxx.config import IS_WINDOWS, config
from pxx.models.enums import CommandMode, SupervisorState
from pxx.process.runner import Command, OutputLocks, ProcessHandle, start_process
from pxx.proxy.forwarder import Forwarder
from pxx.proxy.mapping import Mapping
from pxx.supervisor.state import RunStateMachine
from pxx.utils.logger import get_logger

logger = get_logger(__name__)

# Result queue marker for an external stop request
INTERRUPT = object()


def run_mode(commands: list[Command]) -> CommandMode:
    if any(c.mode == CommandMode.REPLACE for c in commands):
        return CommandMode.REPLACE
    return CommandMode.PARALLEL


class Supervisor:
    """Owns the forwarders and process handles of one run."""

    def __init__(
        self,
        mappings: list[Mapping],
        commands: list[Command],
        *,
        shutdown_grace: float | None = None,
        connect_timeout: float | None = None,
        shell: str | None = None,
        shell_args: list[str] | None = None,
        buffered: bool | None = None,
    ):
        self.mappings = list(mappings)
        self.commands = list(commands)
        self.shutdown_grace = (
            config.SHUTDOWN_GRACE if shutdown_grace is None else shutdown_grace
        )
        self.connect_timeout = connect_timeout
        self.shell = shell
        self.shell_args = shell_args
        self.buffered = buffered

        self.mode = run_mode(self.commands)
        self.machine = RunStateMachine(self.mode, len(self.commands))

        self.forwarders: list[Forwarder] = []
        self.handles: list[ProcessHandle] = []

        self._cancel = asyncio.Event()
        self._events: asyncio.Queue = asyncio.Queue()
        self._forwarder_tasks: list[asyncio.Task] = []
        self._wait_tasks: list[asyncio.Task] = []

    @property
    def state(self) -> SupervisorState:
        return self.machine.state

    def interrupt(self) -> None:
        """Request a stop; safe to call from a signal handler."""
        logger.info("Interrupt received, stopping")
        self._events.put_nowait(INTERRUPT)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def run(self, handle_signals: bool = False) -> int:
        """
        Run until the termination condition holds, then drain.

        Returns:
            Aggregate exit code.

        Raises:
            BindFailed: A listener could not be opened; no command was started.
        """
        if handle_signals:
            self._install_signal_handlers()
        try:
            try:
                await self._start()
            except BaseException:
                self._abort_start()
                self.machine.startup_failed()
                raise

            self.machine.started()
            try:
                await self._supervise()
            finally:
                await self._drain()
                self.machine.drained()
        finally:
            if handle_signals:
                self._remove_signal_handlers()

        code = self.machine.exit_code()
        logger.info(f"Run finished with exit code {code}")
        return code

    async def _start(self) -> None:
        self.forwarders = [
            Forwarder(mapping, connect_timeout=self.connect_timeout)
            for mapping in self.mappings
        ]

        await self._bind_all()

        for forwarder in self.forwarders:
            task = asyncio.create_task(forwarder.run(self._cancel))
            task.add_done_callback(self._on_forwarder_done)
            self._forwarder_tasks.append(task)

        locks = OutputLocks()
        for index, command in enumerate(self.commands, 1):
            handle = await start_process(
                command,
                index,
                shell=self.shell,
                shell_args=self.shell_args,
                buffered=self.buffered,
                output_locks=locks,
            )
            self.handles.append(handle)

    async def _bind_all(self) -> None:
        """Bind every forwarder; the first failure stops the others retrying."""
        binds = [asyncio.create_task(f.bind()) for f in self.forwarders]
        if not binds:
            return

        done, pending = await asyncio.wait(binds, return_when=asyncio.FIRST_EXCEPTION)
        failed = [t for t in binds if t in done and t.exception() is not None]
        if not failed:
            return

        for forwarder, task in zip(self.forwarders, binds):
            if task in pending:
                forwarder.close()
        await asyncio.gather(*pending, return_exceptions=True)
        raise failed[0].exception()

    def _abort_start(self) -> None:
        self._cancel.set()
        for forwarder in self.forwarders:
            forwarder.close()
        for task in self._forwarder_tasks:
            task.cancel()
        for handle in self.handles:
            handle.kill()

    def _on_forwarder_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._cancel.is_set():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Forwarder stopped unexpectedly: {exc}")

    async def _report(self, handle: ProcessHandle) -> None:
        outcome = await handle.wait()
        self._events.put_nowait((handle.index, outcome))

    async def _supervise(self) -> None:
        self._wait_tasks = [
            asyncio.create_task(self._report(handle)) for handle in self.handles
        ]

        while not self.machine.draining:
            event = await self._events.get()
            if event is INTERRUPT:
                self.machine.interrupt()
            else:
                index, outcome = event
                self.machine.command_exited(index, outcome)

    # -------------------------------------------------------------------------
    # Draining
    # -------------------------------------------------------------------------

    async def _drain(self) -> None:
        if self.machine.state == SupervisorState.RUNNING:
            self.machine.interrupt()

        logger.debug(
            f"Draining {len(self._forwarder_tasks)} forwarders and "
            f"{sum(h.running for h in self.handles)} running commands"
        )
        self._cancel.set()
        for handle in self.handles:
            handle.terminate()

        await asyncio.gather(self._drain_processes(), self._drain_forwarders())

        while not self._events.empty():
            event = self._events.get_nowait()
            if event is not INTERRUPT:
                self.machine.command_exited(*event)

    async def _drain_processes(self) -> None:
        pending = [t for t in self._wait_tasks if not t.done()]
        if not pending:
            return

        _, pending = await asyncio.wait(pending, timeout=self.shutdown_grace)
        if not pending:
            return

        for handle in self.handles:
            if handle.running:
                logger.warning(
                    f"{handle.log_prefix} Did not exit within "
                    f"{self.shutdown_grace:g}s, killing"
                )
                handle.kill()

        _, pending = await asyncio.wait(pending, timeout=1.0)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Discarded {len(pending)} commands that did not exit")

    async def _drain_forwarders(self) -> None:
        if not self._forwarder_tasks:
            return

        _, pending = await asyncio.wait(
            self._forwarder_tasks, timeout=self.shutdown_grace
        )
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                f"Discarded {len(pending)} forwarders that did not close within "
                f"{self.shutdown_grace:g}s"
            )
            await asyncio.wait(pending, timeout=1.0)

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    def _handled_signals(self) -> list[int]:
        if IS_WINDOWS:
            return []
        return [signal.SIGINT, signal.SIGTERM, signal.SIGHUP]

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._handled_signals():
            if sig == signal.SIGINT and self.mode == CommandMode.REPLACE:
                # Ctrl+C belongs to the foreground command
                loop.add_signal_handler(sig, lambda: None)
            else:
                loop.add_signal_handler(sig, self.interrupt)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._handled_signals():
            loop.remove_signal_handler(sig)
