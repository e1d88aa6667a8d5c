"""
Forwarder: accept on one endpoint, relay every connection to another.

Lifecycle:
    bind()   resolve the listen endpoint and open the listener, retrying while
             the address is not available yet (e.g. VPN interface not up)
    run()    serve until the cancel event is set, then close everything
    close()  close the listener and abort every live connection
"""

import asyncio
import errno
from dataclasses import dataclass

from pxx.config import config
from pxx.proxy.endpoint import Endpoint, resolve
from pxx.proxy.exceptions import BindFailed, DialFailed, InterfaceNotFound
from pxx.proxy.mapping import Mapping
from pxx.proxy.relay import relay
from pxx.proxy.streams import Listener, open_listener, open_stream
from pxx.utils.logger import format_traceback, get_logger

logger = get_logger(__name__)


@dataclass
class Connection:
    """One accepted stream and the stream dialed for it."""

    conn_id: int
    peer: str
    inbound: asyncio.StreamWriter
    outbound: asyncio.StreamWriter | None = None
    task: asyncio.Task | None = None

    def abort(self) -> None:
        """Drop both sides immediately, unblocking any pending read."""
        for writer in (self.inbound, self.outbound):
            if writer is not None:
                writer.transport.abort()
        if self.outbound is None and self.task is not None:
            # Still dialing
            self.task.cancel()

    def close(self) -> None:
        for writer in (self.inbound, self.outbound):
            if writer is not None and not writer.transport.is_closing():
                writer.close()


class Forwarder:
    """Proxies every connection accepted on `mapping.listen` to `mapping.target`."""

    def __init__(
        self,
        mapping: Mapping,
        *,
        connect_timeout: float | None = None,
        buffer_size: int | None = None,
        bind_attempts: int | None = None,
        bind_backoff: float | None = None,
        bind_backoff_max: float | None = None,
    ):
        self.mapping = mapping
        self.connect_timeout = (
            config.CONNECT_TIMEOUT if connect_timeout is None else connect_timeout
        )
        self.buffer_size = buffer_size or config.BUFFER_SIZE
        self.bind_attempts = max(
            1, config.BIND_ATTEMPTS if bind_attempts is None else bind_attempts
        )
        self.bind_backoff = config.BIND_BACKOFF if bind_backoff is None else bind_backoff
        self.bind_backoff_max = (
            config.BIND_BACKOFF_MAX if bind_backoff_max is None else bind_backoff_max
        )

        self.log_prefix = f"[Forward {mapping}]"
        self.accepted = 0
        self.dial_failures = 0

        self._listen_endpoint: Endpoint | None = None
        self._listener: Listener | None = None
        self._connections: dict[int, Connection] = {}
        self._next_conn_id = 1
        self._closing = False
        self._closed = asyncio.Event()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def bound(self) -> bool:
        return self._listener is not None

    @property
    def port(self) -> int | None:
        """Bound TCP port, or None for non-TCP listeners."""
        return self._listener.port if self._listener else None

    @property
    def live_connections(self) -> int:
        return len(self._connections)

    # -------------------------------------------------------------------------
    # Binding
    # -------------------------------------------------------------------------

    def _resolve_listen(self) -> Endpoint:
        # Memoized for the lifetime of this forwarder
        if self._listen_endpoint is None:
            self._listen_endpoint = resolve(self.mapping.listen)
        return self._listen_endpoint

    async def bind(self) -> None:
        """
        Open the listener.

        Interface lookups that find nothing and addresses that are not yet
        assigned to the host are retried with exponential backoff.

        Raises:
            BindFailed: Non-retryable error, or retries exhausted.
        """
        if self._listener:
            return

        delay = self.bind_backoff
        reason = ""
        for attempt in range(1, self.bind_attempts + 1):
            if self._closing:
                raise BindFailed(self.mapping.listen, "forwarder closed", attempt - 1)
            try:
                endpoint = self._resolve_listen()
                self._listener = await open_listener(endpoint, self._handle_connection)
                logger.info(
                    f"{self.log_prefix} Listening on {', '.join(self._listener.addresses)}"
                )
                return
            except InterfaceNotFound as e:
                reason = str(e)
            except OSError as e:
                if e.errno != errno.EADDRNOTAVAIL:
                    raise BindFailed(
                        self.mapping.listen, e.strerror or str(e), attempt
                    ) from e
                reason = e.strerror or str(e)

            if attempt < self.bind_attempts:
                logger.warning(
                    f"{self.log_prefix} Listen endpoint not ready ({reason}), "
                    f"retrying in {delay:.1f}s ({attempt}/{self.bind_attempts})"
                )
                try:
                    await asyncio.wait_for(self._closed.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                delay = min(delay * 2, self.bind_backoff_max)

        raise BindFailed(self.mapping.listen, reason, self.bind_attempts)

    # -------------------------------------------------------------------------
    # Serving
    # -------------------------------------------------------------------------

    async def run(self, cancel: asyncio.Event) -> None:
        """
        Serve until `cancel` is set, then close the listener and all
        connections and wait for their relay tasks to finish.
        """
        await self.bind()
        try:
            await cancel.wait()
        finally:
            await self.aclose()

    def close(self) -> None:
        """Close the listener and abort every live connection."""
        self._closing = True
        self._closed.set()
        if self._listener:
            self._listener.close()
        for connection in list(self._connections.values()):
            connection.abort()

    async def aclose(self) -> None:
        self.close()
        tasks = [c.task for c in self._connections.values() if c.task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._listener:
            try:
                await asyncio.wait_for(self._listener.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug(f"{self.log_prefix} Listener did not report closed")
        logger.info(f"{self.log_prefix} Stopped ({self.accepted} connections served)")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single accepted connection."""
        if self._closing:
            writer.transport.abort()
            return

        conn_id = self._next_conn_id
        self._next_conn_id += 1
        self.accepted += 1

        peer = writer.get_extra_info("peername") or "local"
        log_prefix = f"{self.log_prefix} [Conn {conn_id}]"
        connection = Connection(conn_id, str(peer), writer, task=asyncio.current_task())
        self._connections[conn_id] = connection
        logger.debug(f"{log_prefix} Accepted from {peer}")

        try:
            try:
                target_reader, target_writer = await open_stream(
                    self.mapping.target, self.connect_timeout
                )
            except DialFailed as e:
                self.dial_failures += 1
                logger.warning(f"{log_prefix} {e}")
                return

            connection.outbound = target_writer
            if self._closing:
                return

            logger.debug(f"{log_prefix} Connected to {self.mapping.target}")
            sent, received = await relay(
                reader, writer, target_reader, target_writer, self.buffer_size
            )
            logger.debug(
                f"{log_prefix} Finished ({sent} bytes sent, {received} bytes received)"
            )

        except Exception as e:
            logger.error(f"{log_prefix} Unexpected error in connection handler: {e}")
            logger.debug(format_traceback(e))

        finally:
            connection.close()
            self._connections.pop(conn_id, None)
