"""
Listen and dial per transport kind.

This is the only place that switches on the endpoint variant. Everything
above it works with asyncio StreamReader/StreamWriter pairs regardless of
whether they wrap a TCP socket, a Unix socket or a named pipe.
"""

import asyncio
import errno
import os
import socket
import stat
from typing import Awaitable, Callable

from pxx.proxy.endpoint import Endpoint, NamedPipe, TcpAddress, UnixPath, resolve
from pxx.proxy.exceptions import DialFailed, ResolutionError
from pxx.utils.logger import get_logger

logger = get_logger(__name__)

ConnectionHandler = Callable[
    [asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]
]

# Windows: all pipe instances are busy
ERROR_PIPE_BUSY = 231


# =============================================================================
# Listening
# =============================================================================


class Listener:
    """A bound listener. Closing it stops accepting new connections."""

    def __init__(
        self,
        endpoint: Endpoint,
        server: asyncio.AbstractServer | None = None,
        pipe_servers: list | None = None,
    ):
        self.endpoint = endpoint
        self._server = server
        self._pipe_servers = pipe_servers or []

    @property
    def port(self) -> int | None:
        """Bound TCP port, useful when listening on port 0."""
        if not isinstance(self.endpoint, TcpAddress) or not self._server:
            return None
        return self._server.sockets[0].getsockname()[1]

    @property
    def addresses(self) -> list[str]:
        if self._server:
            return [str(sock.getsockname()) for sock in self._server.sockets]
        return [str(self.endpoint)]

    def close(self) -> None:
        if self._server:
            self._server.close()
        for pipe_server in self._pipe_servers:
            pipe_server.close()
        if isinstance(self.endpoint, UnixPath):
            _remove_socket_file(self.endpoint.path)

    async def wait_closed(self) -> None:
        if self._server:
            await self._server.wait_closed()


def _remove_socket_file(path: str) -> None:
    try:
        if stat.S_ISSOCK(os.stat(path).st_mode):
            os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Could not remove socket file {path}: {e}")


async def _start_dualstack_server(
    handler: ConnectionHandler, port: int
) -> asyncio.AbstractServer:
    """Listen on `[::]` so that both IPv6 and IPv4 clients are accepted."""
    if not socket.has_dualstack_ipv6():
        # One listening socket per address family
        return await asyncio.start_server(handler, None, port)

    sock = socket.create_server(
        ("::", port), family=socket.AF_INET6, dualstack_ipv6=True
    )
    try:
        return await asyncio.start_server(handler, sock=sock)
    except BaseException:
        sock.close()
        raise


async def _check_socket_unused(path: str) -> None:
    """
    Refuse to take over a socket path another process is serving.

    Stale socket files (nothing accepting) are left for start_unix_server,
    which replaces them.

    Raises:
        OSError: EADDRINUSE when a server answers on `path`.
    """
    try:
        if not stat.S_ISSOCK(os.stat(path).st_mode):
            return
    except FileNotFoundError:
        return

    try:
        _, writer = await asyncio.open_unix_connection(path)
    except OSError:
        return
    writer.close()
    raise OSError(errno.EADDRINUSE, f"{path} is in use by another server")


async def open_listener(endpoint: Endpoint, handler: ConnectionHandler) -> Listener:
    """
    Bind a concrete endpoint and start accepting connections.

    Every accepted connection is passed to `handler` in its own task.

    Raises:
        OSError: The endpoint could not be bound.
    """
    if isinstance(endpoint, TcpAddress):
        if endpoint.is_wildcard and ":" in endpoint.host:
            server = await _start_dualstack_server(handler, endpoint.port)
        else:
            server = await asyncio.start_server(handler, endpoint.host, endpoint.port)
        return Listener(endpoint, server=server)

    if isinstance(endpoint, UnixPath):
        await _check_socket_unused(endpoint.path)
        server = await asyncio.start_unix_server(handler, endpoint.path)
        return Listener(endpoint, server=server)

    if isinstance(endpoint, NamedPipe):
        loop = asyncio.get_running_loop()

        def factory():
            reader = asyncio.StreamReader()
            return asyncio.StreamReaderProtocol(reader, handler)

        pipe_servers = await loop.start_serving_pipe(factory, endpoint.name)
        return Listener(endpoint, pipe_servers=pipe_servers)

    raise ValueError(f"Cannot listen on unresolved endpoint {endpoint}")


# =============================================================================
# Dialing
# =============================================================================


async def _connect(
    endpoint: Endpoint,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    endpoint = resolve(endpoint)

    if isinstance(endpoint, TcpAddress):
        # DNS lookup happens here, on every dial
        return await asyncio.open_connection(endpoint.host, endpoint.port)

    if isinstance(endpoint, UnixPath):
        return await asyncio.open_unix_connection(endpoint.path)

    if isinstance(endpoint, NamedPipe):
        loop = asyncio.get_running_loop()
        delay = 0.001
        while True:
            reader = asyncio.StreamReader()
            protocol = asyncio.StreamReaderProtocol(reader)
            try:
                transport, _ = await loop.create_pipe_connection(
                    lambda: protocol, endpoint.name
                )
            except OSError as e:
                if getattr(e, "winerror", None) != ERROR_PIPE_BUSY:
                    raise
                await asyncio.sleep(delay)
                delay = min(delay * 2, 0.5)
                continue
            return reader, asyncio.StreamWriter(transport, protocol, reader, loop)

    raise ValueError(f"Cannot dial endpoint {endpoint}")


async def open_stream(
    endpoint: Endpoint, timeout: float
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    Dial an endpoint within `timeout` seconds.

    Raises:
        DialFailed: Connection refused, unreachable, timed out or unresolvable.
    """
    try:
        return await asyncio.wait_for(_connect(endpoint), timeout=timeout)
    except asyncio.TimeoutError:
        raise DialFailed(endpoint, f"timed out after {timeout:g}s")
    except ResolutionError as e:
        raise DialFailed(endpoint, str(e)) from e
    except OSError as e:
        raise DialFailed(endpoint, e.strerror or str(e)) from e
