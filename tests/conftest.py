"""
Shared test fixtures for the pxx test suite.

Provides an in-process echo target, a helper for opening client
connections through a forwarder, and a command shell that runs Python
one-liners so process tests behave the same on every platform.
"""

import asyncio
import sys

import pytest
import pytest_asyncio

from pxx.proxy.endpoint import TcpAddress
from pxx.proxy.forwarder import Forwarder
from pxx.proxy.mapping import Mapping

IS_WINDOWS = sys.platform == "win32"

# Commands in tests are Python source run with `python -c`
PYTHON_SHELL = sys.executable
PYTHON_SHELL_ARGS = ["-c"]


# ---------------------------------------------------------------------------
# Echo target
# ---------------------------------------------------------------------------


class EchoServer:
    """TCP (or Unix socket) echo server that records what it saw."""

    def __init__(self, unix_path: str | None = None):
        self.unix_path = unix_path
        self.server: asyncio.AbstractServer | None = None
        self.port: int | None = None
        self.connections = 0
        self.eof_seen = asyncio.Event()
        self.received = bytearray()

    async def start(self) -> None:
        if self.unix_path:
            self.server = await asyncio.start_unix_server(
                self._handle_client, self.unix_path
            )
        else:
            self.server = await asyncio.start_server(
                self._handle_client, "127.0.0.1", 0
            )
            self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.server:
            self.server.close()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self.connections += 1
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                self.received.extend(data)
                writer.write(data)
                await writer.drain()
            self.eof_seen.set()
        except OSError:
            pass
        finally:
            writer.close()


@pytest_asyncio.fixture
async def echo_server():
    server = EchoServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def echo_mapping(echo_server) -> Mapping:
    return Mapping(TcpAddress("127.0.0.1", 0), TcpAddress("127.0.0.1", echo_server.port))


@pytest_asyncio.fixture
async def forwarder(echo_mapping):
    """A bound forwarder from an ephemeral port to the echo server."""
    fwd = Forwarder(echo_mapping, connect_timeout=2.0)
    await fwd.bind()
    yield fwd
    await fwd.aclose()


async def open_client(fwd: Forwarder):
    return await asyncio.open_connection("127.0.0.1", fwd.port)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll `predicate` until it is true or fail after `timeout`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
