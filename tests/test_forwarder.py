"""Tests for the forwarder and the relay it runs per connection."""

import asyncio
import errno
import os
import socket
import tempfile

import pytest

from pxx.config import config
from pxx.proxy import forwarder as forwarder_module
from pxx.proxy.endpoint import InterfaceAddress, TcpAddress, UnixPath
from pxx.proxy.exceptions import BindFailed, InterfaceNotFound
from pxx.proxy.forwarder import Forwarder
from pxx.proxy.mapping import Mapping, parse_mapping

from conftest import IS_WINDOWS, EchoServer, open_client, wait_until


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bytes_relayed_unmodified(forwarder, echo_server):
    reader, writer = await open_client(forwarder)
    payload = bytes(range(256)) * 64

    writer.write(payload)
    await writer.drain()
    echoed = await asyncio.wait_for(reader.readexactly(len(payload)), timeout=2.0)

    assert echoed == payload
    assert bytes(echo_server.received) == payload
    writer.close()


@pytest.mark.asyncio
async def test_large_payload_in_order(forwarder):
    reader, writer = await open_client(forwarder)
    payload = os.urandom(2 * 1024 * 1024)

    async def send():
        writer.write(payload)
        await writer.drain()
        writer.write_eof()

    sender = asyncio.create_task(send())
    echoed = await asyncio.wait_for(reader.read(-1), timeout=10.0)
    await sender

    assert echoed == payload
    writer.close()


@pytest.mark.asyncio
async def test_client_close_propagates_eof(forwarder, echo_server):
    reader, writer = await open_client(forwarder)
    writer.write(b"ping")
    await writer.drain()
    assert await reader.readexactly(4) == b"ping"

    writer.write_eof()
    await asyncio.wait_for(echo_server.eof_seen.wait(), timeout=2.0)

    # Echo server closes after EOF, which reaches the client as EOF too
    assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""
    writer.close()


@pytest.mark.asyncio
async def test_connections_released(forwarder):
    for _ in range(20):
        reader, writer = await open_client(forwarder)
        writer.write(b"x")
        await writer.drain()
        await reader.readexactly(1)
        writer.close()

    await wait_until(lambda: forwarder.live_connections == 0)
    assert forwarder.accepted == 20


@pytest.mark.asyncio
async def test_concurrent_connections_independent(forwarder):
    stalled_reader, stalled_writer = await open_client(forwarder)

    async def roundtrip(i: int) -> bytes:
        reader, writer = await open_client(forwarder)
        message = f"message {i}".encode()
        writer.write(message)
        await writer.drain()
        data = await reader.readexactly(len(message))
        writer.close()
        return data

    results = await asyncio.wait_for(
        asyncio.gather(*(roundtrip(i) for i in range(10))), timeout=5.0
    )
    assert results == [f"message {i}".encode() for i in range(10)]
    stalled_writer.close()


# ---------------------------------------------------------------------------
# Dial failures
# ---------------------------------------------------------------------------


async def _closed_port() -> int:
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return port


@pytest.mark.asyncio
async def test_dial_failure_is_not_fatal():
    port = await _closed_port()
    fwd = Forwarder(
        Mapping(TcpAddress("127.0.0.1", 0), TcpAddress("127.0.0.1", port)),
        connect_timeout=1.0,
    )
    await fwd.bind()
    try:
        for _ in range(3):
            reader, writer = await open_client(fwd)
            # Inbound side is closed right after the failed dial
            assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""
            writer.close()

        assert fwd.dial_failures == 3
        await wait_until(lambda: fwd.live_connections == 0)

        # Still accepting
        reader, writer = await open_client(fwd)
        writer.close()
    finally:
        await fwd.aclose()


@pytest.mark.asyncio
async def test_dial_resolves_target_per_connection(echo_server, monkeypatch):
    calls = []
    real_open_connection = asyncio.open_connection

    async def tracking_open_connection(host, port, **kwargs):
        calls.append(host)
        return await real_open_connection("127.0.0.1", port, **kwargs)

    monkeypatch.setattr(asyncio, "open_connection", tracking_open_connection)
    fwd = Forwarder(
        Mapping(TcpAddress("127.0.0.1", 0), TcpAddress("echo.test", echo_server.port))
    )
    await fwd.bind()
    try:
        for _ in range(2):
            reader, writer = await real_open_connection("127.0.0.1", fwd.port)
            writer.write(b"a")
            await writer.drain()
            await reader.readexactly(1)
            writer.close()
        assert calls == ["echo.test", "echo.test"]
    finally:
        await fwd.aclose()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_closes_listener_and_connections(echo_mapping):
    fwd = Forwarder(echo_mapping)
    cancel = asyncio.Event()
    await fwd.bind()
    port = fwd.port
    run_task = asyncio.create_task(fwd.run(cancel))

    clients = [await open_client(fwd) for _ in range(3)]
    for reader, writer in clients:
        writer.write(b"hi")
        await writer.drain()
        await reader.readexactly(2)
    await wait_until(lambda: fwd.live_connections == 3)

    cancel.set()
    await asyncio.wait_for(run_task, timeout=2.0)

    assert fwd.live_connections == 0
    for reader, writer in clients:
        # Open connections were torn down without the client closing them
        assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""
        writer.close()

    with pytest.raises(OSError):
        await asyncio.open_connection("127.0.0.1", port)


@pytest.mark.asyncio
async def test_cancel_during_dial(monkeypatch):
    stalled = asyncio.Event()

    async def slow_open_stream(endpoint, timeout):
        stalled.set()
        await asyncio.sleep(60)

    monkeypatch.setattr(forwarder_module, "open_stream", slow_open_stream)
    fwd = Forwarder(
        Mapping(TcpAddress("127.0.0.1", 0), TcpAddress("127.0.0.1", 9)),
        connect_timeout=30.0,
    )
    cancel = asyncio.Event()
    await fwd.bind()
    run_task = asyncio.create_task(fwd.run(cancel))
    reader, writer = await open_client(fwd)
    await asyncio.wait_for(stalled.wait(), timeout=2.0)
    assert fwd.live_connections == 1

    cancel.set()
    await asyncio.wait_for(run_task, timeout=2.0)
    assert fwd.live_connections == 0
    writer.close()


# ---------------------------------------------------------------------------
# Binding
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bind_address_in_use_fails_fast(forwarder, echo_server):
    fwd = Forwarder(
        Mapping(
            TcpAddress("127.0.0.1", forwarder.port),
            TcpAddress("127.0.0.1", echo_server.port),
        ),
        bind_attempts=5,
    )
    with pytest.raises(BindFailed) as exc_info:
        await fwd.bind()
    assert exc_info.value.attempts == 1


@pytest.mark.asyncio
async def test_bind_retries_until_interface_up(echo_server, monkeypatch):
    attempts = []

    def fake_resolve(endpoint):
        attempts.append(endpoint)
        if len(attempts) < 3:
            raise InterfaceNotFound("tailscale")
        return TcpAddress("127.0.0.1", endpoint.port)

    monkeypatch.setattr(forwarder_module, "resolve", fake_resolve)
    fwd = Forwarder(
        Mapping(InterfaceAddress("tailscale", 0), TcpAddress("127.0.0.1", echo_server.port)),
        bind_attempts=5,
        bind_backoff=0.01,
    )
    await fwd.bind()
    try:
        assert len(attempts) == 3
        assert fwd.bound

        # Resolution is memoized once it succeeded
        await fwd.bind()
        fwd._resolve_listen()
        assert len(attempts) == 3
    finally:
        await fwd.aclose()


@pytest.mark.asyncio
async def test_bind_gives_up_after_attempts(monkeypatch):
    def missing(endpoint):
        raise InterfaceNotFound("tailscale")

    monkeypatch.setattr(forwarder_module, "resolve", missing)
    fwd = Forwarder(
        Mapping(InterfaceAddress("tailscale", 8080), TcpAddress("127.0.0.1", 1)),
        bind_attempts=3,
        bind_backoff=0.01,
    )
    with pytest.raises(BindFailed) as exc_info:
        await fwd.bind()
    assert exc_info.value.attempts == 3
    assert "tailscale" in str(exc_info.value)
    assert not fwd.bound


@pytest.mark.asyncio
async def test_close_stops_bind_retries(monkeypatch):
    def missing(endpoint):
        raise InterfaceNotFound("tailscale")

    monkeypatch.setattr(forwarder_module, "resolve", missing)
    fwd = Forwarder(
        Mapping(InterfaceAddress("tailscale", 8080), TcpAddress("127.0.0.1", 1)),
        bind_attempts=100,
        bind_backoff=5.0,
    )
    bind_task = asyncio.create_task(fwd.bind())
    await asyncio.sleep(0.05)
    fwd.close()

    with pytest.raises(BindFailed):
        await asyncio.wait_for(bind_task, timeout=1.0)
    assert not fwd.bound


@pytest.mark.asyncio
async def test_bind_retries_address_not_available(echo_server, monkeypatch):
    calls = 0
    real_open_listener = forwarder_module.open_listener

    async def flaky_open_listener(endpoint, handler):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise OSError(errno.EADDRNOTAVAIL, "Cannot assign requested address")
        return await real_open_listener(endpoint, handler)

    monkeypatch.setattr(forwarder_module, "open_listener", flaky_open_listener)
    fwd = Forwarder(
        Mapping(TcpAddress("127.0.0.1", 0), TcpAddress("127.0.0.1", echo_server.port)),
        bind_backoff=0.01,
    )
    await fwd.bind()
    assert calls == 2
    await fwd.aclose()


# ---------------------------------------------------------------------------
# Unix sockets
# ---------------------------------------------------------------------------


@pytest.mark.skipif(IS_WINDOWS, reason="Unix sockets")
@pytest.mark.asyncio
async def test_tcp_to_unix_target():
    with tempfile.TemporaryDirectory() as tmp:
        target = EchoServer(unix_path=os.path.join(tmp, "echo.sock"))
        await target.start()
        fwd = Forwarder(
            Mapping(TcpAddress("127.0.0.1", 0), UnixPath(target.unix_path))
        )
        await fwd.bind()
        try:
            reader, writer = await open_client(fwd)
            writer.write(b"over unix")
            await writer.drain()
            assert await reader.readexactly(9) == b"over unix"
            writer.close()
        finally:
            await fwd.aclose()
            await target.stop()


@pytest.mark.skipif(IS_WINDOWS, reason="Unix sockets")
@pytest.mark.asyncio
async def test_unix_listen_to_tcp_target(echo_server):
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "listen.sock")
        fwd = Forwarder(
            Mapping(UnixPath(path), TcpAddress("127.0.0.1", echo_server.port))
        )
        await fwd.bind()
        try:
            reader, writer = await asyncio.open_unix_connection(path)
            writer.write(b"from unix")
            await writer.drain()
            assert await reader.readexactly(9) == b"from unix"
            writer.close()
        finally:
            await fwd.aclose()
        assert not os.path.exists(path)


@pytest.mark.skipif(IS_WINDOWS, reason="Unix sockets")
@pytest.mark.asyncio
async def test_unix_listen_refuses_live_socket(echo_server):
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "busy.sock")
        owner = EchoServer(unix_path=path)
        await owner.start()
        try:
            fwd = Forwarder(
                Mapping(UnixPath(path), TcpAddress("127.0.0.1", echo_server.port)),
                bind_attempts=3,
            )
            with pytest.raises(BindFailed) as exc_info:
                await fwd.bind()
            assert exc_info.value.attempts == 1

            # The original server still owns the path
            reader, writer = await asyncio.open_unix_connection(path)
            writer.write(b"ping")
            await writer.drain()
            assert await reader.readexactly(4) == b"ping"
            writer.close()
        finally:
            await owner.stop()


@pytest.mark.skipif(IS_WINDOWS, reason="Unix sockets")
@pytest.mark.asyncio
async def test_unix_listen_replaces_stale_socket(echo_server):
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "stale.sock")
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        stale.bind(path)
        stale.close()

        fwd = Forwarder(
            Mapping(UnixPath(path), TcpAddress("127.0.0.1", echo_server.port))
        )
        await fwd.bind()
        try:
            reader, writer = await asyncio.open_unix_connection(path)
            writer.write(b"fresh")
            await writer.drain()
            assert await reader.readexactly(5) == b"fresh"
            writer.close()
        finally:
            await fwd.aclose()


# ---------------------------------------------------------------------------
# Wildcard listeners
# ---------------------------------------------------------------------------


@pytest.mark.skipif(
    not socket.has_dualstack_ipv6(), reason="host has no dual-stack IPv6"
)
@pytest.mark.asyncio
async def test_ipv6_wildcard_accepts_ipv4_clients(echo_server):
    fwd = Forwarder(
        parse_mapping(f"[::]:0->127.0.0.1:{echo_server.port}"), connect_timeout=2.0
    )
    await fwd.bind()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", fwd.port)
        writer.write(b"over ipv4")
        await writer.drain()
        assert await reader.readexactly(9) == b"over ipv4"
        writer.close()
    finally:
        await fwd.aclose()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


UNBOUND_MAPPING = Mapping(TcpAddress("127.0.0.1", 0), TcpAddress("127.0.0.1", 1))


def test_zero_settings_are_not_replaced_by_defaults():
    fwd = Forwarder(UNBOUND_MAPPING, connect_timeout=0, bind_backoff=0)
    assert fwd.connect_timeout == 0
    assert fwd.bind_backoff == 0


def test_unset_settings_come_from_config(monkeypatch):
    monkeypatch.setattr(config, "CONNECT_TIMEOUT", 7.5)
    fwd = Forwarder(UNBOUND_MAPPING)
    assert fwd.connect_timeout == 7.5
