#!/usr/bin/env python3
"""
Smoke test for the pxx command line.

This script sets up:
1. A local TCP echo server (simulates the proxied service)
2. A pxx process proxying a free port to the echo server while a
   long-running command executes

Then performs tests to verify:
- Data flows correctly through the proxy
- Multiple concurrent connections work
- A dead target only fails the affected connection
- pxx shuts down promptly on SIGTERM

Usage:
    python scripts/smoke_proxy.py [--pxx PATH]
"""

import argparse
import asyncio
import os
import shutil
import signal
import socket
import subprocess
import sys
from pathlib import Path

# =============================================================================
# Configuration
# =============================================================================

ECHO_SERVER_PORT = 0
STARTUP_DELAY = 1.0

# Colors for output
GREEN = "\033[92m"
RED = "\033[91m"
CYAN = "\033[96m"
RESET = "\033[0m"


def log_info(msg: str) -> None:
    print(f"{CYAN}[INFO]{RESET} {msg}")


def log_ok(msg: str) -> None:
    print(f"{GREEN}[PASS]{RESET} {msg}")


def log_fail(msg: str) -> None:
    print(f"{RED}[FAIL]{RESET} {msg}")


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# =============================================================================
# Echo Server
# =============================================================================


class EchoServer:
    """Simple TCP echo server."""

    def __init__(self, port: int):
        self.port = port
        self.server = None

    async def start(self) -> None:
        self.server = await asyncio.start_server(
            self._handle_client, "127.0.0.1", self.port
        )
        self.port = self.server.sockets[0].getsockname()[1]
        log_info(f"Echo server listening on 127.0.0.1:{self.port}")

    async def stop(self) -> None:
        if self.server:
            self.server.close()
            await self.server.wait_closed()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            while data := await reader.read(65536):
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()


# =============================================================================
# Tests
# =============================================================================


async def echo_through(port: int, payload: bytes) -> bytes:
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection("127.0.0.1", port), timeout=2.0
    )
    writer.write(payload)
    await writer.drain()
    writer.write_eof()
    data = await asyncio.wait_for(reader.read(), timeout=5.0)
    writer.close()
    return data


def pxx_command(pxx_path: str | None) -> list[str]:
    if pxx_path:
        return [pxx_path]
    found = shutil.which("pxx")
    if found:
        return [found]
    return [sys.executable, "-m", "pxx"]


async def run_tests(base_command: list[str]) -> bool:
    """Run all tests."""
    echo_server = EchoServer(ECHO_SERVER_PORT)
    await echo_server.start()

    proxy_port = free_port()
    dead_port = free_port()
    dead_proxy_port = free_port()

    command = base_command + [
        "--proxy",
        f"127.0.0.1:{proxy_port}->127.0.0.1:{echo_server.port}",
        "--proxy",
        f"127.0.0.1:{dead_proxy_port}->127.0.0.1:{dead_port}",
        "--shell",
        sys.executable,
        "--shell-arg=-c",
        "--verbose",
        "import time; time.sleep(60)",
    ]
    log_info(f"Starting pxx: {' '.join(command)}")

    env = os.environ.copy()
    env.setdefault("PYTHONPATH", str(Path(__file__).parent.parent / "src"))
    pxx_process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
    )

    await asyncio.sleep(STARTUP_DELAY)

    if pxx_process.poll() is not None:
        stdout, stderr = pxx_process.communicate()
        log_fail(f"pxx exited prematurely with code {pxx_process.returncode}")
        log_info(f"stdout: {stdout.decode()}")
        log_info(f"stderr: {stderr.decode()}")
        await echo_server.stop()
        return False

    all_passed = True

    # Test 1: Basic echo through proxy
    log_info("=" * 50)
    log_info("Test 1: Basic TCP echo through proxy")
    log_info("=" * 50)

    try:
        payload = b"Hello, Proxy World!"
        data = await echo_through(proxy_port, payload)
        if data == payload:
            log_ok("Test 1: Data echoed correctly through proxy")
        else:
            log_fail(f"Test 1: Echo mismatch - got {data!r}, expected {payload!r}")
            all_passed = False
    except (OSError, asyncio.TimeoutError) as e:
        log_fail(f"Test 1: Error - {e}")
        all_passed = False

    # Test 2: Concurrent connections
    log_info("=" * 50)
    log_info("Test 2: Concurrent connections")
    log_info("=" * 50)

    try:
        payloads = [f"Connection {i} ".encode() * 1000 for i in range(10)]
        results = await asyncio.gather(
            *(echo_through(proxy_port, p) for p in payloads)
        )
        if results == payloads:
            log_ok("Test 2: All concurrent connections echoed correctly")
        else:
            log_fail("Test 2: Some connections returned the wrong data")
            all_passed = False
    except (OSError, asyncio.TimeoutError) as e:
        log_fail(f"Test 2: Error - {e}")
        all_passed = False

    # Test 3: Dead target
    log_info("=" * 50)
    log_info("Test 3: Dead target closes only that connection")
    log_info("=" * 50)

    try:
        data = await echo_through(dead_proxy_port, b"nobody home")
        if data == b"" and pxx_process.poll() is None:
            log_ok("Test 3: Connection closed and pxx kept running")
        else:
            log_fail(f"Test 3: Unexpected result {data!r}")
            all_passed = False
        data = await echo_through(proxy_port, b"still alive")
        if data != b"still alive":
            log_fail("Test 3: Healthy proxy stopped working")
            all_passed = False
    except (OSError, asyncio.TimeoutError) as e:
        log_fail(f"Test 3: Error - {e}")
        all_passed = False

    # Test 4: Shutdown on SIGTERM
    log_info("=" * 50)
    log_info("Test 4: Shutdown on SIGTERM")
    log_info("=" * 50)

    pxx_process.send_signal(signal.SIGTERM)
    try:
        code = pxx_process.wait(timeout=10)
        log_ok(f"Test 4: pxx exited with code {code}")
    except subprocess.TimeoutExpired:
        log_fail("Test 4: pxx did not exit after SIGTERM")
        pxx_process.kill()
        all_passed = False

    try:
        await echo_through(proxy_port, b"gone")
        log_fail("Test 4: Proxy still accepting after shutdown")
        all_passed = False
    except (OSError, asyncio.TimeoutError):
        log_ok("Test 4: Proxy listener is closed")

    await echo_server.stop()
    return all_passed


async def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test the pxx CLI")
    parser.add_argument("--pxx", help="Path to the pxx executable")
    args = parser.parse_args()

    if sys.platform == "win32":
        log_fail("This smoke test sends POSIX signals and does not run on Windows")
        return 1

    success = await run_tests(pxx_command(args.pxx))

    print()
    if success:
        log_ok("All tests passed!")
        return 0
    log_fail("Some tests failed!")
    return 1


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)
