"""
pxx configuration.

A global config instance that can be modified at runtime. The CLI writes its
options into it before starting the supervisor.

Usage:
    from pxx.config import config

    config.CONNECT_TIMEOUT = 3.0
    config.LOG_LEVEL = LogLevel.DEBUG
"""

import os
import sys
from dataclasses import dataclass, field

from pxx.models.enums import LogLevel

IS_WINDOWS = sys.platform == "win32"


def default_shell() -> str:
    """Shell used to run non-raw commands."""
    if IS_WINDOWS:
        return "PowerShell.exe"
    return os.environ.get("SHELL") or "/bin/sh"


def default_shell_args() -> list[str]:
    """Arguments passed to the shell before the command text."""
    if IS_WINDOWS:
        return ["-Command"]
    return ["-c"]


@dataclass
class ProxyConfig:
    """Proxy and supervisor configuration."""

    # -------------------------------------------------------------------------
    # Forwarding
    # -------------------------------------------------------------------------

    CONNECT_TIMEOUT: float = 10.0  # Seconds allowed for dialing a target
    BUFFER_SIZE: int = 64 * 1024  # Bytes per relay chunk

    # -------------------------------------------------------------------------
    # Bind retry (interface not up yet)
    # -------------------------------------------------------------------------

    BIND_ATTEMPTS: int = 8
    BIND_BACKOFF: float = 0.1  # First retry delay, doubled each attempt
    BIND_BACKOFF_MAX: float = 5.0

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    SHELL: str = field(default_factory=default_shell)
    SHELL_ARGS: list[str] = field(default_factory=default_shell_args)
    BUFFERED_OUTPUT: bool = False
    SHUTDOWN_GRACE: float = 5.0  # Seconds to wait for processes and forwarders

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    LOG_LEVEL: LogLevel = LogLevel.WARNING


# Global config instance
config = ProxyConfig()
