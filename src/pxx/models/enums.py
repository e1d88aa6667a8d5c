"""
Enumeration types for pxx.

This module defines the enumeration types shared across the proxy engine,
the process runner and the supervisor.
"""

from enum import Enum


# =============================================================================
# Proxy Enums
# =============================================================================


class TransportKind(str, Enum):
    """
    Transport family of an endpoint.

    - TCP: host/port socket, DNS names resolved per dial
    - UNIX: Unix domain socket path
    - PIPE: Windows named pipe
    - INTERFACE: host-discovered interface address, resolved at bind time
    """

    TCP = "tcp"
    UNIX = "unix"
    PIPE = "pipe"
    INTERFACE = "interface"


# =============================================================================
# Command / Run Enums
# =============================================================================


class CommandMode(str, Enum):
    """
    How a command's completion relates to the lifetime of the proxies.

    - PARALLEL: proxies stay up until every command exited
    - REPLACE: the single command's exit ends the run
    """

    PARALLEL = "parallel"
    REPLACE = "replace"


class SupervisorState(str, Enum):
    """
    Supervisor lifecycle state.

    State transitions:
        STARTING -> RUNNING (all listeners bound, commands spawned)
        STARTING -> DONE (startup failure)
        RUNNING -> DRAINING (termination condition or interrupt)
        DRAINING -> DONE
    """

    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"


# =============================================================================
# Configuration Enums
# =============================================================================


class LogLevel(str, Enum):
    """
    Logging verbosity levels.

    Levels (from most to least verbose):
        - FULL: Complete trace with detailed stack information
        - DEBUG: Debug messages and above
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
