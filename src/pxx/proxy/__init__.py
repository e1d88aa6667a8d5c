"""
Proxy forwarding engine.

Endpoint parsing and resolution, mapping parsing, and the forwarder that
relays connections between any two supported transports.
"""

from pxx.proxy.endpoint import (
    Endpoint,
    InterfaceAddress,
    NamedPipe,
    TcpAddress,
    UnixPath,
    parse_endpoint,
    resolve,
)
from pxx.proxy.forwarder import Forwarder
from pxx.proxy.mapping import Mapping, parse_mapping

__all__ = [
    "Endpoint",
    "InterfaceAddress",
    "NamedPipe",
    "TcpAddress",
    "UnixPath",
    "parse_endpoint",
    "resolve",
    "Forwarder",
    "Mapping",
    "parse_mapping",
]
