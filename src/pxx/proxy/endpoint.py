"""
Endpoint model and parser.

An endpoint is one side of a proxy mapping. It is a closed set of immutable
variants, one per transport kind:

    tcp://HOST:PORT or HOST:PORT     -> TcpAddress
    unix://PATH                      -> UnixPath      (not on Windows)
    pipe://NAME or \\\\.\\pipe\\NAME -> NamedPipe     (Windows only)
    tailscale:PORT                   -> InterfaceAddress

`str()` of an endpoint renders a form that parses back to an equal endpoint.
"""

from dataclasses import dataclass
from typing import ClassVar

from pxx.config import IS_WINDOWS
from pxx.models.enums import TransportKind
from pxx.proxy.exceptions import MalformedEndpoint, UnknownScheme, UnsupportedTransport
from pxx.proxy.interface import find_interface_address, is_interface_selector

PIPE_PREFIX = "\\\\.\\pipe\\"

UNIX_SUPPORTED = not IS_WINDOWS
PIPE_SUPPORTED = IS_WINDOWS


# =============================================================================
# Endpoint Variants
# =============================================================================


@dataclass(frozen=True)
class TcpAddress:
    """TCP host and port. The host may be a wildcard, a literal IP or a DNS name."""

    host: str
    port: int

    kind: ClassVar[TransportKind] = TransportKind.TCP

    @property
    def is_wildcard(self) -> bool:
        return self.host in ("0.0.0.0", "::")

    def __str__(self) -> str:
        if ":" in self.host:
            return f"tcp://[{self.host}]:{self.port}"
        return f"tcp://{self.host}:{self.port}"


@dataclass(frozen=True)
class UnixPath:
    """Unix domain socket path."""

    path: str

    kind: ClassVar[TransportKind] = TransportKind.UNIX

    def __str__(self) -> str:
        return f"unix://{self.path}"


@dataclass(frozen=True)
class NamedPipe:
    """Windows named pipe, always stored with the `\\\\.\\pipe\\` prefix."""

    name: str

    kind: ClassVar[TransportKind] = TransportKind.PIPE

    def __str__(self) -> str:
        return f"pipe://{self.name}"


@dataclass(frozen=True)
class InterfaceAddress:
    """Port on a host interface picked by selector, resolved at bind time."""

    selector: str
    port: int

    kind: ClassVar[TransportKind] = TransportKind.INTERFACE

    def __str__(self) -> str:
        return f"{self.selector}:{self.port}"


Endpoint = TcpAddress | UnixPath | NamedPipe | InterfaceAddress


# =============================================================================
# Parsing
# =============================================================================


def parse_endpoint(text: str) -> Endpoint:
    """
    Parse an endpoint string.

    Raises:
        MalformedEndpoint: Text does not match any endpoint form.
        UnknownScheme: `scheme://` prefix is not recognised.
        UnsupportedTransport: Transport is not available on this platform.
    """
    text = text.strip()
    if not text:
        raise MalformedEndpoint("Endpoint is empty", text)

    scheme, sep, rest = text.partition("://")
    if sep:
        scheme = scheme.lower()
        if scheme == "tcp":
            return _parse_tcp(rest, text)
        if scheme == "unix":
            return _parse_unix(rest, text)
        if scheme == "pipe":
            return _parse_pipe(rest, text)
        if is_interface_selector(scheme):
            return _parse_interface(scheme, rest, text)
        raise UnknownScheme(scheme, text)

    if text.startswith(PIPE_PREFIX):
        return _parse_pipe(text, text)

    head, sep, tail = text.partition(":")
    if sep and is_interface_selector(head):
        return _parse_interface(head.lower(), tail, text)

    if IS_WINDOWS and not sep:
        # A bare name is a pipe name on Windows
        return _parse_pipe(text, text)

    return _parse_tcp(text, text)


def _parse_port(port_text: str, text: str) -> int:
    if not (port_text.isascii() and port_text.isdigit()):
        raise MalformedEndpoint(f"Invalid port `{port_text}` in `{text}`", text)
    port = int(port_text)
    if port > 65535:
        raise MalformedEndpoint(f"Port {port} out of range in `{text}`", text)
    return port


def _parse_tcp(address: str, text: str) -> TcpAddress:
    if address.startswith("["):
        host, bracket, port_part = address[1:].partition("]")
        if not bracket or not port_part.startswith(":"):
            raise MalformedEndpoint(
                f"Invalid address `{address}`: expected `[HOST]:PORT`", text
            )
        port_text = port_part[1:]
    else:
        host, sep, port_text = address.rpartition(":")
        if not sep:
            raise MalformedEndpoint(
                f"Invalid address `{address}`: expected `HOST:PORT`", text
            )
        if ":" in host:
            raise MalformedEndpoint(
                f"Invalid address `{address}`: IPv6 hosts must be bracketed", text
            )

    if not host:
        raise MalformedEndpoint(f"Invalid address `{address}`: missing host", text)

    return TcpAddress(host, _parse_port(port_text, text))


def _parse_unix(path: str, text: str) -> UnixPath:
    if not UNIX_SUPPORTED:
        raise UnsupportedTransport("Unix sockets are not supported on Windows", text)
    if not path:
        raise MalformedEndpoint("Unix socket path is empty", text)
    return UnixPath(path)


def _parse_pipe(name: str, text: str) -> NamedPipe:
    if not PIPE_SUPPORTED:
        raise UnsupportedTransport("Named pipes are only supported on Windows", text)
    if name.startswith(PIPE_PREFIX):
        name = name[len(PIPE_PREFIX) :]
    if not name:
        raise MalformedEndpoint("Pipe name is empty", text)
    return NamedPipe(PIPE_PREFIX + name)


def _parse_interface(selector: str, port_text: str, text: str) -> InterfaceAddress:
    return InterfaceAddress(selector, _parse_port(port_text, text))


# =============================================================================
# Resolution
# =============================================================================


def resolve(endpoint: Endpoint) -> Endpoint:
    """
    Turn an endpoint into one that can be bound or dialed.

    Concrete endpoints are returned unchanged. Interface selectors are looked
    up against the host's current interfaces.

    Raises:
        InterfaceNotFound: The selected interface is not up.
    """
    if isinstance(endpoint, InterfaceAddress):
        return TcpAddress(find_interface_address(endpoint.selector), endpoint.port)
    return endpoint
