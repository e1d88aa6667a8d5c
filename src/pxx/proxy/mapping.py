"""Proxy mapping parser (`LISTEN->TARGET`)."""

from dataclasses import dataclass

from pxx.proxy.endpoint import Endpoint, InterfaceAddress, parse_endpoint
from pxx.proxy.exceptions import MalformedMapping, ParseError

SEPARATOR = "->"


@dataclass(frozen=True)
class Mapping:
    """Connections accepted on `listen` are forwarded to `target`."""

    listen: Endpoint
    target: Endpoint

    def __str__(self) -> str:
        return f"{self.listen}{SEPARATOR}{self.target}"


def parse_mapping(spec: str) -> Mapping:
    """
    Parse a `LISTEN->TARGET` proxy directive.

    Both sides may be of any transport kind supported on this platform.

    Raises:
        MalformedMapping: The separator is missing or repeated, or the target
            is an interface selector.
        ParseError: One side failed to parse; `side` names which.
    """
    if spec.count(SEPARATOR) != 1:
        raise MalformedMapping(
            f"Proxy directives must be of the form `<LISTEN>{SEPARATOR}<TARGET>`, "
            f"got `{spec}`",
            spec,
        )

    listen_text, target_text = spec.split(SEPARATOR)

    try:
        listen = parse_endpoint(listen_text)
    except ParseError as e:
        e.annotate("listen")
        raise

    try:
        target = parse_endpoint(target_text)
    except ParseError as e:
        e.annotate("target")
        raise

    if isinstance(target, InterfaceAddress):
        raise MalformedMapping(
            f"Interface selector `{target}` can only be used to listen", spec
        ).annotate("target")

    return Mapping(listen, target)
