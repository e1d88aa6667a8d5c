"""Proxy and supervisor exception classes."""


class ProxyError(Exception):
    """Base exception for pxx."""

    pass


# =============================================================================
# Parse Errors (fatal at startup)
# =============================================================================


class ParseError(ProxyError):
    """A mapping or endpoint string could not be parsed."""

    def __init__(self, message: str, text: str = ""):
        self.message = message
        self.text = text
        self.side: str | None = None
        super().__init__(message)

    def annotate(self, side: str) -> "ParseError":
        """Record which side of a mapping failed."""
        self.side = side
        return self

    def __str__(self) -> str:
        if self.side:
            return f"Invalid {self.side} endpoint: {self.message}"
        return self.message


class MalformedEndpoint(ParseError):
    """Endpoint text does not match any known form."""

    pass


class UnknownScheme(ParseError):
    """Endpoint uses a `scheme://` that is not recognised."""

    def __init__(self, scheme: str, text: str = ""):
        self.scheme = scheme
        super().__init__(f"Unrecognised scheme `{scheme}`", text)


class UnsupportedTransport(ParseError):
    """Transport kind is not available on this platform."""

    pass


class MalformedMapping(ParseError):
    """Mapping is not of the form `LISTEN->TARGET`."""

    pass


# =============================================================================
# Runtime Errors
# =============================================================================


class ResolutionError(ProxyError):
    """An endpoint could not be turned into a concrete address."""

    pass


class InterfaceNotFound(ResolutionError):
    """No network interface matches an interface selector."""

    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"No network interface found for `{selector}`")


class BindFailed(ProxyError):
    """A listener could not be opened."""

    def __init__(self, endpoint, reason: str, attempts: int = 1):
        self.endpoint = endpoint
        self.reason = reason
        self.attempts = attempts
        suffix = f" after {attempts} attempts" if attempts > 1 else ""
        super().__init__(f"Failed to listen on {endpoint}{suffix}: {reason}")


class DialFailed(ProxyError):
    """A target endpoint could not be connected to."""

    def __init__(self, endpoint, reason: str):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Failed to connect to {endpoint}: {reason}")
