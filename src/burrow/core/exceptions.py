"""Exception hierarchy for tunnel sessions.

Only RegistrationFailedError and InvalidEndpointError stop a session. The
others describe per-connection failures: they are published as error events
and the affected slot is re-dialed by the next health sweep.
"""

from __future__ import annotations


class BurrowError(Exception):
    """Base class for all tunnel errors."""

    code = "BURROW_ERROR"
    fatal = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class RegistrationFailedError(BurrowError):
    """The broker handshake failed or returned an unusable response."""

    code = "REGISTRATION_FAILED"
    fatal = True

    def __init__(self, broker: str, reason: str) -> None:
        super().__init__(f"Failed to register tunnel with {broker}: {reason}")
        self.broker = broker
        self.reason = reason


class InvalidEndpointError(BurrowError):
    """The tunnel URL returned by the broker has no usable host."""

    code = "INVALID_ENDPOINT"
    fatal = True

    def __init__(self, url: str) -> None:
        super().__init__(f"Could not determine broker host from URL: {url!r}")
        self.url = url


class DialFailedError(BurrowError):
    """Dialing the broker or the local server failed."""

    code = "DIAL_FAILED"

    def __init__(self, address: str, reason: str, *, local: bool = False) -> None:
        side = "local server" if local else "broker"
        super().__init__(f"Failed to connect to {side} at {address}: {reason}")
        self.address = address
        self.reason = reason
        self.local = local


class ProxyIOError(BurrowError):
    """A read or write failed in the middle of a proxied exchange."""

    code = "PROXY_IO_ERROR"


class MalformedStreamError(ProxyIOError):
    """The broker stream ended before a request line was read."""

    code = "MALFORMED_STREAM"

    def __init__(self, message: str = "Stream ended before a request line was read") -> None:
        super().__init__(message)


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a short, human-friendly message."""
    if isinstance(error, BurrowError):
        return error.message

    if isinstance(error, TimeoutError):
        return "Operation timed out"
    if isinstance(error, ConnectionRefusedError):
        return "Connection refused"
    if isinstance(error, OSError) and error.strerror:
        return error.strerror

    text = str(error)
    return text if text else type(error).__name__
