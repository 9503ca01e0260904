"""Burrow - expose a local server through a localtunnel-compatible broker."""

from burrow.api import create_tunnel, open_tunnel, open_url
from burrow.client import (
    Closed,
    ConnectionPool,
    ErrorEvent,
    HostHeaderRewriter,
    IncomingRequest,
    SessionState,
    Tunnel,
    TunnelClosedError,
    TunnelDescriptor,
    UrlReady,
)
from burrow.core import (
    BurrowConfig,
    BurrowError,
    DialFailedError,
    InvalidEndpointError,
    MalformedStreamError,
    ProxyIOError,
    RegistrationFailedError,
    TunnelOptions,
)

__version__ = "1.0.0"

__all__ = [
    "__version__",
    "create_tunnel",
    "open_tunnel",
    "open_url",
    "Tunnel",
    "TunnelOptions",
    "BurrowConfig",
    "SessionState",
    "TunnelDescriptor",
    "ConnectionPool",
    "HostHeaderRewriter",
    "UrlReady",
    "ErrorEvent",
    "IncomingRequest",
    "Closed",
    "BurrowError",
    "RegistrationFailedError",
    "InvalidEndpointError",
    "DialFailedError",
    "ProxyIOError",
    "MalformedStreamError",
    "TunnelClosedError",
]
