"""Tunnel client: session, connection pool, and proxying."""

from burrow.client.connection import PooledConnection, SlotState
from burrow.client.events import (
    Closed,
    ErrorEvent,
    EventStream,
    IncomingRequest,
    TunnelEvent,
    UrlReady,
)
from burrow.client.pool import ConnectionPool, resolve_broker_endpoint
from burrow.client.registration import TunnelDescriptor, build_registration_url, request_tunnel
from burrow.client.rewriter import HostHeaderRewriter, RequestInfo, copy_stream
from burrow.client.tunnel import SessionState, Tunnel, TunnelClosedError

__all__ = [
    # Session
    "Tunnel",
    "SessionState",
    "TunnelClosedError",
    # Events
    "Closed",
    "ErrorEvent",
    "EventStream",
    "IncomingRequest",
    "TunnelEvent",
    "UrlReady",
    # Pool
    "ConnectionPool",
    "PooledConnection",
    "SlotState",
    "resolve_broker_endpoint",
    # Registration
    "TunnelDescriptor",
    "build_registration_url",
    "request_tunnel",
    # Rewriting
    "HostHeaderRewriter",
    "RequestInfo",
    "copy_stream",
]
