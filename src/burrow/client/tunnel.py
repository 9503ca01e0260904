"""Tunnel session: registration, connection pool, and event stream."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

from burrow.client.events import Closed, EventStream, UrlReady
from burrow.client.pool import ConnectionPool
from burrow.client.registration import TunnelDescriptor, request_tunnel
from burrow.core.config import BurrowConfig, TunnelOptions
from burrow.core.exceptions import BurrowError, RegistrationFailedError, format_error_for_user

logger = structlog.get_logger()


class SessionState(Enum):
    """Tunnel session state."""

    UNOPENED = "unopened"
    HANDSHAKING = "handshaking"
    POOLING = "pooling"
    CLOSED = "closed"


class TunnelClosedError(BurrowError):
    """The session was closed before a URL became available."""

    code = "TUNNEL_CLOSED"

    def __init__(self) -> None:
        super().__init__("Tunnel closed")


class Tunnel:
    """Handle for one reverse tunnel.

    Features:
    - Registration with a localtunnel-compatible broker
    - A pool of broker connections sized to the broker's advertised capacity
    - Host header rewriting toward the local server
    - A single event stream (UrlReady, ErrorEvent, IncomingRequest, Closed)
    - Idempotent close() that tears every connection down

    Example:
        async with Tunnel(TunnelOptions(local_port=8080)) as tunnel:
            print(await tunnel.url())
            async for event in tunnel.events():
                ...
    """

    def __init__(self, options: TunnelOptions, config: BurrowConfig | None = None) -> None:
        self.options = options
        self.config = config or BurrowConfig()

        self._state = SessionState.UNOPENED
        self._descriptor: TunnelDescriptor | None = None
        self._pool: ConnectionPool | None = None
        self._events = EventStream(
            max_pending_errors=self.config.pool.max_pending_errors,
            max_pending_requests=self.config.pool.max_pending_requests,
        )
        self._url_future: asyncio.Future[str] | None = None
        self._closed_event = asyncio.Event()
        self._close_lock = asyncio.Lock()

        # State change hooks
        self._state_hooks: list[Callable[[SessionState], None]] = []

        # Metrics
        self._opened_at: float | None = None

    @property
    def state(self) -> SessionState:
        """Get current session state."""
        return self._state

    @property
    def closed(self) -> bool:
        return self._state == SessionState.CLOSED

    @property
    def descriptor(self) -> TunnelDescriptor | None:
        """Broker metadata, once the handshake has completed."""
        return self._descriptor

    @property
    def pool(self) -> ConnectionPool | None:
        return self._pool

    @property
    def stats(self) -> dict[str, Any]:
        """Get session statistics."""
        slots = self._pool.slots if self._pool else []
        return {
            "state": self._state.value,
            "tunnel_id": self._descriptor.id if self._descriptor else None,
            "url": self._descriptor.url if self._descriptor else None,
            "uptime_seconds": round(time.monotonic() - self._opened_at, 3) if self._opened_at else 0.0,
            "pool": self._pool.stats if self._pool else None,
            "exchanges": sum(slot.stats["exchanges"] for slot in slots),
            "bytes_in": sum(slot.stats["bytes_in"] for slot in slots),
            "bytes_out": sum(slot.stats["bytes_out"] for slot in slots),
            "events_dropped": self._events.dropped,
        }

    def add_state_hook(self, hook: Callable[[SessionState], None]) -> None:
        """Add a hook to be called on state changes."""
        self._state_hooks.append(hook)

    def remove_state_hook(self, hook: Callable[[SessionState], None]) -> None:
        """Remove a state change hook."""
        if hook in self._state_hooks:
            self._state_hooks.remove(hook)

    def _set_state(self, state: SessionState) -> None:
        """Set state and notify hooks."""
        if self._state != state:
            old_state = self._state
            self._state = state
            logger.debug("State changed", old=old_state.value, new=state.value)
            for hook in self._state_hooks:
                try:
                    hook(state)
                except Exception as e:
                    logger.warning("State hook error", error=str(e))

    def _get_url_future(self) -> asyncio.Future[str]:
        if self._url_future is None:
            self._url_future = asyncio.get_running_loop().create_future()
        return self._url_future

    def _fail(self, error: BurrowError) -> None:
        """Publish a fatal error and wake url() waiters."""
        self._events.publish_error(error)
        future = self._get_url_future()
        if not future.done():
            future.set_exception(error)
            # Retrieved by url(); avoid "exception was never retrieved" when nobody asks
            future.exception()

    async def open(self) -> str:
        """Register with the broker and start the connection pool.

        Returns:
            Public URL for the tunnel

        Raises:
            RegistrationFailedError: If the handshake fails
            InvalidEndpointError: If the broker's URL has no usable host
            RuntimeError: If the session was already opened or closed
        """
        if self._state != SessionState.UNOPENED:
            raise RuntimeError(f"Tunnel cannot be opened from state {self._state.value!r}")

        self._get_url_future()
        self._set_state(SessionState.HANDSHAKING)

        try:
            descriptor = await request_tunnel(self.options, timeout=self.config.timeouts.handshake_timeout)
        except RegistrationFailedError as e:
            logger.error("Registration failed", error=e.message)
            self._fail(e)
            await self.close()
            raise
        except Exception as e:
            error = RegistrationFailedError(self.options.broker_host, format_error_for_user(e))
            logger.error("Registration failed", error=error.message, exc_type=type(e).__name__)
            self._fail(error)
            await self.close()
            raise error from e

        if self._state == SessionState.CLOSED:
            raise TunnelClosedError()

        self._descriptor = descriptor
        pool = ConnectionPool(descriptor, self.options, self._events, self.config)
        try:
            await pool.start()
        except BurrowError as e:
            logger.error("Connection pool failed to start", error=e.message)
            self._fail(e)
            await self.close()
            raise

        if self._state == SessionState.CLOSED:
            await pool.close()
            raise TunnelClosedError()

        self._pool = pool
        self._opened_at = time.monotonic()
        self._set_state(SessionState.POOLING)

        self._events.publish(UrlReady(descriptor.url))
        future = self._get_url_future()
        if not future.done():
            future.set_result(descriptor.url)

        logger.info(
            "Tunnel established",
            tunnel_id=descriptor.id,
            url=descriptor.url,
            local=self.options.local_address,
        )
        return descriptor.url

    async def url(self) -> str:
        """Wait for the public URL.

        Returns as soon as the URL is published, a fatal error is published,
        or the session is closed, whichever comes first.

        Raises:
            RegistrationFailedError: If the handshake failed
            InvalidEndpointError: If the broker's URL was unusable
            TunnelClosedError: If the session closed first
        """
        future = self._get_url_future()
        if future.done():
            return future.result()
        if self._closed_event.is_set():
            raise TunnelClosedError()

        closed_waiter = asyncio.create_task(self._closed_event.wait())
        try:
            await asyncio.wait(
                [future, closed_waiter],
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            closed_waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await closed_waiter

        if future.done():
            return future.result()
        raise TunnelClosedError()

    def events(self) -> EventStream:
        """The session's event stream. Iterate it until Closed."""
        return self._events

    async def close(self) -> None:
        """Close the tunnel and every pooled connection. Idempotent."""
        async with self._close_lock:
            if self._state == SessionState.CLOSED:
                return
            self._set_state(SessionState.CLOSED)
            self._closed_event.set()

            if self._pool is not None:
                await self._pool.close()

            self._events.publish(Closed())

        logger.info("Tunnel closed", stats=self.stats)
        self._state_hooks.clear()

    async def __aenter__(self) -> Tunnel:
        """Async context manager entry."""
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
