"""Pool of broker data connections with periodic health checks."""

from __future__ import annotations

import asyncio
import contextlib
import urllib.parse
from collections.abc import Coroutine
from typing import Any

import structlog

from burrow.client.connection import PooledConnection
from burrow.client.events import EventStream
from burrow.client.registration import TunnelDescriptor
from burrow.core.config import BurrowConfig, TunnelOptions
from burrow.core.exceptions import InvalidEndpointError

logger = structlog.get_logger()


def resolve_broker_endpoint(descriptor: TunnelDescriptor) -> tuple[str, int]:
    """Host of the public URL and the assigned data port.

    Raises:
        InvalidEndpointError: If the URL has no host.
    """
    try:
        host = urllib.parse.urlsplit(descriptor.url).hostname
    except ValueError:
        host = None
    if not host:
        raise InvalidEndpointError(descriptor.url)
    return host, descriptor.port


class ConnectionPool:
    """Keeps target_size broker connections open.

    Every slot is dialed concurrently at start(). A background task sweeps
    the slots every health_check_interval seconds and re-dials the inactive
    ones. The sweep is a flat interval with no backoff and no failure cap;
    repeated dial failures only produce error events.
    """

    def __init__(
        self,
        descriptor: TunnelDescriptor,
        options: TunnelOptions,
        events: EventStream,
        config: BurrowConfig | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.options = options
        self.events = events
        self.config = config or BurrowConfig()

        self._slots: list[PooledConnection] = []
        self._lock = asyncio.Lock()
        self._closed = False
        self._host: str | None = None
        self._port: int | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._dial_tasks: set[asyncio.Task[None]] = set()
        self._sweeps = 0

    @property
    def target_size(self) -> int:
        """Advertised max_conn_count, or the configured default when not positive."""
        if self.descriptor.max_conn_count > 0:
            return self.descriptor.max_conn_count
        return self.config.pool.default_max_connections

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def slots(self) -> list[PooledConnection]:
        return list(self._slots)

    @property
    def active_count(self) -> int:
        return sum(1 for slot in self._slots if slot.is_active())

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "target_size": self.target_size,
            "slots": len(self._slots),
            "active": self.active_count,
            "sweeps": self._sweeps,
            "closed": self._closed,
        }

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._dial_tasks.add(task)
        task.add_done_callback(self._dial_tasks.discard)

    async def start(self) -> None:
        """Create the slots, dial them, and start the health check.

        Raises:
            InvalidEndpointError: If the broker host cannot be resolved.
            RuntimeError: If the pool was already started or closed.
        """
        host, port = resolve_broker_endpoint(self.descriptor)

        async with self._lock:
            if self._closed:
                raise RuntimeError("Pool closed")
            if self._slots:
                raise RuntimeError("Pool already started")

            self._host, self._port = host, port
            for index in range(self.target_size):
                slot = PooledConnection(
                    index, self.options, self.events, self.config, public_url=self.descriptor.url
                )
                self._slots.append(slot)
                self._spawn(slot.connect(host, port))

            self._health_task = asyncio.create_task(self._health_loop())

        logger.info(
            "Connection pool started",
            broker=f"{host}:{port}",
            size=self.target_size,
        )

    async def _health_loop(self) -> None:
        interval = self.config.timeouts.health_check_interval
        while not self._closed:
            await asyncio.sleep(interval)
            await self.check_connections()

    async def check_connections(self) -> int:
        """Re-dial every inactive slot. Returns the number of dials launched."""
        async with self._lock:
            if self._closed or self._host is None or self._port is None:
                return 0

            self._sweeps += 1
            relaunched = 0
            for slot in self._slots:
                if not slot.is_active():
                    self._spawn(slot.connect(self._host, self._port))
                    relaunched += 1

        if relaunched:
            logger.debug("Health check re-dialing slots", count=relaunched, active=self.active_count)
        return relaunched

    async def close(self) -> None:
        """Close every slot and stop the health check. Idempotent."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            slots = list(self._slots)

        health_task, self._health_task = self._health_task, None
        if health_task is not None and health_task is not asyncio.current_task():
            health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await health_task

        for task in list(self._dial_tasks):
            task.cancel()

        await asyncio.gather(*(slot.close() for slot in slots), return_exceptions=True)

        if self._dial_tasks:
            await asyncio.gather(*self._dial_tasks, return_exceptions=True)

        logger.debug("Connection pool closed", slots=len(slots))
