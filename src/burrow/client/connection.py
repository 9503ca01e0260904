"""A single pooled broker connection and its proxy loop."""

from __future__ import annotations

import asyncio
import contextlib
import ssl
from enum import Enum
from typing import Any

import structlog

from burrow.client.events import EventStream, IncomingRequest
from burrow.client.rewriter import HostHeaderRewriter, RequestInfo, copy_stream
from burrow.core.config import BurrowConfig, TunnelOptions
from burrow.core.exceptions import DialFailedError, ProxyIOError, format_error_for_user
from burrow.observability.metrics import (
    ACTIVE_SLOTS,
    BROKER_DIALS,
    BYTES_PROXIED,
    EXCHANGES,
    LOCAL_DIALS,
)

logger = structlog.get_logger()


class SlotState(Enum):
    """Pooled connection state."""

    IDLE = "idle"
    DIALING = "dialing"
    ACTIVE = "active"
    CLOSED = "closed"


def create_local_ssl_context() -> ssl.SSLContext:
    """TLS context for the local server. Certificates are not verified."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


async def _close_writer(writer: asyncio.StreamWriter | None) -> None:
    if writer is None:
        return
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()


class PooledConnection:
    """One broker data connection paired with one local server connection.

    A slot starts idle. connect() dials the broker and, on success, runs a
    proxy loop in its own task: dial the local server, pipe broker->local
    through the Host rewriter and local->broker verbatim, and return to idle
    as soon as either direction ends. One broker connection carries exactly
    one exchange; the pool's health sweep dials a fresh one afterwards.
    """

    def __init__(
        self,
        index: int,
        options: TunnelOptions,
        events: EventStream,
        config: BurrowConfig | None = None,
        public_url: str | None = None,
    ) -> None:
        self.index = index
        self.options = options
        self.events = events
        self.config = config or BurrowConfig()
        self.public_url = public_url

        self._state = SlotState.IDLE
        self._lock = asyncio.Lock()
        self._broker_writer: asyncio.StreamWriter | None = None
        self._local_writer: asyncio.StreamWriter | None = None
        self._proxy_task: asyncio.Task[None] | None = None

        # Metrics
        self._dials = 0
        self._dial_failures = 0
        self._exchanges = 0
        self._bytes_in = 0
        self._bytes_out = 0

    @property
    def state(self) -> SlotState:
        return self._state

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "state": self._state.value,
            "dials": self._dials,
            "dial_failures": self._dial_failures,
            "exchanges": self._exchanges,
            "bytes_in": self._bytes_in,
            "bytes_out": self._bytes_out,
        }

    def is_active(self) -> bool:
        """True while the slot holds a live broker connection."""
        return self._state == SlotState.ACTIVE

    async def connect(self, host: str, port: int) -> None:
        """Dial the broker and start proxying. No-op unless the slot is idle.

        A dial failure is published as a DialFailedError event and leaves the
        slot idle for the next health sweep.
        """
        async with self._lock:
            if self._state != SlotState.IDLE:
                return
            self._state = SlotState.DIALING

        address = f"{host}:{port}"
        self._dials += 1
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    host,
                    port,
                    ssl=ssl.create_default_context() if self.options.broker_tls else None,
                ),
                timeout=self.config.timeouts.dial_timeout,
            )
        except asyncio.CancelledError:
            async with self._lock:
                if self._state == SlotState.DIALING:
                    self._state = SlotState.IDLE
            raise
        except Exception as e:
            self._dial_failures += 1
            BROKER_DIALS.labels(outcome="failure").inc()
            async with self._lock:
                if self._state == SlotState.DIALING:
                    self._state = SlotState.IDLE
            logger.debug("Broker dial failed", slot=self.index, address=address, error=str(e))
            self.events.publish_error(DialFailedError(address, format_error_for_user(e)))
            return

        BROKER_DIALS.labels(outcome="success").inc()
        async with self._lock:
            if self._state != SlotState.DIALING:
                # Closed while dialing
                await _close_writer(writer)
                return
            self._broker_writer = writer
            self._state = SlotState.ACTIVE
            ACTIVE_SLOTS.inc()
            self._proxy_task = asyncio.create_task(self._proxy_loop(reader, writer))

        logger.debug("Broker connection established", slot=self.index, address=address)

    async def _open_local(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        context = create_local_ssl_context() if self.options.local_https else None
        return await asyncio.wait_for(
            asyncio.open_connection(self.options.local_host, self.options.local_port, ssl=context),
            timeout=self.config.timeouts.local_dial_timeout,
        )

    def _request_url(self, info: RequestInfo) -> str:
        if self.public_url and info.path.startswith("/"):
            return self.public_url.rstrip("/") + info.path
        return info.url

    def _on_request(self, info: RequestInfo) -> None:
        url = self._request_url(info)
        logger.info("Incoming request", slot=self.index, method=info.method, path=info.path, url=url)
        self.events.publish(IncomingRequest(method=info.method, path=info.path, url=url))

    def _count_in(self, n: int) -> None:
        self._bytes_in += n
        BYTES_PROXIED.labels(direction="inbound").inc(n)

    def _count_out(self, n: int) -> None:
        self._bytes_out += n
        BYTES_PROXIED.labels(direction="outbound").inc(n)

    async def _inbound(self, broker_reader: asyncio.StreamReader, local_writer: asyncio.StreamWriter) -> None:
        rewriter = HostHeaderRewriter(
            self.options.local_address,
            idle_timeout=self.config.timeouts.idle_timeout,
            chunk_size=self.config.pool.read_chunk_size,
        )
        try:
            await rewriter.transform(broker_reader, local_writer, on_request=self._on_request)
        finally:
            self._count_in(rewriter.bytes_written)

    async def _outbound(self, local_reader: asyncio.StreamReader, broker_writer: asyncio.StreamWriter) -> None:
        await copy_stream(
            local_reader,
            broker_writer,
            chunk_size=self.config.pool.read_chunk_size,
            on_chunk=self._count_out,
        )

    async def _proxy_loop(self, broker_reader: asyncio.StreamReader, broker_writer: asyncio.StreamWriter) -> None:
        local_writer: asyncio.StreamWriter | None = None
        try:
            try:
                local_reader, local_writer = await self._open_local()
            except Exception as e:
                LOCAL_DIALS.labels(outcome="failure").inc()
                logger.debug("Local dial failed", slot=self.index, address=self.options.local_address, error=str(e))
                self.events.publish_error(
                    DialFailedError(self.options.local_address, format_error_for_user(e), local=True)
                )
                return

            LOCAL_DIALS.labels(outcome="success").inc()
            async with self._lock:
                if self._broker_writer is not broker_writer:
                    # Closed while dialing the local server
                    return
                self._local_writer = local_writer

            await self._pipe(broker_reader, broker_writer, local_reader, local_writer)
        finally:
            await _close_writer(local_writer)
            await self._release(SlotState.IDLE, owner=broker_writer)

    async def _pipe(
        self,
        broker_reader: asyncio.StreamReader,
        broker_writer: asyncio.StreamWriter,
        local_reader: asyncio.StreamReader,
        local_writer: asyncio.StreamWriter,
    ) -> None:
        inbound = asyncio.create_task(self._inbound(broker_reader, local_writer))
        outbound = asyncio.create_task(self._outbound(local_reader, broker_writer))
        try:
            done, pending = await asyncio.wait(
                [inbound, outbound],
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (inbound, outbound):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError, Exception):
                        await task

        failed = False
        for task in done:
            error = task.exception()
            if error is None:
                continue
            failed = True
            if not isinstance(error, ProxyIOError):
                error = ProxyIOError(format_error_for_user(error))
            logger.debug("Proxy error", slot=self.index, error=str(error))
            self.events.publish_error(error)

        self._exchanges += 1
        EXCHANGES.labels(result="error" if failed else "ok").inc()

    async def _release(self, next_state: SlotState, owner: asyncio.StreamWriter | None = None) -> None:
        """Drop both streams and move to next_state (never reopens a closed slot).

        With an owner, only that broker connection is released: if the slot
        has since been closed or re-dialed, the owner is closed and the slot
        is left as it is.
        """
        async with self._lock:
            if owner is not None and owner is not self._broker_writer:
                writers = [owner]
            else:
                if self._state == SlotState.ACTIVE:
                    ACTIVE_SLOTS.dec()
                if self._state != SlotState.CLOSED:
                    self._state = next_state
                writers = [self._local_writer, self._broker_writer]
                self._broker_writer = None
                self._local_writer = None

        for writer in writers:
            await _close_writer(writer)

    async def close(self) -> None:
        """Close the slot for good. Idempotent.

        Both streams are closed right away so blocked copies unwind, then the
        proxy task is cancelled.
        """
        if self._state == SlotState.CLOSED:
            return

        await self._release(SlotState.CLOSED)

        task, self._proxy_task = self._proxy_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
