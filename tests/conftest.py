"""Shared helpers: loopback servers and stream fakes."""

from __future__ import annotations

import asyncio
import contextlib
import socket
import time
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest

from burrow.core.config import BurrowConfig, PoolConfig, TimeoutConfig

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class BufferSink:
    """Collects written bytes; optionally fails after a number of writes."""

    def __init__(self, fail_after: int | None = None) -> None:
        self.data = bytearray()
        self.writes = 0
        self.fail_after = fail_after

    def write(self, data: bytes) -> None:
        if self.fail_after is not None and self.writes >= self.fail_after:
            raise ConnectionResetError("sink closed")
        self.writes += 1
        self.data.extend(data)

    async def drain(self) -> None:
        return None


def reader_for(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class LoopbackServer:
    """asyncio server on 127.0.0.1 that counts accepted connections."""

    def __init__(self, handler: Handler) -> None:
        self._handler = handler
        self._server: asyncio.Server | None = None
        self.accepted = 0
        self.port = 0
        self._writers: list[asyncio.StreamWriter] = []

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.accepted += 1
        self._writers.append(writer)
        try:
            await self._handler(reader, writer)
        except (ConnectionError, asyncio.CancelledError):
            pass
        finally:
            writer.close()

    async def start(self) -> LoopbackServer:
        self._server = await asyncio.start_server(self._on_connect, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    def drop(self, index: int) -> None:
        """Close the server side of the index-th accepted connection."""
        self._writers[index].close()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in self._writers:
            writer.close()
        with contextlib.suppress(Exception):
            await asyncio.wait_for(self._server.wait_closed(), 2.0)


@contextlib.asynccontextmanager
async def loopback_server(handler: Handler) -> AsyncIterator[LoopbackServer]:
    server = await LoopbackServer(handler).start()
    try:
        yield server
    finally:
        await server.stop()


async def hold_open(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Accept and stay silent until the peer goes away."""
    await reader.read()


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fast_config() -> BurrowConfig:
    """Short timeouts so failure paths finish quickly."""
    return BurrowConfig(
        timeouts=TimeoutConfig(
            dial_timeout=2.0,
            local_dial_timeout=2.0,
            idle_timeout=2.0,
            handshake_timeout=2.0,
            health_check_interval=0.05,
        ),
        pool=PoolConfig(),
    )
