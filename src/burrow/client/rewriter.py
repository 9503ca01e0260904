"""Host header rewriting for the first request on a broker connection."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from burrow.core.exceptions import MalformedStreamError, ProxyIOError

CRLF = b"\r\n"
HOST_PREFIX = b"host:"
DEFAULT_CHUNK_SIZE = 64 * 1024


class ByteSink(Protocol):
    """The writing half of a stream (asyncio.StreamWriter fits)."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


@dataclass(frozen=True)
class RequestInfo:
    """Method, path and raw request target parsed from an HTTP request line."""

    method: str
    path: str
    url: str = ""

    @classmethod
    def parse(cls, line: bytes) -> RequestInfo | None:
        """Parse `METHOD PATH VERSION`; anything else yields None."""
        parts = line.decode("latin-1").split()
        if len(parts) < 3:
            return None
        return cls(method=parts[0], path=parts[1], url=parts[1])


async def _read(awaitable: Awaitable[bytes], idle_timeout: float | None) -> bytes:
    try:
        if idle_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, idle_timeout)
    except TimeoutError as e:
        raise ProxyIOError(f"No data received for {idle_timeout:g}s") from e
    except ValueError as e:
        # StreamReader.readline raises ValueError when a line exceeds its limit
        raise ProxyIOError(f"Header line too long: {e}") from e
    except OSError as e:
        raise ProxyIOError(f"Read failed: {e}") from e


async def _write(writer: ByteSink, data: bytes) -> None:
    try:
        writer.write(data)
        await writer.drain()
    except OSError as e:
        raise ProxyIOError(f"Write failed: {e}") from e


def _strip_eol(line: bytes) -> bytes:
    if line.endswith(b"\n"):
        line = line[:-1]
        if line.endswith(b"\r"):
            line = line[:-1]
    return line


async def copy_stream(
    reader: asyncio.StreamReader,
    writer: ByteSink,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    idle_timeout: float | None = None,
    on_chunk: Callable[[int], None] | None = None,
) -> int:
    """Copy bytes until end of stream. Returns the number of bytes copied.

    Raises ProxyIOError on any read or write failure, including a read that
    stays idle longer than idle_timeout.
    """
    total = 0
    while True:
        data = await _read(reader.read(chunk_size), idle_timeout)
        if not data:
            return total
        await _write(writer, data)
        total += len(data)
        if on_chunk is not None:
            on_chunk(len(data))


class HostHeaderRewriter:
    """Rewrites the Host header of the request at the head of a stream.

    The request line and every other header line pass through unchanged
    (re-terminated with CRLF); everything after the blank line that ends
    the headers is copied verbatim, so bodies are binary-safe.

    Example:
        rewriter = HostHeaderRewriter("localhost:8080")
        await rewriter.transform(broker_reader, local_writer)
    """

    def __init__(
        self,
        host: str,
        *,
        idle_timeout: float | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.host = host
        self.idle_timeout = idle_timeout
        self.chunk_size = chunk_size
        self.bytes_written = 0
        self._host_line = b"Host: " + host.encode("latin-1") + CRLF

    async def _emit(self, writer: ByteSink, data: bytes) -> None:
        await _write(writer, data)
        self.bytes_written += len(data)

    async def rewrite_head(self, reader: asyncio.StreamReader, writer: ByteSink) -> RequestInfo | None:
        """Copy the request line and headers, replacing any Host header.

        Returns the parsed request line, or None if it does not look like
        `METHOD PATH VERSION`.

        Raises:
            MalformedStreamError: The stream ended before any line was read.
            ProxyIOError: A read or write failed.
        """
        raw = await _read(reader.readline(), self.idle_timeout)
        if not raw:
            raise MalformedStreamError()

        request_line = _strip_eol(raw)
        await self._emit(writer, request_line + CRLF)

        while True:
            raw = await _read(reader.readline(), self.idle_timeout)
            if not raw:
                break

            line = _strip_eol(raw)
            if not line:
                await self._emit(writer, CRLF)
                break

            if line.lower().startswith(HOST_PREFIX):
                await self._emit(writer, self._host_line)
            else:
                await self._emit(writer, line + CRLF)

        return RequestInfo.parse(request_line)

    async def transform(
        self,
        reader: asyncio.StreamReader,
        writer: ByteSink,
        on_request: Callable[[RequestInfo], None] | None = None,
    ) -> int:
        """Rewrite the head, then copy the rest of the stream verbatim.

        on_request is called with the parsed request line as soon as the
        headers have been forwarded. Returns the total bytes written.
        """
        info = await self.rewrite_head(reader, writer)
        if info is not None and on_request is not None:
            on_request(info)

        self.bytes_written += await copy_stream(
            reader,
            writer,
            chunk_size=self.chunk_size,
            idle_timeout=self.idle_timeout,
        )
        return self.bytes_written
