"""Tagged tunnel events delivered over a single channel."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class UrlReady:
    """The broker assigned a public URL."""

    url: str


@dataclass(frozen=True)
class ErrorEvent:
    """A tunnel error. Fatal errors are also raised from open() and url()."""

    error: BaseException

    @property
    def fatal(self) -> bool:
        return bool(getattr(self.error, "fatal", False))


@dataclass(frozen=True)
class IncomingRequest:
    """Informational: a request line seen on a broker connection.

    url is the public URL of the request when the tunnel URL is known,
    otherwise the raw request target.
    """

    method: str
    path: str
    url: str = ""


@dataclass(frozen=True)
class Closed:
    """The session closed. Always the last event on a stream."""


TunnelEvent = UrlReady | ErrorEvent | IncomingRequest | Closed


class EventStream:
    """Single-consumer event channel.

    Error and request events are bounded: once a kind has too many pending
    events, new ones of that kind are dropped so publishers never wait.
    UrlReady and Closed are always delivered. Nothing is accepted after
    Closed.
    """

    def __init__(self, max_pending_errors: int = 10, max_pending_requests: int = 100) -> None:
        self._queue: asyncio.Queue[TunnelEvent] = asyncio.Queue()
        self._limits: dict[type, int] = {
            ErrorEvent: max_pending_errors,
            IncomingRequest: max_pending_requests,
        }
        self._pending: dict[type, int] = {ErrorEvent: 0, IncomingRequest: 0}
        self._dropped = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        """Number of events discarded because their kind was saturated."""
        return self._dropped

    def publish(self, event: TunnelEvent) -> bool:
        """Queue an event without blocking. Returns False if it was dropped."""
        if self._closed:
            return False

        kind = type(event)
        limit = self._limits.get(kind)
        if limit is not None:
            if self._pending[kind] >= limit:
                self._dropped += 1
                logger.debug("Event dropped", kind=kind.__name__, dropped=self._dropped)
                return False
            self._pending[kind] += 1

        if isinstance(event, Closed):
            self._closed = True
        self._queue.put_nowait(event)
        return True

    def publish_error(self, error: BaseException) -> bool:
        return self.publish(ErrorEvent(error))

    async def get(self) -> TunnelEvent:
        """Wait for the next event."""
        event = await self._queue.get()
        self._consumed(event)
        return event

    def get_nowait(self) -> TunnelEvent:
        """Return the next event or raise asyncio.QueueEmpty."""
        event = self._queue.get_nowait()
        self._consumed(event)
        return event

    def _consumed(self, event: TunnelEvent) -> None:
        kind = type(event)
        if kind in self._pending:
            self._pending[kind] -= 1

    def pending(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[TunnelEvent]:
        while True:
            event = await self.get()
            yield event
            if isinstance(event, Closed):
                return
