"""Tests for a single pooled connection against loopback servers."""

from __future__ import annotations

import asyncio

import pytest
from conftest import hold_open, loopback_server, unused_port, wait_until

from burrow.client.connection import PooledConnection, SlotState, create_local_ssl_context
from burrow.client.events import ErrorEvent, EventStream, IncomingRequest
from burrow.core.config import BurrowConfig, PoolConfig, TimeoutConfig, TunnelOptions
from burrow.core.exceptions import DialFailedError, ProxyIOError

REQUEST = b"GET /hello HTTP/1.1\r\nHost: abc.broker.example\r\nAccept: */*\r\n\r\n"
RESPONSE = b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\nConnection: close\r\n\r\nok"
# IDNA rejects labels longer than 63 characters before any lookup happens
LONG_LABEL_HOST = "a" * 70 + ".example.com"


def drain_events(stream: EventStream) -> list:
    events = []
    while stream.pending():
        events.append(stream.get_nowait())
    return events


class TestPooledConnectionExchange:
    """One exchange proxied end to end."""

    @pytest.mark.asyncio
    async def test_proxies_request_and_response(self, fast_config: BurrowConfig) -> None:
        """The local server sees a rewritten Host; the broker receives the response."""
        local_received = asyncio.get_running_loop().create_future()
        broker_received = asyncio.get_running_loop().create_future()

        async def local_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            local_received.set_result(await reader.readuntil(b"\r\n\r\n"))
            writer.write(RESPONSE)
            await writer.drain()

        async def broker_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.write(REQUEST)
            await writer.drain()
            broker_received.set_result(await reader.read())

        async with loopback_server(local_handler) as local, loopback_server(broker_handler) as broker:
            options = TunnelOptions(local_port=local.port, local_host="127.0.0.1")
            events = EventStream()
            slot = PooledConnection(0, options, events, fast_config)

            await slot.connect("127.0.0.1", broker.port)

            head = await asyncio.wait_for(local_received, 3.0)
            assert head == REQUEST.replace(b"abc.broker.example", f"127.0.0.1:{local.port}".encode())
            assert await asyncio.wait_for(broker_received, 3.0) == RESPONSE

            await wait_until(lambda: slot.state == SlotState.IDLE)
            assert not slot.is_active()
            assert slot.stats["exchanges"] == 1
            assert slot.stats["bytes_out"] == len(RESPONSE)

            published = drain_events(events)
            assert IncomingRequest(method="GET", path="/hello", url="/hello") in published
            assert not [e for e in published if isinstance(e, ErrorEvent)]

            await slot.close()

    @pytest.mark.asyncio
    async def test_slot_becomes_active_while_exchange_is_open(self, fast_config: BurrowConfig) -> None:
        async with loopback_server(hold_open) as local, loopback_server(hold_open) as broker:
            options = TunnelOptions(local_port=local.port, local_host="127.0.0.1")
            slot = PooledConnection(0, options, EventStream(), fast_config)

            await slot.connect("127.0.0.1", broker.port)

            assert slot.is_active()
            assert slot.state == SlotState.ACTIVE
            await wait_until(lambda: local.accepted == 1)

            await slot.close()

    @pytest.mark.asyncio
    async def test_request_event_carries_public_url(self, fast_config: BurrowConfig) -> None:
        async def broker_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.write(b"POST /api/items?x=1 HTTP/1.1\r\nHost: abc\r\n\r\n")
            await writer.drain()
            await reader.read()

        async with loopback_server(hold_open) as local, loopback_server(broker_handler) as broker:
            options = TunnelOptions(local_port=local.port, local_host="127.0.0.1")
            events = EventStream()
            slot = PooledConnection(0, options, events, fast_config, public_url="https://abc.broker.example/")

            await slot.connect("127.0.0.1", broker.port)
            await wait_until(lambda: events.pending() >= 1)

            [event] = drain_events(events)
            assert event == IncomingRequest(
                method="POST",
                path="/api/items?x=1",
                url="https://abc.broker.example/api/items?x=1",
            )

            await slot.close()

    @pytest.mark.asyncio
    async def test_connect_is_noop_when_active(self, fast_config: BurrowConfig) -> None:
        async with loopback_server(hold_open) as local, loopback_server(hold_open) as broker:
            options = TunnelOptions(local_port=local.port, local_host="127.0.0.1")
            slot = PooledConnection(0, options, EventStream(), fast_config)

            await slot.connect("127.0.0.1", broker.port)
            await slot.connect("127.0.0.1", broker.port)
            await wait_until(lambda: broker.accepted >= 1)
            await asyncio.sleep(0.05)

            assert broker.accepted == 1
            assert slot.stats["dials"] == 1

            await slot.close()


class TestPooledConnectionFailures:
    """Dial and proxy failures are reported and leave the slot re-dialable."""

    @pytest.mark.asyncio
    async def test_broker_dial_failure(self, fast_config: BurrowConfig) -> None:
        events = EventStream()
        slot = PooledConnection(0, TunnelOptions(local_port=8080), events, fast_config)

        await slot.connect("127.0.0.1", unused_port())

        assert slot.state == SlotState.IDLE
        [event] = drain_events(events)
        assert isinstance(event, ErrorEvent)
        assert isinstance(event.error, DialFailedError)
        assert event.error.local is False
        assert slot.stats["dial_failures"] == 1

    @pytest.mark.asyncio
    async def test_local_dial_failure(self, fast_config: BurrowConfig) -> None:
        """Unreachable local server: DialFailedError, broker connection dropped, slot idle."""
        broker_saw_eof = asyncio.Event()

        async def broker_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await reader.read()
            broker_saw_eof.set()

        async with loopback_server(broker_handler) as broker:
            options = TunnelOptions(local_port=unused_port(), local_host="127.0.0.1")
            events = EventStream()
            slot = PooledConnection(0, options, events, fast_config)

            await slot.connect("127.0.0.1", broker.port)

            await asyncio.wait_for(broker_saw_eof.wait(), 3.0)
            await wait_until(lambda: slot.state == SlotState.IDLE)
            errors = [e.error for e in drain_events(events) if isinstance(e, ErrorEvent)]
            assert len(errors) == 1
            assert isinstance(errors[0], DialFailedError)
            assert errors[0].local is True

            # Re-dialable after the failure
            await slot.connect("127.0.0.1", broker.port)
            await wait_until(lambda: broker.accepted == 2)

            await slot.close()

    @pytest.mark.asyncio
    async def test_broker_host_that_cannot_be_encoded(self, fast_config: BurrowConfig) -> None:
        """A resolver error other than OSError still resets the slot and is reported."""
        events = EventStream()
        slot = PooledConnection(0, TunnelOptions(local_port=8080), events, fast_config)

        await slot.connect(LONG_LABEL_HOST, 1234)

        assert slot.state == SlotState.IDLE
        [event] = drain_events(events)
        assert isinstance(event.error, DialFailedError)
        assert event.error.local is False

    @pytest.mark.asyncio
    async def test_local_host_that_cannot_be_encoded(self, fast_config: BurrowConfig) -> None:
        async with loopback_server(hold_open) as broker:
            options = TunnelOptions(local_port=8080, local_host=LONG_LABEL_HOST)
            events = EventStream()
            slot = PooledConnection(0, options, events, fast_config)

            await slot.connect("127.0.0.1", broker.port)
            await wait_until(lambda: events.pending() >= 1)
            await wait_until(lambda: slot.state == SlotState.IDLE)

            [event] = drain_events(events)
            assert isinstance(event.error, DialFailedError)
            assert event.error.local is True

            await slot.close()

    @pytest.mark.asyncio
    async def test_idle_broker_is_torn_down(self) -> None:
        """A broker that never sends anything is dropped after idle_timeout."""
        config = BurrowConfig(timeouts=TimeoutConfig(idle_timeout=0.1), pool=PoolConfig())

        async with loopback_server(hold_open) as local, loopback_server(hold_open) as broker:
            options = TunnelOptions(local_port=local.port, local_host="127.0.0.1")
            events = EventStream()
            slot = PooledConnection(0, options, events, config)

            await slot.connect("127.0.0.1", broker.port)
            await wait_until(lambda: slot.state == SlotState.IDLE)

            errors = [e.error for e in drain_events(events) if isinstance(e, ErrorEvent)]
            assert len(errors) == 1
            assert isinstance(errors[0], ProxyIOError)

            await slot.close()

    @pytest.mark.asyncio
    async def test_broker_closing_without_request(self, fast_config: BurrowConfig) -> None:
        """Broker EOF before a request line is reported as a malformed stream."""

        async def close_immediately(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            return None

        async with loopback_server(hold_open) as local, loopback_server(close_immediately) as broker:
            options = TunnelOptions(local_port=local.port, local_host="127.0.0.1")
            events = EventStream()
            slot = PooledConnection(0, options, events, fast_config)

            await slot.connect("127.0.0.1", broker.port)
            await wait_until(lambda: slot.state == SlotState.IDLE)

            errors = [e.error for e in drain_events(events) if isinstance(e, ErrorEvent)]
            assert [type(e).__name__ for e in errors] == ["MalformedStreamError"]

            await slot.close()


class TestPooledConnectionClose:
    """close() behavior."""

    @pytest.mark.asyncio
    async def test_close_unblocks_pending_read(self, fast_config: BurrowConfig) -> None:
        """Closing a slot whose copy loops are blocked on reads finishes promptly."""
        async with loopback_server(hold_open) as local, loopback_server(hold_open) as broker:
            options = TunnelOptions(local_port=local.port, local_host="127.0.0.1")
            slot = PooledConnection(0, options, EventStream(), fast_config)
            await slot.connect("127.0.0.1", broker.port)
            await wait_until(lambda: local.accepted == 1)

            await asyncio.wait_for(slot.close(), 2.0)

            assert slot.state == SlotState.CLOSED
            assert not slot.is_active()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, fast_config: BurrowConfig) -> None:
        slot = PooledConnection(0, TunnelOptions(local_port=8080), EventStream(), fast_config)

        await slot.close()
        await slot.close()

        assert slot.state == SlotState.CLOSED

    @pytest.mark.asyncio
    async def test_closed_slot_never_dials(self, fast_config: BurrowConfig) -> None:
        async with loopback_server(hold_open) as broker:
            slot = PooledConnection(0, TunnelOptions(local_port=8080), EventStream(), fast_config)
            await slot.close()

            await slot.connect("127.0.0.1", broker.port)
            await asyncio.sleep(0.05)

            assert broker.accepted == 0
            assert slot.state == SlotState.CLOSED


def test_local_ssl_context_skips_verification() -> None:
    import ssl

    context = create_local_ssl_context()
    assert context.check_hostname is False
    assert context.verify_mode == ssl.CERT_NONE
