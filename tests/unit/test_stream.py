"""
Unit tests for stream lifecycle management.

Tests cover:
1. Dial and upgrade timeouts
2. Abort-then-close on errors
3. Idempotent close
4. State transitions of the client and server exchange
"""

import asyncio

import pytest

from peerdm.core.config import DIRECT_MESSAGE_PROTOCOL, NodeConfig
from peerdm.core.errors import (
    ConnectionUpgradeTimeout,
    DialTimeout,
    MalformedEnvelope,
    StreamIOFailure,
)
from peerdm.network.client import DirectMessageClient
from peerdm.network.protocol import Status, create_response
from peerdm.network.stream import ExchangeState, StreamExchange
from peerdm.network.transport import ConnectionStatus


# =============================================================================
# Fakes
# =============================================================================


class RecordingStream:
    """Stream that records calls and can be told to fail."""

    protocol = DIRECT_MESSAGE_PROTOCOL

    def __init__(self, response=b"", read_error=None, write_error=None, close_error=None):
        self.response = response
        self.read_error = read_error
        self.write_error = write_error
        self.close_error = close_error
        self.calls = []
        self.written = []

    async def write(self, payload):
        self.calls.append("write")
        if self.write_error:
            raise self.write_error
        self.written.append(payload)

    async def read(self):
        self.calls.append("read")
        if self.read_error:
            raise self.read_error
        return self.response

    def abort(self, error=None):
        self.calls.append("abort")

    async def close(self):
        self.calls.append("close")
        if self.close_error:
            raise self.close_error


class FakeConnection:
    def __init__(self, stream, remote_peer="0xremote", status=ConnectionStatus.OPEN):
        self.stream = stream
        self.remote_peer = remote_peer
        self.status = status
        self.opened = 0
        self.closed = False

    async def open_stream(self, protocol_id):
        self.opened += 1
        return self.stream

    async def close(self):
        self.closed = True
        self.status = ConnectionStatus.CLOSED


class FakeTransport:
    local_peer = "0xlocal"

    def __init__(self, connection, dial_delay=0.0, dial_error=None):
        self.connection = connection
        self.dial_delay = dial_delay
        self.dial_error = dial_error
        self.dials = 0

    async def dial(self, peer_id):
        self.dials += 1
        if self.dial_delay:
            await asyncio.sleep(self.dial_delay)
        if self.dial_error:
            raise self.dial_error
        return self.connection


FAST = NodeConfig(dial_timeout=0.05, upgrade_timeout=0.05, upgrade_poll_interval=0.01)


# =============================================================================
# Tests
# =============================================================================


class TestDefaults:
    """Timeout bounds."""

    def test_default_bounds(self):
        config = NodeConfig()
        assert config.dial_timeout == 5.0
        assert config.upgrade_timeout == 2.0
        assert config.upgrade_poll_interval == 0.1


class TestDial:
    """Dialing through StreamExchange."""

    @pytest.mark.asyncio
    async def test_dial_timeout(self):
        stream = RecordingStream()
        transport = FakeTransport(FakeConnection(stream), dial_delay=1.0)

        exchange = StreamExchange(DIRECT_MESSAGE_PROTOCOL, FAST)
        with pytest.raises(DialTimeout):
            async with exchange:
                await exchange.dial(transport, "0xremote")

        assert exchange.state is ExchangeState.CLOSED
        assert exchange.stream is None
        assert exchange.connection is None
        assert stream.calls == []

    @pytest.mark.asyncio
    async def test_dial_refused(self):
        transport = FakeTransport(None, dial_error=ConnectionRefusedError("no route"))
        exchange = StreamExchange(DIRECT_MESSAGE_PROTOCOL, FAST)

        with pytest.raises(StreamIOFailure, match="no route"):
            await exchange.dial(transport, "0xremote")


class TestUpgrade:
    """Waiting for transient connections."""

    @pytest.mark.asyncio
    async def test_open_connection_skips_wait(self):
        exchange = StreamExchange(DIRECT_MESSAGE_PROTOCOL, FAST)
        await exchange.wait_until_open(FakeConnection(RecordingStream()))
        assert ExchangeState.UPGRADE_PENDING not in exchange.history

    @pytest.mark.asyncio
    async def test_upgrade_completes(self):
        connection = FakeConnection(RecordingStream(), status=ConnectionStatus.TRANSIENT)
        asyncio.get_running_loop().call_later(0.02, setattr, connection, "status", ConnectionStatus.OPEN)

        exchange = StreamExchange(DIRECT_MESSAGE_PROTOCOL, NodeConfig(upgrade_poll_interval=0.01))
        await exchange.wait_until_open(connection)

        assert ExchangeState.UPGRADE_PENDING in exchange.history

    @pytest.mark.asyncio
    async def test_upgrade_timeout(self):
        connection = FakeConnection(RecordingStream(), status=ConnectionStatus.TRANSIENT)
        exchange = StreamExchange(DIRECT_MESSAGE_PROTOCOL, FAST)

        with pytest.raises(ConnectionUpgradeTimeout):
            await exchange.wait_until_open(connection)

    @pytest.mark.asyncio
    async def test_upgrade_timeout_closes_dialed_connection(self):
        stream = RecordingStream()
        connection = FakeConnection(stream, status=ConnectionStatus.TRANSIENT)
        exchange = StreamExchange(DIRECT_MESSAGE_PROTOCOL, FAST)

        with pytest.raises(ConnectionUpgradeTimeout):
            async with exchange:
                conn = await exchange.dial(FakeTransport(connection), "0xremote")
                await exchange.wait_until_open(conn)

        assert exchange.state is ExchangeState.CLOSED
        assert exchange.history[-2:] == [ExchangeState.ABORTING, ExchangeState.CLOSED]
        assert exchange.stream is None
        assert connection.closed
        assert connection.opened == 0
        assert stream.calls == []

    @pytest.mark.asyncio
    async def test_closed_while_waiting(self):
        connection = FakeConnection(RecordingStream(), status=ConnectionStatus.TRANSIENT)
        asyncio.get_running_loop().call_later(0.01, setattr, connection, "status", ConnectionStatus.CLOSED)

        exchange = StreamExchange(DIRECT_MESSAGE_PROTOCOL, NodeConfig(upgrade_poll_interval=0.005))
        with pytest.raises(StreamIOFailure, match="closed"):
            await exchange.wait_until_open(connection)


class TestAbortAndClose:
    """Errors abort the stream, then close it exactly once."""

    @pytest.mark.asyncio
    async def test_read_failure_aborts_then_closes(self, alice):
        stream = RecordingStream(read_error=ConnectionResetError("boom"))
        client = DirectMessageClient(FakeTransport(FakeConnection(stream)), alice)

        with pytest.raises(StreamIOFailure, match="read failed"):
            await client.send("0xremote", "hello")

        assert stream.calls == ["write", "read", "abort", "close"]

    @pytest.mark.asyncio
    async def test_close_error_after_abort_is_not_raised(self, alice):
        stream = RecordingStream(
            read_error=ConnectionResetError("boom"),
            close_error=ConnectionResetError("already reset"),
        )
        client = DirectMessageClient(FakeTransport(FakeConnection(stream)), alice)

        with pytest.raises(StreamIOFailure, match="read failed"):
            await client.send("0xremote", "hello")

        assert stream.calls.count("abort") == 1
        assert stream.calls.count("close") == 1

    @pytest.mark.asyncio
    async def test_write_failure_aborts(self, alice):
        stream = RecordingStream(write_error=BrokenPipeError("gone"))
        client = DirectMessageClient(FakeTransport(FakeConnection(stream)), alice)

        with pytest.raises(StreamIOFailure, match="write failed"):
            await client.send("0xremote", "hello")

        assert stream.calls == ["write", "abort", "close"]

    @pytest.mark.asyncio
    async def test_garbage_response_aborts(self, alice):
        stream = RecordingStream(response=b"not an envelope")
        client = DirectMessageClient(FakeTransport(FakeConnection(stream)), alice)

        with pytest.raises(MalformedEnvelope):
            await client.send("0xremote", "hello")

        assert stream.calls == ["write", "read", "abort", "close"]

    @pytest.mark.asyncio
    async def test_success_closes_without_abort(self, alice, bob):
        response = create_response(bob, Status.OK).to_bytes()
        stream = RecordingStream(response=response)
        connection = FakeConnection(stream, remote_peer=bob.node_id)
        client = DirectMessageClient(FakeTransport(connection), alice)

        await client.send(bob.node_id, "hello")

        assert stream.calls == ["write", "read", "close"]
        assert connection.closed

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        stream = RecordingStream()
        connection = FakeConnection(stream)
        exchange = StreamExchange.accept(stream, connection)

        await exchange.close()
        await exchange.close()
        exchange.abort(RuntimeError("late"))

        assert stream.calls == ["close"]
        assert exchange.state is ExchangeState.CLOSED
        # accepted streams run on connections owned by the transport
        assert not connection.closed

    @pytest.mark.asyncio
    async def test_oversized_payload(self):
        stream = RecordingStream(response=b"x" * 2048)
        exchange = StreamExchange.accept(stream, FakeConnection(stream), NodeConfig(max_message_size=1024))

        with pytest.raises(MalformedEnvelope, match="exceeds"):
            async with exchange:
                await exchange.read()

        assert stream.calls == ["read", "abort", "close"]

    @pytest.mark.asyncio
    async def test_read_timeout(self):
        class SlowStream(RecordingStream):
            async def read(self):
                await asyncio.sleep(1.0)

        stream = SlowStream()
        exchange = StreamExchange.accept(stream, FakeConnection(stream), NodeConfig(read_timeout=0.02))

        with pytest.raises(StreamIOFailure, match="timed out"):
            await exchange.read()


class TestStateMachine:
    """Recorded state history."""

    @pytest.mark.asyncio
    async def test_client_happy_path(self, bob):
        response = create_response(bob, Status.OK).to_bytes()
        stream = RecordingStream(response=response)
        connection = FakeConnection(stream, remote_peer=bob.node_id, status=ConnectionStatus.TRANSIENT)
        asyncio.get_running_loop().call_later(0.01, setattr, connection, "status", ConnectionStatus.OPEN)

        exchange = StreamExchange(DIRECT_MESSAGE_PROTOCOL, NodeConfig(upgrade_poll_interval=0.005))
        async with exchange:
            conn = await exchange.dial(FakeTransport(connection), bob.node_id)
            await exchange.wait_until_open(conn)
            await exchange.open(conn)
            await exchange.write(b"request")
            await exchange.read()
            exchange.verifying()

        assert exchange.history == [
            ExchangeState.IDLE,
            ExchangeState.DIALING,
            ExchangeState.UPGRADE_PENDING,
            ExchangeState.STREAM_OPEN,
            ExchangeState.WRITING,
            ExchangeState.READING,
            ExchangeState.VERIFYING,
            ExchangeState.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_error_path_goes_through_aborting(self):
        stream = RecordingStream(read_error=ConnectionResetError("boom"))
        exchange = StreamExchange.accept(stream, FakeConnection(stream))

        with pytest.raises(StreamIOFailure):
            async with exchange:
                await exchange.read()

        assert exchange.history[-2:] == [ExchangeState.ABORTING, ExchangeState.CLOSED]

    @pytest.mark.asyncio
    async def test_write_after_abort_rejected(self):
        stream = RecordingStream()
        exchange = StreamExchange.accept(stream, FakeConnection(stream))
        exchange.abort()

        with pytest.raises(StreamIOFailure, match="no open stream"):
            await exchange.write(b"late")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
