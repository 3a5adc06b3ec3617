"""
Stream - Lifecycle of a single direct-message exchange.

StreamExchange is the only component that touches the transport. It owns
dialing, waiting for a transient connection to upgrade, opening the stream,
one write, one read, and the abort/close sequence. A connection the
exchange dialed is closed together with it, whichever way the exchange ends.

State machine:
    IDLE -> DIALING -> (UPGRADE_PENDING) -> STREAM_OPEN -> WRITING
         -> READING -> VERIFYING -> CLOSED
    any non-terminal state -> ABORTING -> CLOSED
"""

import asyncio
from enum import Enum
from typing import List, Optional

from peerdm.core.config import NodeConfig
from peerdm.core.errors import (
    ConnectionUpgradeTimeout,
    DialTimeout,
    MalformedEnvelope,
    StreamIOFailure,
)
from peerdm.network.transport import Connection, ConnectionStatus, PeerId, Stream, Transport
from peerdm.utils.logger import get_logger


logger = get_logger("stream")

# Failures a transport may raise from dial/open/read/write/close
TRANSPORT_ERRORS = (OSError, EOFError)


class ExchangeState(Enum):
    """State of one exchange."""
    IDLE = "idle"
    DIALING = "dialing"
    UPGRADE_PENDING = "upgrade_pending"
    STREAM_OPEN = "stream_open"
    WRITING = "writing"
    READING = "reading"
    VERIFYING = "verifying"
    ABORTING = "aborting"
    CLOSED = "closed"


class StreamExchange:
    """
    Drives one exchange over one stream.

    Use as an async context manager: an exception escaping the block aborts
    the open stream, and the stream is always closed exactly once.

    Attributes:
        state: Current exchange state
        history: Every state entered, in order
        stream: The stream, once opened or accepted
        connection: The connection the stream runs on
    """

    def __init__(self, protocol_id: str, config: Optional[NodeConfig] = None):
        self.protocol_id = protocol_id
        self.config = config or NodeConfig()
        self.state = ExchangeState.IDLE
        self.history: List[ExchangeState] = [ExchangeState.IDLE]
        self.stream: Optional[Stream] = None
        self.connection: Optional[Connection] = None
        self.peer_id: Optional[PeerId] = None
        self.aborted = False
        # Connections this exchange dialed are closed with it
        self.owns_connection = False

    @classmethod
    def accept(
        cls,
        stream: Stream,
        connection: Connection,
        config: Optional[NodeConfig] = None,
    ) -> "StreamExchange":
        """Wrap a stream the remote side opened."""
        exchange = cls(stream.protocol, config)
        exchange.connection = connection
        exchange.stream = stream
        exchange._transition(ExchangeState.STREAM_OPEN)
        return exchange

    def _transition(self, state: ExchangeState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(f"{self.protocol_id} exchange -> {state.value}")

    @property
    def remote_peer(self) -> Optional[PeerId]:
        return self.connection.remote_peer if self.connection else None

    # -------------------------------------------------------------------------
    # Connection setup
    # -------------------------------------------------------------------------

    async def dial(self, transport: Transport, peer_id: PeerId) -> Connection:
        """
        Dial a peer, bounded by the configured dial timeout.

        Raises:
            DialTimeout: if the dial does not complete in time
            StreamIOFailure: if the transport refuses the dial
        """
        self._transition(ExchangeState.DIALING)
        self.peer_id = peer_id
        timeout = self.config.dial_timeout

        try:
            connection = await asyncio.wait_for(transport.dial(peer_id), timeout=timeout)
        except asyncio.TimeoutError:
            raise DialTimeout(f"dial to {peer_id} timed out after {timeout}s")
        except TRANSPORT_ERRORS as e:
            raise StreamIOFailure(f"dial to {peer_id} failed: {e}")

        self.connection = connection
        self.owns_connection = True
        return connection

    async def wait_until_open(self, connection: Connection) -> None:
        """
        Poll a transient connection until it is open.

        Raises:
            ConnectionUpgradeTimeout: if it stays transient past the bound
            StreamIOFailure: if it closes while waiting
        """
        peer = self.peer_id or connection.remote_peer

        if connection.status is ConnectionStatus.TRANSIENT:
            self._transition(ExchangeState.UPGRADE_PENDING)

            loop = asyncio.get_running_loop()
            timeout = self.config.upgrade_timeout
            deadline = loop.time() + timeout

            while connection.status is ConnectionStatus.TRANSIENT:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ConnectionUpgradeTimeout(
                        f"connection to {peer} still transient after {timeout}s"
                    )
                await asyncio.sleep(min(self.config.upgrade_poll_interval, remaining))

        if connection.status is not ConnectionStatus.OPEN:
            raise StreamIOFailure(f"connection to {peer} is {connection.status.value}")

    async def open(self, connection: Connection) -> Stream:
        """Open a stream for this protocol on an open connection."""
        self.connection = connection
        try:
            stream = await connection.open_stream(self.protocol_id)
        except TRANSPORT_ERRORS as e:
            raise StreamIOFailure(f"failed to open {self.protocol_id} stream: {e}")

        self.stream = stream
        self._transition(ExchangeState.STREAM_OPEN)
        return stream

    # -------------------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------------------

    async def write(self, payload: bytes) -> None:
        self._require_stream()
        self._transition(ExchangeState.WRITING)
        try:
            await self.stream.write(payload)
        except TRANSPORT_ERRORS as e:
            raise StreamIOFailure(f"write failed: {e}")

    async def read(self) -> bytes:
        """
        Read exactly one payload.

        Raises:
            StreamIOFailure: on reset, EOF or read timeout
            MalformedEnvelope: if the payload exceeds max_message_size
        """
        self._require_stream()
        self._transition(ExchangeState.READING)
        try:
            if self.config.read_timeout:
                payload = await asyncio.wait_for(self.stream.read(), timeout=self.config.read_timeout)
            else:
                payload = await self.stream.read()
        except asyncio.TimeoutError:
            raise StreamIOFailure(f"read timed out after {self.config.read_timeout}s")
        except TRANSPORT_ERRORS as e:
            raise StreamIOFailure(f"read failed: {e}")

        if len(payload) > self.config.max_message_size:
            raise MalformedEnvelope(
                f"payload of {len(payload)} bytes exceeds max {self.config.max_message_size}"
            )
        return payload

    def verifying(self) -> None:
        self._transition(ExchangeState.VERIFYING)

    def _require_stream(self) -> None:
        if self.stream is None or self.state in (ExchangeState.ABORTING, ExchangeState.CLOSED):
            raise StreamIOFailure(f"no open stream (state: {self.state.value})")

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def abort(self, error: Optional[BaseException] = None) -> None:
        """Signal cancellation to the remote side. No-op once closed."""
        if self.state in (ExchangeState.ABORTING, ExchangeState.CLOSED):
            return

        self._transition(ExchangeState.ABORTING)
        self.aborted = True
        if self.stream is None:
            return

        try:
            self.stream.abort(error)
        except Exception as e:
            logger.warning(f"Stream abort raised: {e}")

    async def close(self) -> None:
        """
        Close the stream, then the connection if this exchange dialed it.

        Idempotent and never raises.
        """
        if self.state is ExchangeState.CLOSED:
            return

        try:
            if self.stream is not None:
                await self.stream.close()
        except Exception as e:
            if self.aborted:
                logger.debug(f"Close after abort raised: {e}")
            else:
                logger.warning(f"Stream close raised: {e}")
        finally:
            await self._close_connection()
            self._transition(ExchangeState.CLOSED)

    async def _close_connection(self) -> None:
        if not self.owns_connection or self.connection is None:
            return
        try:
            await self.connection.close()
        except Exception as e:
            logger.debug(f"Connection close raised: {e}")

    async def __aenter__(self) -> "StreamExchange":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            self.abort(exc)
        await self.close()
        return False
