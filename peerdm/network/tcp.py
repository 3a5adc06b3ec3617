"""
TCP transport - Authenticated single-stream connections over asyncio TCP.

Each dial opens a fresh TCP connection that carries exactly one stream.
A new connection is transient until both sides complete the identity
handshake, after which the remote node id is transport-authenticated.

Frame format:
    kind (1) | payload_len (4) | payload (n)

Handshake (symmetric):
    -> HELLO(public_key (64) | nonce (32))
    <- HELLO(public_key | nonce)
    -> AUTH(sign("peerdm-auth" | remote_nonce | own_public_key))
    <- AUTH(...)

After the handshake the dialer sends OPEN(protocol_id), then DATA frames.
RESET aborts the stream, FIN closes it.
"""

import asyncio
import secrets
import struct
from enum import IntEnum
from typing import Dict, Optional, Set, Tuple

from peerdm.core.config import NodeConfig
from peerdm.core.errors import DirectMessageError
from peerdm.core.identity import Identity, derive_identity, verify_signature
from peerdm.crypto import PUBLIC_KEY_SIZE
from peerdm.network.transport import ConnectionStatus, PeerId, StreamHandler
from peerdm.utils.logger import get_logger


logger = get_logger("tcp")


class FrameKind(IntEnum):
    """Frame kinds on a TCP connection."""
    HELLO = 1
    AUTH = 2
    OPEN = 3
    DATA = 4
    RESET = 5
    FIN = 6


FRAME_FORMAT = ">BI"
FRAME_HEADER_SIZE = struct.calcsize(FRAME_FORMAT)
NONCE_SIZE = 32
AUTH_DOMAIN = b"peerdm-auth"

# Errors that end a handshake or an accepted connection
HANDSHAKE_ERRORS = (asyncio.TimeoutError, OSError, EOFError, ValueError, DirectMessageError)


def pack_frame(kind: FrameKind, payload: bytes = b"") -> bytes:
    return struct.pack(FRAME_FORMAT, kind, len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader, max_size: int) -> Tuple[FrameKind, bytes]:
    """
    Read one frame.

    Raises:
        asyncio.IncompleteReadError: if the connection ends mid-frame
        ConnectionError: on an oversized frame or unknown kind
    """
    header = await reader.readexactly(FRAME_HEADER_SIZE)
    kind, length = struct.unpack(FRAME_FORMAT, header)

    if length > max_size:
        raise ConnectionError(f"frame too large: {length}")
    if kind not in FrameKind._value2member_map_:
        raise ConnectionError(f"unknown frame kind: {kind}")

    payload = await reader.readexactly(length)
    return FrameKind(kind), payload


class TcpStream:
    """The single stream carried by a TCP connection."""

    def __init__(
        self,
        protocol: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_size: int,
    ):
        self._protocol = protocol
        self.reader = reader
        self.writer = writer
        self.max_size = max_size
        self.closed = False
        self.aborted = False
        self._remote_closed = False

    @property
    def protocol(self) -> str:
        return self._protocol

    async def write(self, payload: bytes) -> None:
        if self.closed or self.aborted:
            raise BrokenPipeError("stream is closed")
        self.writer.write(pack_frame(FrameKind.DATA, payload))
        await self.writer.drain()

    async def read(self) -> bytes:
        if self.aborted:
            raise ConnectionResetError("stream was aborted")
        if self._remote_closed:
            raise EOFError("stream closed by remote")

        kind, payload = await read_frame(self.reader, self.max_size)
        if kind is FrameKind.DATA:
            return payload
        if kind is FrameKind.RESET:
            self._remote_closed = True
            raise ConnectionResetError(f"stream reset by remote: {payload.decode('utf-8', 'replace')}")
        if kind is FrameKind.FIN:
            self._remote_closed = True
            raise EOFError("stream closed by remote")
        raise ConnectionError(f"unexpected {kind.name} frame on open stream")

    def abort(self, error: Optional[BaseException] = None) -> None:
        if self.closed or self.aborted:
            return
        self.aborted = True

        reason = str(error or "aborted").encode("utf-8")[:256]
        try:
            self.writer.write(pack_frame(FrameKind.RESET, reason))
            self.writer.close()
        except (OSError, RuntimeError) as e:
            logger.debug(f"Failed to send RESET: {e}")

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True

        try:
            if not self.aborted and not self.writer.is_closing():
                self.writer.write(pack_frame(FrameKind.FIN))
                await self.writer.drain()
            self.writer.close()
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing stream: {e}")


class TcpConnection:
    """
    A TCP connection to one peer.

    Transient until the handshake completes; then open, with remote_peer
    set to the authenticated node id of the other side.
    """

    def __init__(
        self,
        transport: "TcpTransport",
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        expected_peer: Optional[PeerId] = None,
    ):
        self.transport = transport
        self.reader = reader
        self.writer = writer
        self.expected_peer = expected_peer
        self._remote_peer: Optional[PeerId] = None
        self._status = ConnectionStatus.TRANSIENT
        self._stream: Optional[TcpStream] = None
        self._upgrade_task: Optional[asyncio.Task] = None

    @property
    def remote_peer(self) -> PeerId:
        """Authenticated node id of the other side; empty until the handshake completes."""
        return self._remote_peer or ""

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    async def handshake(self) -> PeerId:
        """
        Prove our key to the remote side and check theirs.

        Raises:
            ConnectionError: if the remote side fails the handshake
        """
        identity = self.transport.identity
        max_size = self.transport.config.max_message_size
        nonce = secrets.token_bytes(NONCE_SIZE)

        self.writer.write(pack_frame(FrameKind.HELLO, identity.public_key + nonce))
        await self.writer.drain()

        kind, hello = await read_frame(self.reader, max_size)
        if kind is not FrameKind.HELLO or len(hello) != PUBLIC_KEY_SIZE + NONCE_SIZE:
            raise ConnectionError("expected HELLO")
        remote_key, remote_nonce = hello[:PUBLIC_KEY_SIZE], hello[PUBLIC_KEY_SIZE:]

        remote_peer = derive_identity(remote_key)
        if self.expected_peer is not None and remote_peer != self.expected_peer:
            raise ConnectionError(f"dialed {self.expected_peer} but reached {remote_peer}")

        proof = identity.sign(AUTH_DOMAIN + remote_nonce + identity.public_key)
        self.writer.write(pack_frame(FrameKind.AUTH, proof))
        await self.writer.drain()

        kind, remote_proof = await read_frame(self.reader, max_size)
        if kind is not FrameKind.AUTH:
            raise ConnectionError("expected AUTH")
        if not verify_signature(AUTH_DOMAIN + nonce + remote_key, remote_proof, remote_key):
            raise ConnectionError(f"{remote_peer} failed to prove key ownership")

        self._remote_peer = remote_peer
        self._status = ConnectionStatus.OPEN
        return remote_peer

    async def upgrade(self) -> bool:
        """Run the handshake bounded by handshake_timeout; close on failure."""
        try:
            await asyncio.wait_for(self.handshake(), timeout=self.transport.config.handshake_timeout)
            return True
        except HANDSHAKE_ERRORS as e:
            logger.warning(f"Handshake with {self.expected_peer or 'inbound peer'} failed: {e}")
            await self.close()
            return False

    def start_upgrade(self) -> asyncio.Task:
        """Run upgrade() in the background; close() cancels it."""
        self._upgrade_task = asyncio.create_task(self.upgrade())
        return self._upgrade_task

    async def open_stream(self, protocol_id: str) -> TcpStream:
        if self._status is not ConnectionStatus.OPEN:
            raise ConnectionError(f"connection to {self.remote_peer or self.expected_peer} is {self._status.value}")
        if self._stream is not None:
            raise ConnectionError("connection already carries a stream")

        self.writer.write(pack_frame(FrameKind.OPEN, protocol_id.encode("utf-8")))
        await self.writer.drain()
        self._stream = TcpStream(protocol_id, self.reader, self.writer, self.transport.config.max_message_size)
        return self._stream

    async def accept_stream(self) -> TcpStream:
        """Wait for the dialer's OPEN frame."""
        kind, payload = await read_frame(self.reader, self.transport.config.max_message_size)
        if kind is not FrameKind.OPEN:
            raise ConnectionError(f"expected OPEN, got {kind.name}")
        self._stream = TcpStream(
            payload.decode("utf-8"), self.reader, self.writer, self.transport.config.max_message_size
        )
        return self._stream

    async def close(self) -> None:
        task = self._upgrade_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        self._status = ConnectionStatus.CLOSED
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing connection: {e}")


class TcpTransport:
    """
    asyncio TCP transport.

    Peers are dialed by node id; addresses come from the address book
    filled with add_peer().
    """

    def __init__(self, identity: Identity, config: Optional[NodeConfig] = None):
        self.identity = identity
        self.config = config or NodeConfig()
        self.server: Optional[asyncio.Server] = None
        self._addresses: Dict[PeerId, Tuple[str, int]] = {}
        self._handlers: Dict[str, StreamHandler] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def local_peer(self) -> PeerId:
        return self.identity.node_id

    @property
    def listen_address(self) -> Optional[Tuple[str, int]]:
        if not self.server or not self.server.sockets:
            return None
        host, port = self.server.sockets[0].getsockname()[:2]
        return host, port

    def add_peer(self, peer_id: PeerId, host: str, port: int) -> None:
        self._addresses[peer_id] = (host, port)

    def handle(self, protocol_id: str, handler: StreamHandler) -> None:
        self._handlers[protocol_id] = handler

    def unhandle(self, protocol_id: str) -> None:
        self._handlers.pop(protocol_id, None)

    async def start(self) -> None:
        """Start listening for inbound connections."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.config.host,
            self.config.port,
        )
        host, port = self.listen_address
        logger.info(f"Listening on {host}:{port}")
        logger.info(f"Node ID: {self.local_peer}")

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        logger.info("Transport stopped")

    async def dial(self, peer_id: PeerId) -> TcpConnection:
        """
        Connect to a peer. The returned connection is transient until the
        handshake running in the background completes.
        """
        address = self._addresses.get(peer_id)
        if address is None:
            raise ConnectionRefusedError(f"no address known for {peer_id}")

        host, port = address
        reader, writer = await asyncio.open_connection(host, port)
        logger.debug(f"Connected to {host}:{port}, authenticating {peer_id}")

        connection = TcpConnection(self, reader, writer, expected_peer=peer_id)
        task = connection.start_upgrade()
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return connection

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle an inbound connection: handshake, OPEN, dispatch."""
        addr = writer.get_extra_info("peername")
        logger.debug(f"Incoming connection from {addr}")

        connection = TcpConnection(self, reader, writer)
        if not await connection.upgrade():
            return

        try:
            stream = await asyncio.wait_for(
                connection.accept_stream(), timeout=self.config.handshake_timeout
            )
        except HANDSHAKE_ERRORS as e:
            logger.warning(f"No stream opened by {connection.remote_peer}: {e}")
            await connection.close()
            return

        handler = self._handlers.get(stream.protocol)
        if handler is None:
            logger.warning(f"{connection.remote_peer} asked for unsupported protocol {stream.protocol}")
            stream.abort(ConnectionRefusedError("protocol not supported"))
            await stream.close()
            return

        try:
            await handler(stream, connection)
        except DirectMessageError as e:
            logger.warning(f"{stream.protocol} handler failed for {connection.remote_peer}: {e.reason}")
        except Exception as e:
            logger.error(f"{stream.protocol} handler error: {e}")
        finally:
            await stream.close()
