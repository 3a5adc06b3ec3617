"""
Memory transport - In-process transport for tests and demos.

- Does not open sockets
- Peers find each other through a shared MemoryNetwork
- Dial latency and connection upgrade can be delayed to exercise timeouts
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple

from peerdm.core.errors import DirectMessageError
from peerdm.network.transport import ConnectionStatus, PeerId, StreamHandler
from peerdm.utils.logger import get_logger


logger = get_logger("memory")

_EOF = object()


class MemoryNetwork:
    """Registry of started memory transports, keyed by peer id."""

    def __init__(self) -> None:
        self._transports: Dict[PeerId, "MemoryTransport"] = {}

    def register(self, transport: "MemoryTransport") -> None:
        self._transports[transport.local_peer] = transport

    def unregister(self, peer_id: PeerId) -> None:
        self._transports.pop(peer_id, None)

    def lookup(self, peer_id: PeerId) -> Optional["MemoryTransport"]:
        return self._transports.get(peer_id)


class MemoryStream:
    """One end of a queue-backed stream pair."""

    def __init__(self, protocol: str) -> None:
        self._protocol = protocol
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._peer: Optional["MemoryStream"] = None
        self.closed = False
        self.aborted = False

    @classmethod
    def pair(cls, protocol: str) -> Tuple["MemoryStream", "MemoryStream"]:
        local, remote = cls(protocol), cls(protocol)
        local._peer, remote._peer = remote, local
        return local, remote

    @property
    def protocol(self) -> str:
        return self._protocol

    async def write(self, payload: bytes) -> None:
        if self.closed or self.aborted:
            raise BrokenPipeError("stream is closed")
        self._peer._inbox.put_nowait(bytes(payload))

    async def read(self) -> bytes:
        if self.aborted:
            raise ConnectionResetError("stream was aborted")

        item = await self._inbox.get()
        if item is _EOF:
            raise EOFError("stream closed by remote")
        if isinstance(item, BaseException):
            raise item
        return item

    def abort(self, error: Optional[BaseException] = None) -> None:
        if self.closed or self.aborted:
            return
        self.aborted = True
        self._peer._inbox.put_nowait(ConnectionResetError(f"stream reset by remote: {error}"))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if not self.aborted:
            self._peer._inbox.put_nowait(_EOF)


class MemoryConnection:
    """A connection from one memory transport to another."""

    def __init__(
        self,
        local: "MemoryTransport",
        remote: "MemoryTransport",
        status: ConnectionStatus = ConnectionStatus.OPEN,
    ) -> None:
        self._local = local
        self._remote = remote
        self._status = status

    @property
    def remote_peer(self) -> PeerId:
        return self._remote.local_peer

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def upgrade(self) -> None:
        if self._status is ConnectionStatus.TRANSIENT:
            self._status = ConnectionStatus.OPEN

    async def close(self) -> None:
        self._status = ConnectionStatus.CLOSED

    async def open_stream(self, protocol_id: str) -> MemoryStream:
        if self._status is not ConnectionStatus.OPEN:
            raise ConnectionError(f"connection to {self.remote_peer} is {self._status.value}")

        local, remote = MemoryStream.pair(protocol_id)
        inbound = MemoryConnection(self._remote, self._local)
        self._remote._dispatch(protocol_id, remote, inbound)
        return local


class MemoryTransport:
    """
    Transport backed by in-process queues.

    Attributes:
        dial_delay: Seconds a dial takes to complete
        upgrade_delay: Seconds a new connection stays transient;
            None keeps it transient forever
        errors: Exceptions raised by stream handlers, in order
    """

    def __init__(
        self,
        peer_id: PeerId,
        network: MemoryNetwork,
        dial_delay: float = 0.0,
        upgrade_delay: Optional[float] = 0.0,
    ) -> None:
        self._peer_id = peer_id
        self.network = network
        self.dial_delay = dial_delay
        self.upgrade_delay = upgrade_delay
        self.errors: List[BaseException] = []
        self._handlers: Dict[str, StreamHandler] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def local_peer(self) -> PeerId:
        return self._peer_id

    async def start(self) -> None:
        self._running = True
        self.network.register(self)

    async def stop(self) -> None:
        self._running = False
        self.network.unregister(self._peer_id)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def handle(self, protocol_id: str, handler: StreamHandler) -> None:
        self._handlers[protocol_id] = handler

    def unhandle(self, protocol_id: str) -> None:
        self._handlers.pop(protocol_id, None)

    async def dial(self, peer_id: PeerId) -> MemoryConnection:
        if not self._running:
            raise ConnectionError("transport is not started")
        if self.dial_delay > 0:
            await asyncio.sleep(self.dial_delay)

        remote = self.network.lookup(peer_id)
        if remote is None:
            raise ConnectionRefusedError(f"no route to {peer_id}")

        if self.upgrade_delay == 0:
            return MemoryConnection(self, remote)

        connection = MemoryConnection(self, remote, status=ConnectionStatus.TRANSIENT)
        if self.upgrade_delay is not None:
            asyncio.get_running_loop().call_later(self.upgrade_delay, connection.upgrade)
        return connection

    async def wait_idle(self) -> None:
        """Wait for every running stream handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _dispatch(self, protocol_id: str, stream: MemoryStream, connection: MemoryConnection) -> None:
        handler = self._handlers.get(protocol_id)
        if handler is None:
            raise ConnectionRefusedError(f"{self._peer_id} does not handle {protocol_id}")

        task = asyncio.create_task(self._run_handler(handler, stream, connection))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_handler(
        self,
        handler: StreamHandler,
        stream: MemoryStream,
        connection: MemoryConnection,
    ) -> None:
        try:
            await handler(stream, connection)
        except DirectMessageError as e:
            self.errors.append(e)
            logger.warning(f"{stream.protocol} handler failed for {connection.remote_peer}: {e.reason}")
        except Exception as e:
            self.errors.append(e)
            logger.error(f"{stream.protocol} handler error: {e}")
