"""
Transport - The peer-to-peer transport surface consumed by the protocol.

The direct-message flows only ever talk to these interfaces; concrete
backends live in peerdm.network.memory and peerdm.network.tcp.

This module is pure structure: no sockets here.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable


# Public-key-derived node id ("0x" + 40 hex chars)
PeerId = str


class ConnectionStatus(Enum):
    """Lifecycle of a connection as seen by the protocol."""
    TRANSIENT = "transient"  # exists, upgrade not finished, no streams yet
    OPEN = "open"
    CLOSED = "closed"


@runtime_checkable
class Stream(Protocol):
    """
    An ordered, bidirectional channel for one protocol exchange.

    Each write/read moves exactly one framed payload.
    """

    @property
    def protocol(self) -> str: ...

    async def write(self, payload: bytes) -> None: ...

    async def read(self) -> bytes: ...

    def abort(self, error: Optional[BaseException] = None) -> None: ...

    async def close(self) -> None: ...


@runtime_checkable
class Connection(Protocol):
    """A connection to a single, transport-authenticated remote peer."""

    @property
    def remote_peer(self) -> PeerId: ...

    @property
    def status(self) -> ConnectionStatus: ...

    async def open_stream(self, protocol_id: str) -> Stream: ...

    async def close(self) -> None: ...


# Handlers may return a value (e.g. the status sent back); dispatchers ignore it
StreamHandler = Callable[[Stream, Connection], Awaitable[Any]]


@runtime_checkable
class Transport(Protocol):
    """A transport backend: dials peers and dispatches inbound streams."""

    @property
    def local_peer(self) -> PeerId: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def dial(self, peer_id: PeerId) -> Connection: ...

    def handle(self, protocol_id: str, handler: StreamHandler) -> None: ...

    def unhandle(self, protocol_id: str) -> None: ...
