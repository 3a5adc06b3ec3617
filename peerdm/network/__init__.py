"""
peerdm Network Module - Direct-message protocol over pluggable transports.

Provides the envelope codec, the client and server flows, stream lifecycle
management, and memory/TCP transports.
"""

from peerdm.network.protocol import (
    DirectMessageRequest,
    DirectMessageResponse,
    Metadata,
    Status,
    create_request,
    create_response,
    sign_envelope,
    verify_envelope,
)
from peerdm.network.transport import Connection, ConnectionStatus, PeerId, Stream, Transport
from peerdm.network.stream import ExchangeState, StreamExchange
from peerdm.network.client import (
    Acknowledged,
    DirectMessageClient,
    DirectMessageResult,
    send_direct_message,
)
from peerdm.network.server import DirectMessageHandler, MessageCallback
from peerdm.network.memory import MemoryNetwork, MemoryTransport
from peerdm.network.tcp import TcpTransport
from peerdm.network.node import DirectMessageNode

__all__ = [
    # Protocol
    "DirectMessageRequest",
    "DirectMessageResponse",
    "Metadata",
    "Status",
    "create_request",
    "create_response",
    "sign_envelope",
    "verify_envelope",
    # Transport
    "Connection",
    "ConnectionStatus",
    "PeerId",
    "Stream",
    "Transport",
    # Stream
    "ExchangeState",
    "StreamExchange",
    # Client
    "Acknowledged",
    "DirectMessageClient",
    "DirectMessageResult",
    "send_direct_message",
    # Server
    "DirectMessageHandler",
    "MessageCallback",
    # Transports
    "MemoryNetwork",
    "MemoryTransport",
    "TcpTransport",
    # Node
    "DirectMessageNode",
]
