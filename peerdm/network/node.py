"""
Node - Direct-message node lifecycle.

Ties an identity, a transport, the server handler and the client together.
start() is idempotent: concurrent and repeated calls bring the node up once.
"""

import asyncio
from typing import Optional

from peerdm.core.config import NodeConfig
from peerdm.core.identity import Identity
from peerdm.network.client import Acknowledged, DirectMessageClient, DirectMessageResult
from peerdm.network.memory import MemoryNetwork, MemoryTransport
from peerdm.network.server import DirectMessageHandler, MessageCallback
from peerdm.network.tcp import TcpTransport
from peerdm.network.transport import PeerId, Transport
from peerdm.utils.logger import get_logger


logger = get_logger("node")


class DirectMessageNode:
    """
    A peer that can send and receive direct messages.

    Handles:
    - Starting/stopping the transport exactly once
    - Installing the direct-message handler for the protocol id
    - Delivering verified inbound messages to a registered callback
    - Sending messages through DirectMessageClient
    """

    def __init__(
        self,
        identity: Identity,
        transport: Transport,
        config: Optional[NodeConfig] = None,
    ):
        self.identity = identity
        self.transport = transport
        self.config = config or NodeConfig()
        self.handler = DirectMessageHandler(identity, config=self.config)
        self.client = DirectMessageClient(transport, identity, self.config)
        self._start_lock = asyncio.Lock()
        self._running = False

    @classmethod
    def over_tcp(cls, identity: Identity, config: Optional[NodeConfig] = None) -> "DirectMessageNode":
        config = config or NodeConfig()
        return cls(identity, TcpTransport(identity, config), config)

    @classmethod
    def in_memory(
        cls,
        identity: Identity,
        network: MemoryNetwork,
        config: Optional[NodeConfig] = None,
    ) -> "DirectMessageNode":
        return cls(identity, MemoryTransport(identity.node_id, network), config)

    @property
    def node_id(self) -> PeerId:
        return self.identity.node_id

    @property
    def is_running(self) -> bool:
        return self._running

    def on_message(self, callback: Optional[MessageCallback]) -> None:
        """Register the callback that receives (sender_id, text) for verified messages."""
        self.handler.set_message_handler(callback)

    async def start(self) -> "DirectMessageNode":
        async with self._start_lock:
            if self._running:
                return self
            await self.transport.start()
            self.transport.handle(self.config.protocol_id, self.handler)
            self._running = True
            logger.info(f"Direct messages enabled for {self.node_id} on {self.config.protocol_id}")
        return self

    async def stop(self) -> None:
        async with self._start_lock:
            if not self._running:
                return
            self.transport.unhandle(self.config.protocol_id)
            await self.transport.stop()
            self._running = False
            logger.info("Node stopped")

    async def send(self, peer_id: PeerId, message: str) -> Acknowledged:
        return await self.client.send(peer_id, message)

    async def send_result(self, peer_id: PeerId, message: str) -> DirectMessageResult:
        return await self.client.send_result(peer_id, message)

    async def __aenter__(self) -> "DirectMessageNode":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
