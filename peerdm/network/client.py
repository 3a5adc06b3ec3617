"""
Client - Sends one authenticated direct message and awaits its acknowledgement.

Each call is one exchange on its own stream. There are no retries: a call
succeeds only if the remote peer returned a verified OK response.
"""

import time
from dataclasses import dataclass
from typing import Optional

from peerdm.core.config import NodeConfig
from peerdm.core.errors import DirectMessageError, EmptyMessage, RemoteRejected
from peerdm.core.identity import Identity
from peerdm.network.protocol import (
    DirectMessageResponse,
    Status,
    create_request,
    verify_envelope,
)
from peerdm.network.stream import StreamExchange
from peerdm.network.transport import PeerId, Transport
from peerdm.utils.logger import get_logger


logger = get_logger("client")


@dataclass(frozen=True)
class Acknowledged:
    """The remote peer verified our message and answered OK."""
    peer_id: PeerId
    message_id: str
    response: DirectMessageResponse
    latency_ms: int = 0


@dataclass(frozen=True)
class DirectMessageResult:
    """Outcome of a send as a value: exactly one of the fields is set."""
    acknowledged: Optional[Acknowledged] = None
    error: Optional[DirectMessageError] = None

    @property
    def ok(self) -> bool:
        return self.acknowledged is not None


class DirectMessageClient:
    """
    Sends direct messages from a local identity over a transport.

    Attributes:
        transport: Transport used to dial peers
        identity: Local identity that signs requests
        config: Timeouts, protocol id and client version
    """

    def __init__(
        self,
        transport: Transport,
        identity: Identity,
        config: Optional[NodeConfig] = None,
    ):
        self.transport = transport
        self.identity = identity
        self.config = config or NodeConfig()

    async def send(self, peer_id: PeerId, message: str) -> Acknowledged:
        """
        Send ``message`` to ``peer_id`` and wait for a signed acknowledgement.

        Raises:
            EmptyMessage: message is empty (no network activity happens)
            NoPrivateKey: the local identity cannot sign
            DialTimeout, ConnectionUpgradeTimeout, StreamIOFailure: transport failures
            MalformedEnvelope: the response could not be decoded
            VerificationFailed: the response signature or sender is wrong
            RemoteRejected: the response status is not OK
        """
        if not message:
            raise EmptyMessage("empty message")

        request = create_request(self.identity, message, self.config.client_version)
        payload = request.to_bytes()
        started = time.monotonic()

        async with StreamExchange(self.config.protocol_id, self.config) as exchange:
            connection = await exchange.dial(self.transport, peer_id)
            await exchange.wait_until_open(connection)
            await exchange.open(connection)

            await exchange.write(payload)
            raw = await exchange.read()

            exchange.verifying()
            response = DirectMessageResponse.from_bytes(raw)
            verify_envelope(response, remote_peer=connection.remote_peer)

            if response.status != Status.OK:
                raise RemoteRejected(response.status, response.status_text)

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            f"Message {request.metadata.message_id} acknowledged by {peer_id} in {latency_ms}ms"
        )
        return Acknowledged(
            peer_id=peer_id,
            message_id=request.metadata.message_id,
            response=response,
            latency_ms=latency_ms,
        )

    async def send_result(self, peer_id: PeerId, message: str) -> DirectMessageResult:
        """Like send(), but returns failures as a DirectMessageResult."""
        try:
            return DirectMessageResult(acknowledged=await self.send(peer_id, message))
        except DirectMessageError as e:
            logger.warning(f"Direct message to {peer_id} failed: {e.reason}")
            return DirectMessageResult(error=e)


async def send_direct_message(
    transport: Transport,
    identity: Identity,
    peer_id: PeerId,
    message: str,
    config: Optional[NodeConfig] = None,
) -> Acknowledged:
    """Send one direct message. See DirectMessageClient.send."""
    return await DirectMessageClient(transport, identity, config).send(peer_id, message)
