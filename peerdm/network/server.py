"""
Server - Answers inbound direct-message streams.

The handler is installed on a transport for the direct-message protocol id
and runs once per inbound stream: read, decode, verify, deliver, respond.
"""

import inspect
from typing import Awaitable, Callable, Optional, Tuple, Union

from peerdm.core.config import NodeConfig
from peerdm.core.errors import VerificationFailed
from peerdm.core.identity import Identity
from peerdm.network.protocol import (
    DirectMessageRequest,
    Status,
    create_response,
    verify_envelope,
)
from peerdm.network.stream import StreamExchange
from peerdm.network.transport import Connection, PeerId, Stream
from peerdm.utils.logger import get_logger


logger = get_logger("server")


# Receives (sender node id, message text) after verification succeeded
MessageCallback = Callable[[PeerId, str], Union[None, Awaitable[None]]]


class DirectMessageHandler:
    """
    Verifies inbound direct messages and acknowledges them.

    - Malformed requests are fatal: the stream is aborted, nothing is sent
      and MalformedEnvelope propagates to the transport dispatcher.
    - Requests failing verification get a signed ERROR response.
    - Verified requests are handed to the message callback, then answered OK.
    """

    def __init__(
        self,
        identity: Identity,
        on_message: Optional[MessageCallback] = None,
        config: Optional[NodeConfig] = None,
    ):
        self.identity = identity
        self.config = config or NodeConfig()
        self._on_message = on_message

    def set_message_handler(self, handler: Optional[MessageCallback]) -> None:
        """Set callback for verified incoming messages."""
        self._on_message = handler

    async def __call__(self, stream: Stream, connection: Connection) -> Status:
        return await self.handle_stream(stream, connection)

    async def handle_stream(self, stream: Stream, connection: Connection) -> Status:
        """
        Run the server side of one exchange.

        Returns:
            The status sent back to the remote peer

        Raises:
            MalformedEnvelope: the request could not be decoded (no response sent)
            StreamIOFailure: the stream failed while reading or writing
        """
        remote_peer = connection.remote_peer

        async with StreamExchange.accept(stream, connection, self.config) as exchange:
            raw = await exchange.read()

            exchange.verifying()
            request = DirectMessageRequest.from_bytes(raw)

            try:
                verify_envelope(request, remote_peer=remote_peer)
            except VerificationFailed as e:
                logger.warning(f"Rejecting message {request.metadata.message_id} from {remote_peer}: {e.reason}")
                status, status_text = Status.ERROR, e.reason
            else:
                status, status_text = await self._deliver(remote_peer, request)

            response = create_response(
                self.identity,
                status,
                status_text=status_text,
                client_version=self.config.client_version,
            )
            await exchange.write(response.to_bytes())

        logger.debug(f"Answered message {request.metadata.message_id} from {remote_peer} with {status.name}")
        return status

    async def _deliver(self, sender: PeerId, request: DirectMessageRequest) -> Tuple[Status, Optional[str]]:
        if self._on_message is None:
            return Status.OK, None

        try:
            result = self._on_message(sender, request.message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Message callback failed for {request.metadata.message_id}: {e}")
            return Status.ERROR, "delivery failed"

        return Status.OK, None
