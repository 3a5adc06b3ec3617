"""
Network Protocol - Direct-message envelopes and their wire encoding.

Defines the request/response envelopes exchanged on the direct-message
protocol, the canonical encoding used for signing, and the helpers that
create, sign and verify envelopes.
"""

import struct
import time
import uuid
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import ClassVar, Dict, List, Optional, Tuple, Union

from peerdm.core.config import CLIENT_VERSION
from peerdm.core.errors import EmptyMessage, MalformedEnvelope, MalformedKey, VerificationFailed
from peerdm.core.identity import Identity, derive_identity, verify_signature


class EnvelopeKind(IntEnum):
    """Kinds of envelopes on the wire."""
    REQUEST = 1
    RESPONSE = 2


class Status(IntEnum):
    """Response status codes."""
    UNKNOWN = 0
    OK = 200
    ERROR = 500


# Protocol constants
PROTOCOL_VERSION = 1
MAGIC_BYTES = b"PDM1"  # 4 bytes, identifies a peerdm envelope
HEADER_FORMAT = ">4sBB"  # magic (4) + version (1) + kind (1)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
FIELD_FORMAT = ">BI"  # tag (1) + length (4)
FIELD_HEADER_SIZE = struct.calcsize(FIELD_FORMAT)

# Metadata field tags
TAG_CLIENT_VERSION = 1
TAG_TIMESTAMP = 2
TAG_MESSAGE_ID = 3
TAG_SENDER_NODE_ID = 4
TAG_SENDER_PUBLIC_KEY = 5
TAG_SIGNATURE = 6

# Envelope field tags
TAG_METADATA = 1
TAG_MESSAGE = 2
TAG_STATUS = 2
TAG_STATUS_TEXT = 3


# =============================================================================
# Field encoding
# =============================================================================


def _encode_fields(fields: List[Tuple[int, bytes]]) -> bytes:
    """Encode (tag, value) pairs as TLV entries in ascending tag order."""
    out = bytearray()
    for tag, value in sorted(fields, key=lambda item: item[0]):
        out += struct.pack(FIELD_FORMAT, tag, len(value))
        out += value
    return bytes(out)


def _decode_fields(data: bytes, what: str) -> Dict[int, bytes]:
    """Decode TLV entries. Unknown tags are kept and ignored by callers."""
    fields: Dict[int, bytes] = {}
    offset = 0
    while offset < len(data):
        if len(data) - offset < FIELD_HEADER_SIZE:
            raise MalformedEnvelope(f"truncated field header in {what}")
        tag, length = struct.unpack_from(FIELD_FORMAT, data, offset)
        offset += FIELD_HEADER_SIZE
        if len(data) - offset < length:
            raise MalformedEnvelope(f"truncated field {tag} in {what}")
        if tag in fields:
            raise MalformedEnvelope(f"duplicate field {tag} in {what}")
        fields[tag] = data[offset:offset + length]
        offset += length
    return fields


def _text(value: bytes, name: str) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedEnvelope(f"{name} is not valid UTF-8")


def _require(fields: Dict[int, bytes], tag: int, name: str) -> bytes:
    if tag not in fields:
        raise MalformedEnvelope(f"missing {name}")
    return fields[tag]


def _pack_envelope(kind: EnvelopeKind, fields: List[Tuple[int, bytes]]) -> bytes:
    header = struct.pack(HEADER_FORMAT, MAGIC_BYTES, PROTOCOL_VERSION, kind)
    return header + _encode_fields(fields)


def _unpack_envelope(data: bytes, kind: EnvelopeKind) -> Dict[int, bytes]:
    if len(data) < HEADER_SIZE:
        raise MalformedEnvelope("envelope too short")

    magic, version, actual_kind = struct.unpack_from(HEADER_FORMAT, data)
    if magic != MAGIC_BYTES:
        raise MalformedEnvelope(f"invalid magic bytes: {magic!r}")
    if version != PROTOCOL_VERSION:
        raise MalformedEnvelope(f"unsupported protocol version: {version}")
    if actual_kind != kind:
        raise MalformedEnvelope(f"expected {kind.name.lower()} envelope, got kind {actual_kind}")

    return _decode_fields(data[HEADER_SIZE:], kind.name.lower())


# =============================================================================
# Envelopes
# =============================================================================


@dataclass(frozen=True)
class Metadata:
    """
    Metadata attached to every request and response.

    ``signature`` covers the canonical encoding of the containing envelope
    with this field set to b"".
    """
    client_version: str
    timestamp: int  # ms since epoch
    message_id: str
    sender_node_id: str
    sender_public_key: bytes
    signature: bytes = b""

    def to_bytes(self) -> bytes:
        try:
            timestamp = struct.pack(">q", self.timestamp)
        except struct.error:
            raise ValueError(f"timestamp out of range: {self.timestamp}")

        return _encode_fields([
            (TAG_CLIENT_VERSION, self.client_version.encode("utf-8")),
            (TAG_TIMESTAMP, timestamp),
            (TAG_MESSAGE_ID, self.message_id.encode("utf-8")),
            (TAG_SENDER_NODE_ID, self.sender_node_id.encode("utf-8")),
            (TAG_SENDER_PUBLIC_KEY, bytes(self.sender_public_key)),
            (TAG_SIGNATURE, bytes(self.signature)),
        ])

    @classmethod
    def from_bytes(cls, data: bytes) -> "Metadata":
        fields = _decode_fields(data, "metadata")

        timestamp = fields.get(TAG_TIMESTAMP, bytes(8))
        if len(timestamp) != 8:
            raise MalformedEnvelope("timestamp must be 8 bytes")

        return cls(
            client_version=_text(fields.get(TAG_CLIENT_VERSION, b""), "client_version"),
            timestamp=struct.unpack(">q", timestamp)[0],
            message_id=_text(fields.get(TAG_MESSAGE_ID, b""), "message_id"),
            sender_node_id=_text(fields.get(TAG_SENDER_NODE_ID, b""), "sender_node_id"),
            sender_public_key=bytes(fields.get(TAG_SENDER_PUBLIC_KEY, b"")),
            signature=bytes(fields.get(TAG_SIGNATURE, b"")),
        )


class _SignedEnvelope:
    """Shared canonicalization and signing for request/response envelopes."""

    metadata: Metadata

    def to_bytes(self) -> bytes:
        raise NotImplementedError

    def canonical_bytes(self) -> bytes:
        """Encoding with the signature cleared; the exact input to signing."""
        return self.with_signature(b"").to_bytes()

    def with_signature(self, signature: bytes):
        return replace(self, metadata=replace(self.metadata, signature=signature))


@dataclass(frozen=True)
class DirectMessageRequest(_SignedEnvelope):
    """A direct message sent from one peer to another."""
    message: str
    metadata: Metadata

    KIND: ClassVar[EnvelopeKind] = EnvelopeKind.REQUEST

    def to_bytes(self) -> bytes:
        return _pack_envelope(self.KIND, [
            (TAG_METADATA, self.metadata.to_bytes()),
            (TAG_MESSAGE, self.message.encode("utf-8")),
        ])

    @classmethod
    def from_bytes(cls, data: bytes) -> "DirectMessageRequest":
        fields = _unpack_envelope(data, cls.KIND)
        metadata = Metadata.from_bytes(_require(fields, TAG_METADATA, "metadata"))
        message = _text(_require(fields, TAG_MESSAGE, "message"), "message")
        if not message:
            raise MalformedEnvelope("message is empty")
        return cls(message=message, metadata=metadata)


@dataclass(frozen=True)
class DirectMessageResponse(_SignedEnvelope):
    """Acknowledgement of a direct message."""
    status: Status
    metadata: Metadata
    status_text: Optional[str] = None

    KIND: ClassVar[EnvelopeKind] = EnvelopeKind.RESPONSE

    def to_bytes(self) -> bytes:
        fields = [
            (TAG_METADATA, self.metadata.to_bytes()),
            (TAG_STATUS, struct.pack(">H", int(self.status))),
        ]
        if self.status_text is not None:
            fields.append((TAG_STATUS_TEXT, self.status_text.encode("utf-8")))
        return _pack_envelope(self.KIND, fields)

    @classmethod
    def from_bytes(cls, data: bytes) -> "DirectMessageResponse":
        fields = _unpack_envelope(data, cls.KIND)
        metadata = Metadata.from_bytes(_require(fields, TAG_METADATA, "metadata"))

        raw_status = _require(fields, TAG_STATUS, "status")
        if len(raw_status) != 2:
            raise MalformedEnvelope("status must be 2 bytes")
        code = struct.unpack(">H", raw_status)[0]
        status = Status(code) if code in Status._value2member_map_ else Status.UNKNOWN

        status_text = None
        if TAG_STATUS_TEXT in fields:
            status_text = _text(fields[TAG_STATUS_TEXT], "status_text")

        return cls(status=status, metadata=metadata, status_text=status_text)


Envelope = Union[DirectMessageRequest, DirectMessageResponse]


# =============================================================================
# Creation, signing, verification
# =============================================================================


def create_metadata(identity: Identity, client_version: str = CLIENT_VERSION) -> Metadata:
    """Fresh metadata for an outgoing envelope, signature still empty."""
    return Metadata(
        client_version=client_version,
        timestamp=int(time.time() * 1000),
        message_id=str(uuid.uuid4()),
        sender_node_id=identity.node_id,
        sender_public_key=identity.public_key,
    )


def sign_envelope(envelope: Envelope, identity: Identity) -> Envelope:
    """Sign the canonical encoding and return the envelope carrying the signature."""
    return envelope.with_signature(identity.sign(envelope.canonical_bytes()))


def create_request(
    identity: Identity,
    message: str,
    client_version: str = CLIENT_VERSION,
) -> DirectMessageRequest:
    """
    Create a signed direct-message request.

    Raises:
        EmptyMessage: if message is empty
        NoPrivateKey: if identity cannot sign
    """
    if not message:
        raise EmptyMessage("empty message")

    request = DirectMessageRequest(message=message, metadata=create_metadata(identity, client_version))
    return sign_envelope(request, identity)


def create_response(
    identity: Identity,
    status: Status,
    status_text: Optional[str] = None,
    client_version: str = CLIENT_VERSION,
) -> DirectMessageResponse:
    """Create a signed response with the given status."""
    response = DirectMessageResponse(
        status=status,
        metadata=create_metadata(identity, client_version),
        status_text=status_text,
    )
    return sign_envelope(response, identity)


def verify_envelope(envelope: Envelope, remote_peer: Optional[str] = None) -> None:
    """
    Verify an envelope's signature and sender identity.

    Args:
        envelope: Decoded request or response
        remote_peer: Transport-authenticated identity of the remote side;
            when given, the declared sender must be that peer

    Raises:
        VerificationFailed: on any mismatch
    """
    meta = envelope.metadata

    try:
        derived = derive_identity(meta.sender_public_key)
    except MalformedKey:
        raise VerificationFailed("sender public key is malformed")

    if meta.sender_node_id != derived:
        raise VerificationFailed("sender node id does not match sender public key")

    if remote_peer is not None and meta.sender_node_id != remote_peer:
        raise VerificationFailed(
            f"sender node id {meta.sender_node_id} does not match remote peer {remote_peer}"
        )

    if not verify_signature(envelope.canonical_bytes(), meta.signature, meta.sender_public_key):
        raise VerificationFailed("signature does not match sender public key")
