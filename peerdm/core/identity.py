"""
Identity & Signature Service.

Wraps the local node's secp256k1 key pair and exposes signing, signature
verification and node-id derivation. The key pair is supplied once and is
never mutated, so one Identity can be shared by every concurrent exchange.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from peerdm.core.errors import MalformedKey, NoPrivateKey
from peerdm.crypto import (
    PRIVATE_KEY_SIZE,
    SECP256K1_ORDER,
    generate_keypair,
    hex_to_bytes,
    keccak256,
    parse_public_key,
    private_key_to_public_key,
    sha256,
)
from peerdm.crypto import sign as ecdsa_sign
from peerdm.crypto import verify as ecdsa_verify


def derive_identity(public_key: bytes) -> str:
    """
    Derive the node id for a public key.

    Node id = last 20 bytes of keccak256(public_key), hex-encoded with 0x prefix.

    Raises:
        MalformedKey: if public_key is not a point on secp256k1
    """
    if parse_public_key(public_key) is None:
        raise MalformedKey("public key must be a 64-byte secp256k1 point")
    return "0x" + keccak256(bytes(public_key))[-20:].hex()


def verify_signature(data: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Check that ``signature`` over ``data`` was made by ``public_key``.

    A mismatch returns False; only an unparseable key raises MalformedKey.
    """
    if parse_public_key(public_key) is None:
        raise MalformedKey("public key must be a 64-byte secp256k1 point")
    if not isinstance(signature, (bytes, bytearray)):
        return False
    return ecdsa_verify(sha256(data), bytes(signature), bytes(public_key))


@dataclass(frozen=True)
class Identity:
    """
    The local node's identity.

    Attributes:
        public_key: 64-byte uncompressed public key
        private_key: 32-byte secret key, or None for a verify-only identity
    """
    public_key: bytes
    private_key: Optional[bytes] = None

    @classmethod
    def generate(cls) -> "Identity":
        kp = generate_keypair()
        return cls(public_key=kp.public_key, private_key=kp.private_key)

    @classmethod
    def from_private_key(cls, private_key: bytes) -> "Identity":
        return cls(public_key=private_key_to_public_key(private_key), private_key=private_key)

    @property
    def node_id(self) -> str:
        return derive_identity(self.public_key)

    @property
    def can_sign(self) -> bool:
        if self.private_key is None or len(self.private_key) != PRIVATE_KEY_SIZE:
            return False
        return 0 < int.from_bytes(self.private_key, "big") < SECP256K1_ORDER

    def sign(self, data: bytes) -> bytes:
        """
        Sign arbitrary bytes with the local private key.

        Returns:
            64-byte signature over sha256(data)

        Raises:
            NoPrivateKey: if this identity holds no usable signing key
        """
        if not self.can_sign:
            raise NoPrivateKey("local identity has no usable signing key")
        return ecdsa_sign(sha256(data), self.private_key)

    def verify(self, data: bytes, signature: bytes, public_key: Optional[bytes] = None) -> bool:
        """Verify against ``public_key`` (defaults to our own)."""
        return verify_signature(data, signature, public_key if public_key is not None else self.public_key)

    def __repr__(self) -> str:
        return f"Identity(public_key={self.public_key.hex()[:16]}..., can_sign={self.can_sign})"


# =============================================================================
# Key store
# =============================================================================


def save_identity(identity: Identity, path: Union[str, Path]) -> Path:
    """Write an identity to a JSON key file readable only by the owner."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "node_id": identity.node_id,
        "public_key": identity.public_key.hex(),
    }
    if identity.private_key is not None:
        data["private_key"] = identity.private_key.hex()

    path.write_text(json.dumps(data, indent=2))
    os.chmod(path, 0o600)
    return path


def load_identity(path: Union[str, Path]) -> Identity:
    """
    Load an identity written by save_identity.

    Raises:
        MalformedKey: if the stored keys are inconsistent
    """
    data = json.loads(Path(path).read_text())
    public_key = hex_to_bytes(data["public_key"])
    private_key = hex_to_bytes(data["private_key"]) if data.get("private_key") else None

    if private_key is not None and private_key_to_public_key(private_key) != public_key:
        raise MalformedKey(f"key file {path} holds a private key that does not match its public key")

    derive_identity(public_key)
    return Identity(public_key=public_key, private_key=private_key)
