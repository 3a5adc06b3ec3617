"""
Cryptographic primitives for peerdm.

This module provides:
- Hashing functions (SHA-256, Keccak-256)
- Key generation and public key parsing
- Digital signatures (ECDSA on secp256k1)

Design Notes:
-------------
Peers are identified by secp256k1 keys. Signatures are raw 64-byte
(r || s) values over a 32-byte SHA-256 digest, normalized to low-s.
Node identities are derived Ethereum-style from the uncompressed public key.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1


# =============================================================================
# Constants
# =============================================================================

# secp256k1 curve order (number of points on the curve)
SECP256K1_ORDER = secp256k1.N

# secp256k1 field prime
SECP256K1_PRIME = secp256k1.P

PRIVATE_KEY_SIZE = 32
PUBLIC_KEY_SIZE = 64  # uncompressed, no 0x04 prefix
SIGNATURE_SIZE = 64


# =============================================================================
# Hashing
# =============================================================================


def sha256(data: bytes) -> bytes:
    """
    Compute SHA-256 hash.

    Used for: signature digests, handshake transcripts.
    """
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum-style).

    Used for: node identity derivation.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


# =============================================================================
# Key Generation
# =============================================================================


@dataclass(frozen=True)
class KeyPair:
    """
    An ECDSA keypair on secp256k1.

    Attributes:
        private_key: 32-byte secret key (integer in [1, order-1])
        public_key: 64-byte uncompressed public key (x || y coordinates)
    """
    private_key: bytes
    public_key: bytes


def generate_keypair() -> KeyPair:
    """
    Generate a new random keypair.

    Uses cryptographically secure random number generator.
    """
    private_key_int = secrets.randbelow(SECP256K1_ORDER - 1) + 1
    private_key = private_key_int.to_bytes(32, byteorder="big")
    return KeyPair(private_key=private_key, public_key=private_key_to_public_key(private_key))


def private_key_to_public_key(private_key: bytes) -> bytes:
    """
    Derive public key from private key.

    Args:
        private_key: 32-byte private key

    Returns:
        64-byte uncompressed public key
    """
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise ValueError("Private key must be 32 bytes")

    public_key_point = secp256k1.privtopub(private_key)
    x_bytes = public_key_point[0].to_bytes(32, byteorder="big")
    y_bytes = public_key_point[1].to_bytes(32, byteorder="big")
    return x_bytes + y_bytes


def parse_public_key(public_key: bytes) -> Optional[Tuple[int, int]]:
    """
    Parse a 64-byte public key into a curve point.

    Returns:
        (x, y) if the bytes encode a point on secp256k1, None otherwise
    """
    if not isinstance(public_key, (bytes, bytearray)) or len(public_key) != PUBLIC_KEY_SIZE:
        return None

    x = int.from_bytes(public_key[:32], byteorder="big")
    y = int.from_bytes(public_key[32:], byteorder="big")
    if x >= SECP256K1_PRIME or y >= SECP256K1_PRIME:
        return None

    # y^2 = x^3 + 7 (mod p)
    if (y * y - (x * x * x + 7)) % SECP256K1_PRIME != 0:
        return None
    return (x, y)


# =============================================================================
# Digital Signatures (ECDSA)
# =============================================================================


def sign(message_hash: bytes, private_key: bytes) -> bytes:
    """
    Sign a message hash using ECDSA on secp256k1.

    Args:
        message_hash: 32-byte hash of the message to sign
        private_key: 32-byte private key

    Returns:
        64-byte signature (r || s, each 32 bytes)

    Note: This is a deterministic signature (RFC 6979 style).
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise ValueError("Private key must be 32 bytes")

    # py_ecc.secp256k1.ecdsa_raw_sign returns (v, r, s)
    v, r, s = secp256k1.ecdsa_raw_sign(message_hash, private_key)

    # Normalize s to lower half of curve order (BIP 62 / EIP-2)
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s

    return r.to_bytes(32, byteorder="big") + s.to_bytes(32, byteorder="big")


def verify(message_hash: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Verify an ECDSA signature.

    Args:
        message_hash: 32-byte hash of the signed message
        signature: 64-byte signature (r || s)
        public_key: 64-byte public key (x || y)

    Returns:
        True if signature is valid, False otherwise
    """
    if len(message_hash) != 32:
        return False
    if len(signature) != SIGNATURE_SIZE:
        return False

    public_key_point = parse_public_key(public_key)
    if public_key_point is None:
        return False

    r = int.from_bytes(signature[:32], byteorder="big")
    s = int.from_bytes(signature[32:], byteorder="big")

    if r < 1 or r >= SECP256K1_ORDER:
        return False
    if s < 1 or s >= SECP256K1_ORDER:
        return False

    # Recover with both parities (Ethereum v convention) and compare
    for v in (27, 28):
        try:
            recovered = secp256k1.ecdsa_raw_recover(message_hash, (v, r, s))
        except (ValueError, ZeroDivisionError):
            continue
        if recovered and tuple(recovered) == public_key_point:
            return True

    return False


# =============================================================================
# Utility Functions
# =============================================================================


def bytes_to_hex(data: bytes) -> str:
    """Convert bytes to hex string with 0x prefix."""
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert hex string (with or without 0x prefix) to bytes."""
    if hex_str.startswith("0x") or hex_str.startswith("0X"):
        hex_str = hex_str[2:]
    return bytes.fromhex(hex_str)
