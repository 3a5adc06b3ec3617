"""
Error taxonomy for the direct-message protocol.

Every failure surfaced by the client and server flows is a subclass of
DirectMessageError and carries a human-readable ``reason``.
"""

from typing import Optional


class DirectMessageError(Exception):
    """Base class for all direct-message failures."""

    def __init__(self, reason: str = ""):
        super().__init__(reason or self.__class__.__name__)
        self.reason = reason or self.__class__.__name__


class EmptyMessage(DirectMessageError):
    """Raised when asked to send an empty message."""


class NoPrivateKey(DirectMessageError):
    """Raised when the local identity cannot sign."""


class MalformedKey(DirectMessageError):
    """Raised when public key bytes do not parse as a secp256k1 point."""


class DialTimeout(DirectMessageError):
    """Raised when a dial does not complete within the dial bound."""


class ConnectionUpgradeTimeout(DirectMessageError):
    """Raised when a transient connection never becomes open."""


class MalformedEnvelope(DirectMessageError):
    """Raised when an envelope cannot be decoded or misses required fields."""


class VerificationFailed(DirectMessageError):
    """Raised when a signature or identity claim does not check out."""


class RemoteRejected(DirectMessageError):
    """Raised when the remote peer answered with a non-OK status."""

    def __init__(self, status: int, status_text: Optional[str] = None):
        label = getattr(status, "name", str(status))
        reason = f"remote rejected with status {label}"
        if status_text:
            reason = f"{reason}: {status_text}"
        super().__init__(reason)
        self.status = status
        self.status_text = status_text


class StreamIOFailure(DirectMessageError):
    """Raised when reading from or writing to a stream fails."""
