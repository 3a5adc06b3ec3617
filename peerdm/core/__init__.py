"""
peerdm Core - Configuration, identity and error taxonomy.
"""

from peerdm.core.config import (
    CLIENT_VERSION,
    DIRECT_MESSAGE_PROTOCOL,
    NodeConfig,
    load_config,
)
from peerdm.core.errors import (
    ConnectionUpgradeTimeout,
    DialTimeout,
    DirectMessageError,
    EmptyMessage,
    MalformedEnvelope,
    MalformedKey,
    NoPrivateKey,
    RemoteRejected,
    StreamIOFailure,
    VerificationFailed,
)
from peerdm.core.identity import (
    Identity,
    derive_identity,
    load_identity,
    save_identity,
    verify_signature,
)

__all__ = [
    # Config
    "CLIENT_VERSION",
    "DIRECT_MESSAGE_PROTOCOL",
    "NodeConfig",
    "load_config",
    # Errors
    "DirectMessageError",
    "EmptyMessage",
    "NoPrivateKey",
    "MalformedKey",
    "DialTimeout",
    "ConnectionUpgradeTimeout",
    "MalformedEnvelope",
    "VerificationFailed",
    "RemoteRejected",
    "StreamIOFailure",
    # Identity
    "Identity",
    "derive_identity",
    "verify_signature",
    "load_identity",
    "save_identity",
]
