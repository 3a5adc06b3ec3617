"""
peerdm - Authenticated direct messages between peers.

A signed request/response protocol for delivering a single message to a
peer over a transient stream:
- Canonical binary envelopes with secp256k1 signatures
- Sender identity bound to the transport-authenticated peer
- Typed failures with abort-then-close stream teardown
"""

__version__ = "0.1.0"
