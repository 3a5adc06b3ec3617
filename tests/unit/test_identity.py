"""
Unit tests for the identity & signature service.

Tests cover:
1. Signing with and without a private key
2. Verification as a pure predicate
3. Node id derivation
4. Key file round trip
"""

import json

import pytest

from peerdm.core.errors import MalformedKey, NoPrivateKey
from peerdm.core.identity import (
    Identity,
    derive_identity,
    load_identity,
    save_identity,
    verify_signature,
)
from peerdm.crypto import keccak256


class TestSigning:
    """Tests for Identity.sign."""

    def test_sign_and_verify(self, alice):
        sig = alice.sign(b"payload")
        assert verify_signature(b"payload", sig, alice.public_key)

    def test_sign_without_private_key(self, alice):
        verify_only = Identity(public_key=alice.public_key)
        with pytest.raises(NoPrivateKey):
            verify_only.sign(b"payload")

    def test_sign_with_unusable_private_key(self, alice):
        broken = Identity(public_key=alice.public_key, private_key=bytes(32))
        assert not broken.can_sign
        with pytest.raises(NoPrivateKey):
            broken.sign(b"payload")

    def test_from_private_key_matches(self, alice):
        assert Identity.from_private_key(alice.private_key) == alice


class TestVerification:
    """verify_signature returns False on mismatch and only raises for bad keys."""

    def test_wrong_data(self, alice):
        assert not verify_signature(b"other", alice.sign(b"payload"), alice.public_key)

    def test_wrong_key(self, alice, bob):
        assert not verify_signature(b"payload", alice.sign(b"payload"), bob.public_key)

    def test_garbage_signature(self, alice):
        assert not verify_signature(b"payload", b"\x00" * 10, alice.public_key)

    def test_malformed_key_raises(self, alice):
        with pytest.raises(MalformedKey):
            verify_signature(b"payload", alice.sign(b"payload"), b"not a key")

    def test_identity_verify_defaults_to_own_key(self, alice, bob):
        sig = alice.sign(b"payload")
        assert alice.verify(b"payload", sig)
        assert not bob.verify(b"payload", sig)


class TestDeriveIdentity:
    """Tests for node id derivation."""

    def test_format(self, alice):
        node_id = derive_identity(alice.public_key)
        assert node_id.startswith("0x")
        assert len(node_id) == 42

    def test_matches_keccak_address(self, alice):
        assert alice.node_id == "0x" + keccak256(alice.public_key)[-20:].hex()

    def test_deterministic(self, alice):
        assert derive_identity(alice.public_key) == derive_identity(bytes(alice.public_key))

    def test_distinct_keys_distinct_ids(self, alice, bob):
        assert alice.node_id != bob.node_id

    def test_malformed_key(self):
        with pytest.raises(MalformedKey):
            derive_identity(b"\x01" * 64)


class TestKeyStore:
    """Tests for save_identity / load_identity."""

    def test_round_trip(self, alice, tmp_path):
        path = save_identity(alice, tmp_path / "keys" / "alice.json")
        assert load_identity(path) == alice

    def test_file_contents(self, alice, tmp_path):
        path = save_identity(alice, tmp_path / "alice.json")
        data = json.loads(path.read_text())
        assert data["node_id"] == alice.node_id
        assert data["public_key"] == alice.public_key.hex()

    def test_public_only_round_trip(self, alice, tmp_path):
        path = save_identity(Identity(public_key=alice.public_key), tmp_path / "pub.json")
        loaded = load_identity(path)
        assert loaded.private_key is None
        assert not loaded.can_sign

    def test_mismatched_keys_rejected(self, alice, bob, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({
            "public_key": alice.public_key.hex(),
            "private_key": bob.private_key.hex(),
        }))
        with pytest.raises(MalformedKey):
            load_identity(path)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
