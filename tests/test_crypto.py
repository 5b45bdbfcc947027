"""
Shade - Cryptography tests.

Tests for identity keys, per-contact key derivation, the payload cipher and
private-key escrow.
"""

import base64
import json

import pytest

from shade import crypto
from shade.errors import CryptoError, DecryptionError, KeyDerivationError


def test_identity_keys_are_p256_jwk(alice_keys):
    """Test that generated keys export as P-256 JWKs."""
    public_jwk, private_jwk = alice_keys

    assert public_jwk["kty"] == "EC"
    assert public_jwk["crv"] == "P-256"
    assert "d" not in public_jwk
    assert private_jwk["x"] == public_jwk["x"]
    assert private_jwk["y"] == public_jwk["y"]
    assert len(crypto._b64url_decode(private_jwk["d"])) == 32


def test_keypair_serialization():
    """Test keypair round trip through its storage dictionary."""
    original = crypto.IdentityKeyPair()
    restored = crypto.IdentityKeyPair.from_dict(original.to_dict())

    assert restored.public_jwk() == original.public_jwk()
    assert restored.private_jwk() == original.private_jwk()


def test_shared_key_is_symmetric(alice_keys, bob_keys):
    """Both sides of a pair derive the same 256-bit key."""
    alice_key = crypto.derive_shared_key(alice_keys[1], bob_keys[0])
    bob_key = crypto.derive_shared_key(bob_keys[1], alice_keys[0])

    assert alice_key is not None
    assert len(alice_key) == 32
    assert alice_key == bob_key


def test_shared_key_accepts_json_strings(alice_keys, bob_keys):
    """Keys stored as JSON text (as the account store keeps them) work too."""
    key_from_dicts = crypto.derive_shared_key(alice_keys[1], bob_keys[0])
    key_from_json = crypto.derive_shared_key(json.dumps(alice_keys[1]), json.dumps(bob_keys[0]))

    assert key_from_json == key_from_dicts


def test_different_pairs_get_different_keys(alice_keys, bob_keys):
    carol_public, _ = crypto.generate_identity_keys()

    assert crypto.derive_shared_key(alice_keys[1], bob_keys[0]) != crypto.derive_shared_key(
        alice_keys[1], carol_public
    )


@pytest.mark.parametrize(
    "their_public",
    [
        None,
        "",
        "not json",
        {"kty": "OKP", "crv": "X25519", "x": "AAAA"},
        {"kty": "EC", "crv": "P-384", "x": "AAAA", "y": "AAAA"},
        {"kty": "EC", "crv": "P-256", "x": "AAAA", "y": "AAAA"},
        {"kty": "EC", "crv": "P-256"},
    ],
)
def test_malformed_public_key_yields_none(alice_keys, their_public):
    """Missing, malformed or foreign-curve keys never raise from derive_shared_key."""
    assert crypto.derive_shared_key(alice_keys[1], their_public) is None


def test_missing_private_key_yields_none(bob_keys):
    assert crypto.derive_shared_key(None, bob_keys[0]) is None


def test_require_shared_key_raises(alice_keys):
    with pytest.raises(KeyDerivationError):
        crypto.require_shared_key(alice_keys[1], {"kty": "EC", "crv": "P-256"})


class TestSharedKeyCache:
    """Tests for the per-pair key cache."""

    def test_derives_once(self, alice_keys, bob_keys, monkeypatch):
        cache = crypto.SharedKeyCache()
        calls = []
        real_derive = crypto.derive_shared_key

        def counting_derive(*args):
            calls.append(args)
            return real_derive(*args)

        monkeypatch.setattr(crypto, "derive_shared_key", counting_derive)

        first = cache.get_or_derive("alice", "bob", alice_keys[1], bob_keys[0])
        second = cache.get_or_derive("alice", "bob", alice_keys[1], bob_keys[0])

        assert first == second
        assert len(calls) == 1
        assert ("alice", "bob") in cache
        assert len(cache) == 1

    def test_pending_key_is_not_cached(self, alice_keys, bob_keys):
        """A pair without key material stays pending and is retried later."""
        cache = crypto.SharedKeyCache()

        assert cache.get_or_derive("alice", "bob", alice_keys[1], None) is None
        assert ("alice", "bob") not in cache

        key = cache.get_or_derive("alice", "bob", alice_keys[1], bob_keys[0])
        assert key is not None
        assert cache.get("alice", "bob") == key


class TestPayloadCipher:
    """Tests for the AES-256-GCM envelope."""

    def test_round_trip(self, alice_keys, bob_keys):
        key = crypto.derive_shared_key(alice_keys[1], bob_keys[0])
        envelope = crypto.encrypt_payload(key, "hi")

        assert crypto.decrypt_payload(key, envelope) == "hi"

    def test_round_trip_unicode_and_empty(self):
        key = bytes(range(32))

        assert crypto.decrypt_payload(key, crypto.encrypt_payload(key, "")) == ""
        assert crypto.decrypt_payload(key, crypto.encrypt_payload(key, "héllo ✓")) == "héllo ✓"

    def test_envelope_layout(self):
        """Envelope is base64(nonce || ciphertext || tag)."""
        key = bytes(32)
        envelope = crypto.encrypt_payload(key, "abc")
        raw = base64.b64decode(envelope)

        assert len(raw) == 12 + 3 + 16

    def test_fresh_nonce_per_encryption(self):
        key = bytes(32)
        first = crypto.encrypt_payload(key, "same text")
        second = crypto.encrypt_payload(key, "same text")

        assert first != second
        assert base64.b64decode(first)[:12] != base64.b64decode(second)[:12]

    def test_wrong_key_fails_authentication(self, alice_keys, bob_keys):
        key = crypto.derive_shared_key(alice_keys[1], bob_keys[0])
        carol_public, _ = crypto.generate_identity_keys()
        other_key = crypto.derive_shared_key(alice_keys[1], carol_public)

        envelope = crypto.encrypt_payload(key, "secret")
        with pytest.raises(DecryptionError):
            crypto.decrypt_payload(other_key, envelope)

    def test_tampered_envelope_fails(self):
        key = bytes(32)
        raw = bytearray(base64.b64decode(crypto.encrypt_payload(key, "secret")))
        raw[-1] ^= 0x01

        with pytest.raises(DecryptionError):
            crypto.decrypt_payload(key, base64.b64encode(bytes(raw)).decode())

    @pytest.mark.parametrize("envelope", ["", "%%%", base64.b64encode(b"short").decode()])
    def test_malformed_envelope(self, envelope):
        with pytest.raises(DecryptionError):
            crypto.decrypt_payload(bytes(32), envelope)

    def test_decryption_error_is_not_key_error(self):
        """Authentication failure and missing keys are different failures."""
        assert not issubclass(DecryptionError, KeyDerivationError)
        assert not issubclass(KeyDerivationError, DecryptionError)

    def test_bad_key_length(self):
        with pytest.raises(CryptoError):
            crypto.encrypt_payload(b"short", "text")


class TestEscrow:
    """Tests for sealing a private key under a password."""

    def test_seal_and_open(self, alice_keys):
        sealed = crypto.seal_private_key(alice_keys[1], "correct horse")

        assert alice_keys[1]["d"] not in json.dumps(sealed)
        assert crypto.open_private_key(sealed, "correct horse") == alice_keys[1]

    def test_wrong_password(self, alice_keys):
        sealed = crypto.seal_private_key(alice_keys[1], "correct horse")

        with pytest.raises(CryptoError):
            crypto.open_private_key(sealed, "battery staple")

    def test_unique_salt_per_seal(self, alice_keys):
        first = crypto.seal_private_key(alice_keys[1], "pw")
        second = crypto.seal_private_key(alice_keys[1], "pw")

        assert first["salt"] != second["salt"]
        assert first["ciphertext"] != second["ciphertext"]

    def test_malformed_blob(self):
        with pytest.raises(CryptoError):
            crypto.open_private_key({"salt": "AAAA"}, "pw")
