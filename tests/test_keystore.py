"""
Shade - Local identity key store tests.
"""

import json
import os
import stat

import pytest

from shade.errors import CryptoError
from shade.keystore import KeyStore, StoredIdentity


@pytest.fixture
def identity(alice_keys):
    return StoredIdentity("user-1", "alice", alice_keys[0], alice_keys[1])


@pytest.mark.asyncio
class TestKeyStore:
    """Tests for reading and writing the identity file."""

    async def test_missing_file(self, temp_dir):
        store = KeyStore(temp_dir)

        assert not store.exists()
        assert await store.load_async() is None
        assert store.load() is None

    async def test_plain_round_trip(self, temp_dir, identity):
        store = KeyStore(temp_dir)
        await store.save_async(identity)

        loaded = await store.load_async()

        assert loaded.user_id == "user-1"
        assert loaded.username == "alice"
        assert loaded.private_jwk == identity.private_jwk
        assert store.load().public_jwk == identity.public_jwk

    async def test_file_is_private(self, temp_dir, identity):
        store = KeyStore(temp_dir)
        await store.save_async(identity)

        mode = stat.S_IMODE(os.stat(store.path).st_mode)
        assert mode == 0o600
        assert not os.path.exists(f"{store.path}.tmp")

    async def test_sealed_round_trip(self, temp_dir, identity):
        store = KeyStore(temp_dir)
        await store.save_async(identity, password="device-pw")

        on_disk = json.loads(store.path.read_text())
        assert "privateKey" not in on_disk
        assert "sealedPrivateKey" in on_disk

        loaded = await store.load_async(password="device-pw")
        assert loaded.private_jwk == identity.private_jwk

    async def test_sealed_requires_password(self, temp_dir, identity):
        store = KeyStore(temp_dir)
        await store.save_async(identity, password="device-pw")

        with pytest.raises(CryptoError):
            await store.load_async()
        with pytest.raises(CryptoError):
            await store.load_async(password="wrong")

    async def test_corrupted_file(self, temp_dir):
        store = KeyStore(temp_dir)
        store.path.write_text("{not json")

        with pytest.raises(CryptoError):
            await store.load_async()

    async def test_overwrite_and_delete(self, temp_dir, identity, bob_keys):
        store = KeyStore(temp_dir)
        await store.save_async(identity)
        await store.save_async(StoredIdentity("user-2", "bob", bob_keys[0], bob_keys[1]))

        assert store.load().username == "bob"

        store.delete()
        assert not store.exists()
        store.delete()
