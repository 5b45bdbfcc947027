"""
Shade - Local identity key store.

Keeps the user's identity key pair on disk so the private key never has to
leave the device. The file can optionally be sealed under a password with
the same Argon2id + AES-GCM scheme used for server-side escrow.

Writes go to a temporary file first and are renamed into place.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles

from .constants import KEYSTORE_FILENAME
from .crypto import JWK, open_private_key, seal_private_key
from .errors import CryptoError, ErrorCode

logger = logging.getLogger(__name__)


class StoredIdentity:
    """An account's identity keys as kept on this device."""

    def __init__(self, user_id: str, username: str, public_jwk: JWK, private_jwk: JWK):
        self.user_id = user_id
        self.username = username
        self.public_jwk = public_jwk
        self.private_jwk = private_jwk

    def __repr__(self) -> str:
        return f"StoredIdentity(user_id={self.user_id}, username={self.username})"


class KeyStore:
    """Reads and writes the identity file in a data directory."""

    def __init__(self, data_dir: Union[str, Path], filename: str = KEYSTORE_FILENAME):
        self.data_dir = Path(data_dir).expanduser()
        self.path = self.data_dir / filename

    def exists(self) -> bool:
        return self.path.exists()

    def _serialize(self, identity: StoredIdentity, password: Optional[str]) -> str:
        data: Dict[str, Any] = {
            "userId": identity.user_id,
            "username": identity.username,
            "publicKey": identity.public_jwk,
        }
        if password:
            data["sealedPrivateKey"] = seal_private_key(identity.private_jwk, password)
        else:
            data["privateKey"] = identity.private_jwk
        return json.dumps(data, indent=2)

    def _deserialize(self, text: str, password: Optional[str]) -> StoredIdentity:
        try:
            data = json.loads(text)
            if "sealedPrivateKey" in data:
                if not password:
                    raise CryptoError(
                        ErrorCode.E103_INVALID_KEY, "Key store is sealed; a password is required"
                    )
                private_jwk = open_private_key(data["sealedPrivateKey"], password)
            else:
                private_jwk = data["privateKey"]
            return StoredIdentity(data["userId"], data["username"], data["publicKey"], private_jwk)
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY, f"Corrupted key store: {e}", {"path": str(self.path)}
            ) from e

    async def save_async(self, identity: StoredIdentity, password: Optional[str] = None) -> None:
        """
        Write the identity file atomically.

        Args:
            identity: Keys to store
            password: Seal the private key under this password when given

        Raises:
            OSError: If the file cannot be written
        """
        json_data = self._serialize(identity, password)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        temp_file = f"{self.path}.tmp"

        try:
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(json_data)
            os.chmod(temp_file, 0o600)

            # Atomic rename
            os.replace(temp_file, self.path)
            logger.info(f"Identity saved: {identity.username}")
        except OSError as e:
            logger.error(f"Failed to save identity: {e}", exc_info=True)
            raise OSError(f"Cannot save identity: {e}") from e

    async def load_async(self, password: Optional[str] = None) -> Optional[StoredIdentity]:
        """
        Read the identity file.

        Returns:
            The stored identity, or None when there is no file yet

        Raises:
            CryptoError: If the file is corrupted or the password is wrong
        """
        if not self.path.exists():
            return None

        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            text = await f.read()
        return self._deserialize(text, password)

    def load(self, password: Optional[str] = None) -> Optional[StoredIdentity]:
        """Synchronous variant of load_async()."""
        if not self.path.exists():
            return None

        with open(self.path, encoding="utf-8") as f:
            return self._deserialize(f.read(), password)

    def delete(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Identity file removed: {self.path}")
