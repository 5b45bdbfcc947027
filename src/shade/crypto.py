"""
Shade - Key management and the authenticated-encryption message pipeline.

This module implements:
- P-256 ECDH identity keys exported as JWK (the interchange format the
  browser clients use)
- Per-contact AES-256-GCM key derivation with a process-lifetime cache
- Single-message encryption into a base64 ``nonce || ciphertext || tag``
  envelope
- Argon2id-sealed private-key escrow for cross-device recovery

The derived key is the raw 32-byte ECDH shared secret, which is exactly what
WebCrypto's ``deriveKey({name: "ECDH"}, ..., {name: "AES-GCM", length: 256})``
produces, so Python and browser peers agree on the key for a pair.

The per-pair key is static for the lifetime of the account keys. There is no
ratcheting and therefore no forward secrecy.

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, Optional, Tuple, Union

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    AES_KEY_SIZE,
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    ECDH_CURVE_NAME,
    GCM_TAG_SIZE,
    NONCE_SIZE,
    SALT_SIZE,
)
from .errors import CryptoError, DecryptionError, ErrorCode, KeyDerivationError

logger = logging.getLogger(__name__)

JWK = Dict[str, Any]
KeyInput = Union[JWK, str]

_COORDINATE_SIZE = 32  # bytes per P-256 coordinate


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _int_to_b64url(value: int) -> str:
    return _b64url_encode(value.to_bytes(_COORDINATE_SIZE, "big"))


def _b64url_to_int(text: str) -> int:
    return int.from_bytes(_b64url_decode(text), "big")


def _coerce_jwk(key: KeyInput) -> JWK:
    """Accept a JWK dict or its JSON serialization, as stored by the account store."""
    if isinstance(key, str):
        key = json.loads(key)
    if not isinstance(key, dict):
        raise ValueError("JWK must be an object")
    if key.get("kty") != "EC" or key.get("crv") != ECDH_CURVE_NAME:
        raise ValueError(f"Unsupported key type: {key.get('kty')}/{key.get('crv')}")
    return key


class IdentityKeyPair:
    """
    A user's ECDH identity key pair on the NIST P-256 curve.

    The public half is shared through the account store; the private half
    stays on the client (or is escrowed sealed under the account password).
    """

    def __init__(self, private_key: Optional[ec.EllipticCurvePrivateKey] = None):
        if private_key is None:
            private_key = ec.generate_private_key(ec.SECP256R1())
        self.private_key = private_key
        self.public_key = private_key.public_key()

    def public_jwk(self) -> JWK:
        """Export the public key as a JWK."""
        numbers = self.public_key.public_numbers()
        return {
            "kty": "EC",
            "crv": ECDH_CURVE_NAME,
            "x": _int_to_b64url(numbers.x),
            "y": _int_to_b64url(numbers.y),
            "ext": True,
        }

    def private_jwk(self) -> JWK:
        """Export the private key as a JWK (includes the public coordinates)."""
        jwk = self.public_jwk()
        jwk["d"] = _int_to_b64url(self.private_key.private_numbers().private_value)
        return jwk

    def to_dict(self) -> Dict[str, JWK]:
        """Export key pair to dictionary for storage."""
        return {"public": self.public_jwk(), "private": self.private_jwk()}

    @staticmethod
    def from_dict(data: Dict[str, JWK]) -> "IdentityKeyPair":
        """Import key pair from dictionary."""
        return IdentityKeyPair(load_private_key(data["private"]))


def load_public_key(key: KeyInput) -> ec.EllipticCurvePublicKey:
    """Import a P-256 public key from a JWK."""
    jwk = _coerce_jwk(key)
    numbers = ec.EllipticCurvePublicNumbers(
        _b64url_to_int(jwk["x"]), _b64url_to_int(jwk["y"]), ec.SECP256R1()
    )
    return numbers.public_key()


def load_private_key(key: KeyInput) -> ec.EllipticCurvePrivateKey:
    """Import a P-256 private key from a JWK."""
    jwk = _coerce_jwk(key)
    public_numbers = ec.EllipticCurvePublicNumbers(
        _b64url_to_int(jwk["x"]), _b64url_to_int(jwk["y"]), ec.SECP256R1()
    )
    numbers = ec.EllipticCurvePrivateNumbers(_b64url_to_int(jwk["d"]), public_numbers)
    return numbers.private_key()


def generate_identity_keys() -> Tuple[JWK, JWK]:
    """Generate a fresh identity key pair and return ``(public_jwk, private_jwk)``."""
    keypair = IdentityKeyPair()
    return keypair.public_jwk(), keypair.private_jwk()


def derive_shared_key(my_private: KeyInput, their_public: KeyInput) -> Optional[bytes]:
    """
    Derive the 256-bit AES-GCM key for a contact pair.

    Returns None when either key is missing, malformed, or on a different
    curve, so callers can show a pending/error state instead of crashing.
    """
    if not my_private or not their_public:
        return None

    try:
        private_key = load_private_key(my_private)
        public_key = load_public_key(their_public)
        shared_secret = private_key.exchange(ec.ECDH(), public_key)
    except (ValueError, KeyError, TypeError, binascii.Error) as e:
        logger.warning(f"Key derivation failed: {e}")
        return None

    return shared_secret[:AES_KEY_SIZE]


def require_shared_key(my_private: KeyInput, their_public: KeyInput) -> bytes:
    """Like derive_shared_key() but raises KeyDerivationError instead of returning None."""
    key = derive_shared_key(my_private, their_public)
    if key is None:
        raise KeyDerivationError("Missing or malformed key material for this pairing")
    return key


class SharedKeyCache:
    """
    Process-lifetime cache of derived keys.

    Keys are cached per (local identity, counterpart identity) and never
    recomputed once derived. A failed derivation is not cached, so the pair
    is retried when new key material arrives.
    """

    def __init__(self):
        self._keys: Dict[Tuple[str, str], bytes] = {}

    def get_or_derive(
        self,
        local_identity: str,
        counterpart: str,
        my_private: Optional[KeyInput],
        their_public: Optional[KeyInput],
    ) -> Optional[bytes]:
        """Return the cached key for the pair, deriving it on first use."""
        cache_key = (local_identity, counterpart)
        if cache_key in self._keys:
            return self._keys[cache_key]

        key = derive_shared_key(my_private, their_public)
        if key is not None:
            self._keys[cache_key] = key
            logger.debug(f"Derived shared key for {local_identity} <-> {counterpart}")
        return key

    def get(self, local_identity: str, counterpart: str) -> Optional[bytes]:
        return self._keys.get((local_identity, counterpart))

    def __contains__(self, pair: Tuple[str, str]) -> bool:
        return pair in self._keys

    def __len__(self) -> int:
        return len(self._keys)


def encrypt_payload(key: bytes, plaintext: str) -> str:
    """
    Encrypt one message payload with AES-256-GCM.

    A fresh random 96-bit nonce is drawn for every call. Envelopes must never
    be cached for re-encryption.

    Returns base64(nonce || ciphertext || tag).
    """
    if len(key) != AES_KEY_SIZE:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Key must be {AES_KEY_SIZE} bytes")

    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_payload(key: bytes, envelope: str) -> str:
    """
    Decrypt an envelope produced by encrypt_payload().

    Raises:
        DecryptionError: wrong key, tampered data, or malformed envelope
    """
    try:
        combined = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError(f"Envelope is not valid base64: {e}") from e

    if len(combined) < NONCE_SIZE + GCM_TAG_SIZE:
        raise DecryptionError("Envelope too short", {"length": len(combined)})

    nonce, ciphertext = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError) as e:
        raise DecryptionError() from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted payload is not UTF-8") from e


def _derive_escrow_key(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=AES_KEY_SIZE,
        type=Type.ID,
    )


def seal_private_key(private_jwk: JWK, password: str) -> Dict[str, str]:
    """
    Seal a private key under the account password for server-side escrow.

    Escrow trades confidentiality for recoverability: anyone who obtains the
    sealed blob can brute-force the password offline. Front-ends must tell
    the user before escrowing.

    Uses Argon2id (3 iterations, 64 MB) and AES-256-GCM with a unique salt
    and nonce per seal.
    """
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = _derive_escrow_key(password, salt)
    ciphertext = AESGCM(key).encrypt(nonce, json.dumps(private_jwk).encode("utf-8"), None)

    return {
        "salt": base64.b64encode(salt).decode("ascii"),
        "nonce": base64.b64encode(nonce).decode("ascii"),
        "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        "version": "1.0",
    }


def open_private_key(sealed: Dict[str, str], password: str) -> JWK:
    """
    Recover an escrowed private key.

    Raises CryptoError if the password is incorrect or the blob is corrupted.
    """
    try:
        salt = base64.b64decode(sealed["salt"])
        nonce = base64.b64decode(sealed["nonce"])
        ciphertext = base64.b64decode(sealed["ciphertext"])
    except (KeyError, binascii.Error, TypeError) as e:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Malformed escrow blob: {e}") from e

    key = _derive_escrow_key(password, salt)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Failed to open escrowed key. Incorrect password or corrupted blob.",
        ) from e

    return json.loads(plaintext.decode("utf-8"))
