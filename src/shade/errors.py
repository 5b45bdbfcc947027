"""
Shade - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
Shade. Each error has a unique code for logging and for the wire protocol,
where a failed command answers with ``error.to_dict()``.

Author: Shade contributors
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Shade error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E005_OPERATION_FAILED = "E005"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E108_KEY_DERIVATION_FAILED = "E108"

    # Protocol Errors (E200-E299)
    E200_PROTOCOL_ERROR = "E200"
    E206_INVALID_MESSAGE = "E206"
    E207_MESSAGE_TOO_LARGE = "E207"
    E210_NOT_AUTHENTICATED = "E210"

    # Account Errors (E300-E499)
    E300_ACCOUNT_ERROR = "E300"
    E302_ACCOUNT_ALREADY_EXISTS = "E302"
    E305_INVALID_ACCOUNT = "E305"
    E306_INVALID_CREDENTIALS = "E306"
    E401_CONTACT_NOT_FOUND = "E401"
    E409_SELF_ADD = "E409"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"

    # Server / Storage Errors (E800-E899)
    E800_SERVER_ERROR = "E800"
    E801_SERVER_START_FAILED = "E801"
    E804_INVALID_COMMAND = "E804"
    E805_PERSISTENCE_FAILED = "E805"

    # Call Errors (E900-E999)
    E900_CALL_ERROR = "E900"
    E902_CALL_TARGET_OFFLINE = "E902"
    E903_INVALID_CALL_TRANSITION = "E903"


class ShadeError(Exception):
    """Base exception class for all Shade errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(ShadeError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyDerivationError(CryptoError):
    """Raised when a shared key cannot be derived from the given key material.

    The pairing stays undecryptable until the keys are fixed. This is a
    different state from a key that simply has not been fetched yet.
    """

    def __init__(
        self,
        message: str = "Shared key derivation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E108_KEY_DERIVATION_FAILED, message, details)


class DecryptionError(CryptoError):
    """Raised when an envelope fails AES-GCM authentication.

    Wrong key, tampered ciphertext and a malformed envelope all end up here.
    """

    def __init__(
        self,
        message: str = "Payload failed authentication",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E102_DECRYPTION_FAILED, message, details)


class ProtocolError(ShadeError):
    """Exception raised for malformed or oversized wire messages."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_PROTOCOL_ERROR,
        message: str = "Protocol violation",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class AccountError(ShadeError):
    """Exception raised by the account store.

    Covers registration conflicts, bad credentials and the add-contact
    failures (friend code not found, adding yourself).
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_ACCOUNT_ERROR,
        message: str = "Account operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(ShadeError):
    """Exception raised for configuration failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ServerError(ShadeError):
    """Exception raised for relay server failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E800_SERVER_ERROR,
        message: str = "Server operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class PersistenceFailure(ServerError):
    """Raised when the message store is unavailable.

    The operation is aborted; for a send the message is not considered sent
    and the caller must retry.
    """

    def __init__(
        self,
        message: str = "Message store unavailable",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E805_PERSISTENCE_FAILED, message, details)


class CallError(ShadeError):
    """Exception raised for call signaling failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E900_CALL_ERROR,
        message: str = "Call signaling failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class CallTargetOffline(CallError):
    """Raised when the callee holds no live connection. Fails fast, no retry."""

    def __init__(self, callee: str):
        super().__init__(
            ErrorCode.E902_CALL_TARGET_OFFLINE,
            f"Call target is offline: {callee}",
            {"callee": callee, "reason": "offline"},
        )
        self.callee = callee
