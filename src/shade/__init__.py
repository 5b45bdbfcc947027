"""
Shade - Ephemeral End-to-End Encrypted Messaging

A relay for direct messages that expire after 48 hours unless saved,
with presence-aware delivery and peer-to-peer call signaling. Message
payloads are encrypted on the clients; the relay only ever stores
ciphertext.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    AccountError,
    CallError,
    CallTargetOffline,
    ConfigError,
    CryptoError,
    DecryptionError,
    ErrorCode,
    KeyDerivationError,
    PersistenceFailure,
    ProtocolError,
    ServerError,
    ShadeError,
)
from .message import Message

__all__ = [
    "APP_NAME",
    "VERSION",
    "AccountError",
    "CallError",
    "CallTargetOffline",
    "Config",
    "ConfigError",
    "CryptoError",
    "DecryptionError",
    "ErrorCode",
    "KeyDerivationError",
    "Message",
    "PersistenceFailure",
    "ProtocolError",
    "ServerError",
    "ShadeError",
    "__license__",
    "__version__",
]
