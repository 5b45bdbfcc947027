"""
Shade - Global Constants and Configuration Values

This module defines all constants used throughout the Shade relay and client.
All magic numbers and configuration defaults are centralized here.

Author: Shade contributors
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Shade"

# Network Constants
DEFAULT_SERVER_PORT = 3000
DEFAULT_HOST = "0.0.0.0"
LOCALHOST = "127.0.0.1"

# Connection Timeouts (seconds)
CONNECTION_TIMEOUT = 5.0
REQUEST_TIMEOUT = 30.0
READ_TIMEOUT = 60.0

# Message Limits
MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10 MB, images travel inline
MAX_USERNAME_LENGTH = 32
MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6
STREAM_READ_CHUNK = 65536

# Message Lifecycle
MESSAGE_TTL_HOURS = 48
EXPIRY_SWEEP_INTERVAL = 60  # seconds
MESSAGE_TYPE_TEXT = "text"
MESSAGE_TYPE_IMAGE = "image"
MESSAGE_TYPES = (MESSAGE_TYPE_TEXT, MESSAGE_TYPE_IMAGE)
DISPLAY_TIME_FORMAT = "%H:%M"

# Cryptography Constants
ECDH_CURVE_NAME = "P-256"
AES_KEY_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits for AES-GCM
GCM_TAG_SIZE = 16
SALT_SIZE = 16  # 128 bits
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1

# Friend Codes
FRIEND_CODE_LENGTH = 8
FRIEND_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I

# Call Signaling
CALL_FAILED_OFFLINE = "offline"
CALL_HISTORY_SIZE = 50

# File Paths
DEFAULT_DATA_DIR = "~/.shade"
CONFIG_FILENAME = "config.toml"
DATABASE_FILENAME = "shade.db"
KEYSTORE_FILENAME = "identity.json"

# Logging Configuration
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
