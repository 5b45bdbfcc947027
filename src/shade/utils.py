"""
Shade - Utility functions.

Provides formatting, validation and small helpers shared by the relay
server, the account store and the client.
"""

import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Tuple

from .constants import (
    DISPLAY_TIME_FORMAT,
    FRIEND_CODE_ALPHABET,
    FRIEND_CODE_LENGTH,
    MAX_USERNAME_LENGTH,
    MIN_USERNAME_LENGTH,
)

logger = logging.getLogger(__name__)

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(iso_timestamp: str) -> datetime:
    """
    Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z`` as produced by JavaScript clients. Naive values
    are assumed to be UTC.

    Raises:
        ValueError: If the string is not a valid timestamp
    """
    dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_display_time(dt: datetime, format_str: str = DISPLAY_TIME_FORMAT) -> str:
    """Format the short human-readable time shown next to a message."""
    return dt.astimezone().strftime(format_str)


def validate_username(username: str) -> bool:
    """
    Validate a username.

    Usernames are 3-32 characters of letters, digits, dot, dash or underscore.
    """
    if not isinstance(username, str):
        return False
    if not MIN_USERNAME_LENGTH <= len(username) <= MAX_USERNAME_LENGTH:
        return False
    return bool(_USERNAME_PATTERN.match(username))


def generate_friend_code() -> str:
    """Generate a random human-shareable friend code."""
    return "".join(secrets.choice(FRIEND_CODE_ALPHABET) for _ in range(FRIEND_CODE_LENGTH))


def normalize_friend_code(code: str) -> str:
    """Normalize user-typed friend codes (case, spaces and dashes)."""
    return re.sub(r"[\s-]", "", code or "").upper()


def pair_key(identity_a: str, identity_b: str) -> Tuple[str, str]:
    """Order-independent key for a conversation between two identities."""
    return (identity_a, identity_b) if identity_a <= identity_b else (identity_b, identity_a)


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length."""
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix
