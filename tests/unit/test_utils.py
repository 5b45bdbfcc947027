"""
Unit tests for shade.utils module.

Tests utility functions for formatting, validation, and helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from shade.constants import FRIEND_CODE_ALPHABET, FRIEND_CODE_LENGTH
from shade.utils import (
    generate_friend_code,
    normalize_friend_code,
    pair_key,
    parse_timestamp,
    truncate_string,
    validate_username,
)


class TestUsernameValidation:
    """Test username validation."""

    def test_valid_usernames(self):
        """Test that valid usernames are accepted."""
        assert validate_username("alice") is True
        assert validate_username("bob_99") is True
        assert validate_username("j.doe-2") is True
        assert validate_username("x" * 32) is True

    def test_invalid_usernames(self):
        """Test that invalid usernames are rejected."""
        assert validate_username("") is False
        assert validate_username("ab") is False
        assert validate_username("x" * 33) is False
        assert validate_username("white space") is False
        assert validate_username("<script>") is False
        assert validate_username(None) is False


class TestFriendCodes:
    """Test friend code generation and normalization."""

    def test_generated_code_shape(self):
        code = generate_friend_code()

        assert len(code) == FRIEND_CODE_LENGTH
        assert all(c in FRIEND_CODE_ALPHABET for c in code)

    def test_codes_are_random(self):
        codes = {generate_friend_code() for _ in range(50)}
        assert len(codes) > 45

    def test_normalize(self):
        assert normalize_friend_code("abcd-efgh") == "ABCDEFGH"
        assert normalize_friend_code(" ab cd ef gh ") == "ABCDEFGH"
        assert normalize_friend_code("") == ""
        assert normalize_friend_code(None) == ""


class TestTimestamps:
    """Test ISO timestamp parsing."""

    def test_javascript_style(self):
        parsed = parse_timestamp("2025-01-01T12:00:00.000Z")
        assert parsed == datetime(2025, 1, 1, 12, tzinfo=timezone.utc)

    def test_offset_is_converted_to_utc(self):
        parsed = parse_timestamp("2025-01-01T14:00:00+02:00")
        assert parsed == datetime(2025, 1, 1, 12, tzinfo=timezone.utc)
        assert parsed.utcoffset() == timedelta(0)

    def test_naive_is_utc(self):
        assert parse_timestamp("2025-01-01T12:00:00").tzinfo is not None

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


class TestPairKey:
    def test_order_independent(self):
        assert pair_key("bob", "alice") == pair_key("alice", "bob") == ("alice", "bob")

    def test_self_pair(self):
        assert pair_key("alice", "alice") == ("alice", "alice")


class TestStringTruncation:
    """Test string truncation."""

    def test_short_string_unchanged(self):
        """Test that short strings are not truncated."""
        assert truncate_string("hello", 10) == "hello"

    def test_long_string_truncated(self):
        """Test that long strings are truncated with suffix."""
        result = truncate_string("hello world this is long", 10)
        assert len(result) == 10
        assert result.endswith("...")
