"""
Shade - Message record.

Defines the persisted direct-message record and its wire representation.
Field names on the wire are bit-exact with the records the browser clients
already understand: id, senderId, recipientId, payload, type, time, isSaved,
createdAt, expireAt.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .constants import MESSAGE_TTL_HOURS, MESSAGE_TYPES
from .errors import ErrorCode, ProtocolError
from .utils import format_display_time, parse_timestamp

logger = logging.getLogger(__name__)


def compute_expire_at(created_at: datetime, ttl_hours: int = MESSAGE_TTL_HOURS) -> datetime:
    """Expiry of an unsaved message. Always anchored to the creation time."""
    return created_at + timedelta(hours=ttl_hours)


class Message:
    """Represents one persisted direct message."""

    def __init__(
        self,
        sender_id: str,
        recipient_id: str,
        payload: str,
        message_type: str = "text",
        time: Optional[str] = None,
        message_id: Optional[int] = None,
        is_saved: bool = False,
        created_at: Optional[datetime] = None,
        expire_at: Optional[datetime] = None,
        client_id: Optional[str] = None,
    ):
        self.message_id = message_id
        self.sender_id = sender_id
        self.recipient_id = recipient_id
        self.payload = payload
        self.message_type = message_type
        self.created_at = created_at or datetime.now(timezone.utc)
        self.time = time or format_display_time(self.created_at)
        self.is_saved = is_saved
        self.expire_at = expire_at
        self.client_id = client_id  # Provisional id from the sender, never persisted

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to its wire dictionary."""
        data = {
            "id": self.message_id,
            "senderId": self.sender_id,
            "recipientId": self.recipient_id,
            "payload": self.payload,
            "type": self.message_type,
            "time": self.time,
            "isSaved": self.is_saved,
            "createdAt": self.created_at.isoformat(),
            "expireAt": self.expire_at.isoformat() if self.expire_at else None,
        }
        if self.client_id is not None:
            data["clientId"] = self.client_id
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        """Create message from a wire dictionary."""
        created_at = parse_timestamp(data["createdAt"]) if data.get("createdAt") else None
        expire_at = parse_timestamp(data["expireAt"]) if data.get("expireAt") else None
        return Message(
            sender_id=data["senderId"],
            recipient_id=data["recipientId"],
            payload=data["payload"],
            message_type=data.get("type", "text"),
            time=data.get("time"),
            message_id=data.get("id"),
            is_saved=data.get("isSaved") is True,
            created_at=created_at,
            expire_at=expire_at,
            client_id=data.get("clientId"),
        )

    def involves(self, identity_a: str, identity_b: str) -> bool:
        """Check whether the message belongs to the conversation between a and b."""
        return {self.sender_id, self.recipient_id} == {identity_a, identity_b}

    def counterpart(self, identity: str) -> str:
        """Return the other party of the message, seen from ``identity``."""
        return self.recipient_id if self.sender_id == identity else self.sender_id

    def __repr__(self) -> str:
        return (
            f"Message(id={self.message_id}, {self.sender_id}->{self.recipient_id}, "
            f"type={self.message_type}, saved={self.is_saved})"
        )


def validate_outgoing(data: Dict[str, Any]) -> None:
    """
    Validate a sendMessage body before it reaches the store.

    Raises:
        ProtocolError: If a required field is missing, the type is unknown
            or time is not a string
    """
    for field in ("senderId", "recipientId", "payload"):
        value = data.get(field)
        if not isinstance(value, str) or not value:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Missing required field: {field}",
                {"field": field},
            )

    message_type = data.get("type", "text")
    if message_type not in MESSAGE_TYPES:
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE,
            f"Unknown message type: {message_type}",
            {"type": message_type},
        )

    sent_time = data.get("time")
    if sent_time is not None and not isinstance(sent_time, str):
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE,
            "time must be a string",
            {"field": "time"},
        )
