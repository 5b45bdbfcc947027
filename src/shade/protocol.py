"""
Shade - Wire protocol between relay clients and the relay server.

Newline-delimited UTF-8 JSON over TCP.

Request:   {"command": str, "params": {...}, "request_id": str}
Response:  {"type": "response", "request_id": str, "success": bool, ...}
Event:     {"type": "event", "data": {"event": str, ...}}

Event and command names match the socket events of the browser clients so a
bridge can forward them unchanged.
"""

import json
import logging
from typing import Any, Dict, Optional

from .constants import MAX_MESSAGE_SIZE
from .errors import ErrorCode, ProtocolError

logger = logging.getLogger(__name__)

MESSAGE_TYPE_RESPONSE = "response"
MESSAGE_TYPE_EVENT = "event"


class Command:
    """Command names accepted by the relay server."""

    PING = "ping"

    # Accounts
    REGISTER = "register"
    LOGIN = "login"
    GET_USERS = "getUsers"
    GET_CONTACTS = "getContacts"
    ADD_CONTACT = "addContact"

    # Presence
    CONNECT = "addNewUser"

    # Messaging
    GET_MESSAGES = "getMessages"
    SEND_MESSAGE = "sendMessage"
    TOGGLE_SAVE = "toggleSave"
    DELETE_MESSAGES = "deleteMessages"
    NUKE_CHAT = "nukeChat"

    # Call signaling
    CALL_USER = "callUser"
    ANSWER_CALL = "answerCall"
    END_CALL = "endCall"


class Event:
    """Event names pushed by the relay server."""

    ONLINE_USERS = "getOnlineUsers"
    MESSAGE = "getMessage"
    MESSAGE_STORED = "messageStored"
    MESSAGE_SAVED = "messageSaved"
    MESSAGES_DELETED = "messagesDeleted"
    CHAT_NUKED = "chatNuked"
    INCOMING_CALL = "callUser"
    CALL_ACCEPTED = "callAccepted"
    CALL_ENDED = "callEnded"
    CALL_FAILED = "callFailed"


def encode_line(obj: Dict[str, Any], max_size: Optional[int] = MAX_MESSAGE_SIZE) -> bytes:
    """
    Serialize one frame.

    Args:
        obj: Frame to encode
        max_size: Size limit in bytes, or None for no limit

    Raises:
        ProtocolError: If the encoded frame exceeds max_size
    """
    data = (json.dumps(obj, separators=(",", ":")) + "\n").encode("utf-8")
    if max_size is not None and len(data) > max_size:
        raise ProtocolError(
            ErrorCode.E207_MESSAGE_TOO_LARGE,
            f"Frame too large: {len(data)} bytes",
            {"size": len(data), "max": max_size},
        )
    return data


def decode_line(line: bytes) -> Dict[str, Any]:
    """
    Parse one frame (without its trailing newline).

    Raises:
        ProtocolError: If the line is not a JSON object
    """
    try:
        obj = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, f"Invalid JSON: {e}") from e

    if not isinstance(obj, dict):
        raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Frame must be a JSON object")
    return obj


def make_request(command: str, params: Dict[str, Any], request_id: str) -> Dict[str, Any]:
    return {"command": command, "params": params, "request_id": request_id}


def make_response(request_id: Optional[str], result: Dict[str, Any]) -> Dict[str, Any]:
    response = {"type": MESSAGE_TYPE_RESPONSE, "request_id": request_id}
    response.update(result)
    return response


def make_event(name: str, **fields: Any) -> Dict[str, Any]:
    data = {"event": name}
    data.update(fields)
    return {"type": MESSAGE_TYPE_EVENT, "data": data}
