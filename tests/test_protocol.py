"""
Shade - Wire protocol tests.
"""

import pytest

from shade.errors import ErrorCode, ProtocolError
from shade.protocol import (
    MESSAGE_TYPE_EVENT,
    MESSAGE_TYPE_RESPONSE,
    Command,
    Event,
    decode_line,
    encode_line,
    make_event,
    make_request,
    make_response,
)


def test_encode_is_one_line():
    data = encode_line(make_request(Command.SEND_MESSAGE, {"payload": "a\nb"}, "r1"))

    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    assert decode_line(data.rstrip(b"\n"))["params"]["payload"] == "a\nb"


def test_encode_size_limit():
    with pytest.raises(ProtocolError) as exc_info:
        encode_line({"payload": "x" * 100}, max_size=50)
    assert exc_info.value.code == ErrorCode.E207_MESSAGE_TOO_LARGE

    assert encode_line({"payload": "x" * 100}, max_size=None)


@pytest.mark.parametrize("line", [b"not json", b"[1, 2]", b"\xff\xfe", b'"text"'])
def test_decode_rejects_non_objects(line):
    with pytest.raises(ProtocolError) as exc_info:
        decode_line(line)
    assert exc_info.value.code == ErrorCode.E206_INVALID_MESSAGE


def test_response_shape():
    response = make_response("r1", {"success": True, "pong": True})

    assert response == {
        "type": MESSAGE_TYPE_RESPONSE,
        "request_id": "r1",
        "success": True,
        "pong": True,
    }


def test_event_shape():
    event = make_event(Event.CALL_ENDED, **{"from": "alice"})

    assert event == {"type": MESSAGE_TYPE_EVENT, "data": {"event": "callEnded", "from": "alice"}}


def test_names_match_browser_clients():
    assert Command.CONNECT == "addNewUser"
    assert Event.ONLINE_USERS == "getOnlineUsers"
    assert Event.MESSAGE == "getMessage"
    assert Event.INCOMING_CALL == Command.CALL_USER == "callUser"
