import json

import pytest

from titanlink import messages
from titanlink.messages import (
    CreateSession,
    JoinSession,
    LeaveSession,
    MessageError,
    Signal,
    encode_message,
    parse_message,
)


def test_parse_create_session():
    msg = parse_message('{"type":"create-session","sessionCode":"ABC123","hostId":"h1"}')
    assert msg == CreateSession("ABC123", "h1")


def test_parse_join_session_from_bytes():
    msg = parse_message(b'{"type":"join-session","sessionCode":"ABC123","clientId":"c1"}')
    assert msg == JoinSession("ABC123", "c1")


def test_parse_signal_with_and_without_target():
    payload = {"type": "offer", "sdp": "v=0"}
    msg = parse_message(json.dumps({"type": "signal", "sessionCode": "S", "payload": payload, "to": "h1"}))
    assert msg == Signal("S", payload, "h1")

    msg = parse_message(json.dumps({"type": "signal", "sessionCode": "S", "payload": None}))
    assert msg.to is None


def test_parse_leave_session_code_optional():
    assert parse_message('{"type":"leave-session"}') == LeaveSession(None)
    assert parse_message('{"type":"leave-session","sessionCode":"S"}') == LeaveSession("S")


@pytest.mark.parametrize(
    "raw",
    [
        '{"type":"bogus"}',
        '{"sessionCode":"S"}',
        '[1, 2, 3]',
        '{"type":"create-session","sessionCode":"ABC123"}',
        '{"type":"join-session","clientId":"c1"}',
        '{"type":"create-session","sessionCode":"","hostId":"h1"}',
        '{"type":"signal","sessionCode":"S","to":5}',
    ],
)
def test_invalid_messages_raise_message_error(raw):
    with pytest.raises(MessageError):
        parse_message(raw)


def test_malformed_json_raises_decode_error():
    with pytest.raises(json.JSONDecodeError):
        parse_message("{not json")


def test_outbound_shapes():
    assert messages.session_created() == {"type": "session-created"}
    assert messages.session_joined("h1") == {"type": "session-joined", "data": {"hostId": "h1"}}
    assert messages.peer_joined("c1") == {"type": "peer-joined", "data": {"peerId": "c1"}}
    assert messages.peer_left("c1") == {"type": "peer-left", "data": {"peerId": "c1"}}
    assert messages.error("nope") == {"type": "error", "data": "nope"}
    assert messages.signal("h1", None, {"a": 1}) == {
        "type": "signal",
        "data": {"from": "h1", "to": None, "payload": {"a": 1}},
    }


def test_encode_message_is_json():
    assert json.loads(encode_message(messages.host_left())) == {"type": "host-left"}
