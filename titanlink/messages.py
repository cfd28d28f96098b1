"""
Signaling messages.

Inbound messages are validated at the wire boundary into one dataclass per
message type; anything else raises MessageError. Outbound messages are
plain dicts of the form {"type": ..., "data": ...}.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union


CREATE_SESSION = "create-session"
JOIN_SESSION = "join-session"
SIGNAL = "signal"
LEAVE_SESSION = "leave-session"

SESSION_CREATED = "session-created"
SESSION_JOINED = "session-joined"
SESSION_NOT_FOUND = "session-not-found"
ERROR = "error"
PEER_JOINED = "peer-joined"
PEER_LEFT = "peer-left"
HOST_LEFT = "host-left"


class MessageError(ValueError):
    """Raised for messages that do not match any known type."""


@dataclass(frozen=True)
class CreateSession:
    session_code: str
    host_id: str


@dataclass(frozen=True)
class JoinSession:
    session_code: str
    client_id: str


@dataclass(frozen=True)
class Signal:
    session_code: str
    payload: Any = None
    to: Optional[str] = None


@dataclass(frozen=True)
class LeaveSession:
    session_code: Optional[str] = None


InboundMessage = Union[CreateSession, JoinSession, Signal, LeaveSession]


def _require(data: Dict[str, Any], field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise MessageError(f"Missing {field}")
    return value


def _optional(data: Dict[str, Any], field: str) -> Optional[str]:
    value = data.get(field)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise MessageError(f"Invalid {field}")
    return value


def parse_message(text: Union[str, bytes]) -> InboundMessage:
    """
    Parse and validate an inbound signaling message.

    Raises:
        json.JSONDecodeError: If text is not JSON
        MessageError: If the JSON is not a known, well-formed message
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8")

    data = json.loads(text)
    if not isinstance(data, dict):
        raise MessageError("Message must be a JSON object")

    kind = data.get("type")

    if kind == CREATE_SESSION:
        return CreateSession(_require(data, "sessionCode"), _require(data, "hostId"))
    if kind == JOIN_SESSION:
        return JoinSession(_require(data, "sessionCode"), _require(data, "clientId"))
    if kind == SIGNAL:
        return Signal(
            session_code=_require(data, "sessionCode"),
            payload=data.get("payload"),
            to=_optional(data, "to"),
        )
    if kind == LEAVE_SESSION:
        return LeaveSession(_optional(data, "sessionCode"))

    raise MessageError(f"Unknown message type: {kind!r}")


def encode_message(message: Dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


# Outbound builders

def session_created() -> Dict[str, Any]:
    return {"type": SESSION_CREATED}


def session_joined(host_id: str) -> Dict[str, Any]:
    return {"type": SESSION_JOINED, "data": {"hostId": host_id}}


def session_not_found() -> Dict[str, Any]:
    return {"type": SESSION_NOT_FOUND}


def error(reason: str) -> Dict[str, Any]:
    return {"type": ERROR, "data": reason}


def peer_joined(peer_id: str) -> Dict[str, Any]:
    return {"type": PEER_JOINED, "data": {"peerId": peer_id}}


def peer_left(peer_id: str) -> Dict[str, Any]:
    return {"type": PEER_LEFT, "data": {"peerId": peer_id}}


def host_left() -> Dict[str, Any]:
    return {"type": HOST_LEFT}


def signal(sender: str, to: Optional[str], payload: Any) -> Dict[str, Any]:
    return {"type": SIGNAL, "data": {"from": sender, "to": to, "payload": payload}}
