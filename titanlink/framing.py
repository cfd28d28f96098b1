"""
Minimal WebSocket (RFC 6455) framing for the signaling service.

Everything here is a pure function over bytes so it can be tested without
sockets. Only single-frame messages up to 65535 bytes are accepted from
peers; frames using the 64-bit length encoding are rejected outright.
"""

import base64
import hashlib
import struct
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union


WEBSOCKET_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

OP_CONTINUATION = 0x0
OP_TEXT = 0x1
OP_BINARY = 0x2
OP_CLOSE = 0x8
OP_PING = 0x9
OP_PONG = 0xA

MAX_PAYLOAD = 0xFFFF


@dataclass(frozen=True)
class Frame:
    """A complete frame sliced from the front of a buffer."""

    opcode: int
    payload: bytes
    size: int  # bytes consumed from the buffer


class Incomplete:
    """More bytes are needed before a frame can be sliced."""

    def __repr__(self) -> str:
        return "INCOMPLETE"


@dataclass(frozen=True)
class Rejected:
    """The frame can never be accepted; the connection must be closed."""

    reason: str


INCOMPLETE = Incomplete()

ParseResult = Union[Frame, Incomplete, Rejected]


def parse_frame(buffer: bytes) -> ParseResult:
    """
    Try to slice one frame from the front of buffer.

    Returns:
        Frame if a full frame is available, INCOMPLETE if more bytes are
        needed, or Rejected for frames that need the 64-bit length field.
    """
    if len(buffer) < 2:
        return INCOMPLETE

    opcode = buffer[0] & 0x0F
    if opcode == OP_CLOSE:
        return Frame(OP_CLOSE, b"", len(buffer))

    masked = bool(buffer[1] & 0x80)
    length = buffer[1] & 0x7F
    offset = 2

    if length == 126:
        if len(buffer) < 4:
            return INCOMPLETE
        length = struct.unpack_from(">H", buffer, 2)[0]
        offset = 4
    elif length == 127:
        return Rejected("payload requires 64-bit length")

    mask_key = b""
    if masked:
        if len(buffer) < offset + 4:
            return INCOMPLETE
        mask_key = bytes(buffer[offset:offset + 4])
        offset += 4

    end = offset + length
    if len(buffer) < end:
        return INCOMPLETE

    payload = bytes(buffer[offset:end])
    if masked:
        payload = apply_mask(payload, mask_key)

    return Frame(opcode, payload, end)


def apply_mask(data: bytes, mask_key: bytes) -> bytes:
    """XOR data against a cycling 4-byte key (masking is its own inverse)."""
    return bytes(b ^ mask_key[i % 4] for i, b in enumerate(data))


def encode_frame(
    payload: Union[bytes, str],
    opcode: int = OP_TEXT,
    mask_key: Optional[bytes] = None,
) -> bytes:
    """
    Build a single FIN frame.

    Server frames are sent unmasked; pass mask_key to build client frames.
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")

    length = len(payload)
    header = bytearray([0x80 | opcode])
    mask_bit = 0x80 if mask_key else 0

    if length > MAX_PAYLOAD:
        header.append(mask_bit | 127)
        header += struct.pack(">Q", length)
    elif length > 125:
        header.append(mask_bit | 126)
        header += struct.pack(">H", length)
    else:
        header.append(mask_bit | length)

    if mask_key:
        header += mask_key
        payload = apply_mask(payload, mask_key)

    return bytes(header) + payload


def accept_key(client_key: str) -> str:
    """Compute Sec-WebSocket-Accept for a client's Sec-WebSocket-Key."""
    digest = hashlib.sha1((client_key + WEBSOCKET_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def upgrade_response(client_key: str) -> bytes:
    """HTTP 101 response completing the opening handshake."""
    return (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {accept_key(client_key)}\r\n"
        "\r\n"
    ).encode("ascii")


def parse_http_request(data: bytes) -> Optional[Tuple[str, str, Dict[str, str], int]]:
    """
    Parse an HTTP/1.1 request head.

    Returns:
        (method, path, headers, head_size) with lower-cased header names,
        or None if the head is not complete yet.

    Raises:
        ValueError: If the request line is malformed
    """
    end = data.find(b"\r\n\r\n")
    if end < 0:
        return None

    head = data[:end].decode("latin-1")
    lines = head.split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise ValueError(f"Malformed request line: {lines[0]!r}")

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()

    return parts[0], parts[1], headers, end + 4


def is_upgrade_request(headers: Dict[str, str]) -> bool:
    return (
        headers.get("upgrade", "").lower() == "websocket"
        and "upgrade" in headers.get("connection", "").lower()
    )
