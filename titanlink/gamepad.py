"""
Binary controller-input protocol.

Controller state travels over an unreliable, unordered data channel as a
fixed 24-byte little-endian packet:

    offset  size  field
    0       2     buttons        uint16 bitmask (see XBOX_BUTTONS)
    2       2     left_stick_x   int16, -1.0..1.0 scaled by 32767
    4       2     left_stick_y   int16
    6       2     right_stick_x  int16
    8       2     right_stick_y  int16
    10      2     left_trigger   uint16, 0.0..1.0 scaled by 65535
    12      2     right_trigger  uint16
    14      8     timestamp      uint64, monotonic milliseconds
    22      2     reserved       zero
"""

import struct
from dataclasses import dataclass
from typing import Dict


PACKET_FORMAT = "<HhhhhHHQ2x"
PACKET_SIZE = 24

AXIS_SCALE = 32767
TRIGGER_SCALE = 65535

_packet = struct.Struct(PACKET_FORMAT)

# Bit positions inside the buttons bitmask
XBOX_BUTTONS: Dict[str, int] = {
    "A": 0,
    "B": 1,
    "X": 2,
    "Y": 3,
    "LB": 4,
    "RB": 5,
    "BACK": 6,
    "START": 7,
    "LEFT_STICK": 8,
    "RIGHT_STICK": 9,
    "DPAD_UP": 10,
    "DPAD_DOWN": 11,
    "DPAD_LEFT": 12,
    "DPAD_RIGHT": 13,
    "GUIDE": 14,
}


class GamepadPacketError(ValueError):
    """Raised when a buffer is not a valid input packet."""


@dataclass(frozen=True)
class GamepadInputState:
    """Snapshot of a controller at one poll tick."""

    buttons: int = 0
    left_stick_x: float = 0.0
    left_stick_y: float = 0.0
    right_stick_x: float = 0.0
    right_stick_y: float = 0.0
    left_trigger: float = 0.0
    right_trigger: float = 0.0
    timestamp: int = 0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _axis_to_wire(value: float) -> int:
    return int(round(_clamp(value, -1.0, 1.0) * AXIS_SCALE))


def _trigger_to_wire(value: float) -> int:
    return int(round(_clamp(value, 0.0, 1.0) * TRIGGER_SCALE))


def encode_input(state: GamepadInputState) -> bytes:
    """
    Serialize controller state into a fixed-size packet.

    Out-of-range axis and trigger values are clamped to their legal range.

    Args:
        state: Controller state to encode

    Returns:
        24-byte packet
    """
    return _packet.pack(
        state.buttons & 0xFFFF,
        _axis_to_wire(state.left_stick_x),
        _axis_to_wire(state.left_stick_y),
        _axis_to_wire(state.right_stick_x),
        _axis_to_wire(state.right_stick_y),
        _trigger_to_wire(state.left_trigger),
        _trigger_to_wire(state.right_trigger),
        max(0, int(state.timestamp)),
    )


def decode_input(data: bytes) -> GamepadInputState:
    """
    Deserialize a packet produced by encode_input.

    Raises:
        GamepadPacketError: If the buffer is not exactly PACKET_SIZE bytes
    """
    if len(data) != PACKET_SIZE:
        raise GamepadPacketError(
            f"Input packet must be {PACKET_SIZE} bytes, got {len(data)}"
        )

    buttons, lx, ly, rx, ry, lt, rt, timestamp = _packet.unpack(bytes(data))

    return GamepadInputState(
        buttons=buttons,
        left_stick_x=_clamp(lx / AXIS_SCALE, -1.0, 1.0),
        left_stick_y=_clamp(ly / AXIS_SCALE, -1.0, 1.0),
        right_stick_x=_clamp(rx / AXIS_SCALE, -1.0, 1.0),
        right_stick_y=_clamp(ry / AXIS_SCALE, -1.0, 1.0),
        left_trigger=lt / TRIGGER_SCALE,
        right_trigger=rt / TRIGGER_SCALE,
        timestamp=timestamp,
    )


def is_button_pressed(buttons: int, button: str) -> bool:
    """Check a named button in a bitmask."""
    return bool(buttons & (1 << XBOX_BUTTONS[button]))


def set_button(buttons: int, button: str, pressed: bool) -> int:
    """Return the bitmask with a named button set or cleared."""
    bit = 1 << XBOX_BUTTONS[button]
    if pressed:
        return buttons | bit
    return buttons & ~bit
