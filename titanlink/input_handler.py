"""
Host-side consumer for controller input packets.
Decodes packets and forwards fresh states to a virtual controller sink.
"""

import logging
from typing import Callable, Optional, Protocol

from .gamepad import (
    GamepadInputState,
    GamepadPacketError,
    XBOX_BUTTONS,
    decode_input,
    is_button_pressed,
)

logger = logging.getLogger(__name__)


class ControllerSink(Protocol):
    """Anything that can drive a (virtual) controller from decoded input."""

    def update(self, state: GamepadInputState) -> None:
        ...


class LoggingControllerSink:
    """
    Sink used when no controller driver is bound.

    Logs button transitions at debug level so input flow can be verified
    without a driver installed.
    """

    def __init__(self):
        self._last_buttons = 0

    def update(self, state: GamepadInputState) -> None:
        if state.buttons == self._last_buttons:
            return
        pressed = [name for name in XBOX_BUTTONS if is_button_pressed(state.buttons, name)]
        logger.debug("Controller buttons: %s", ", ".join(pressed) or "(none)")
        self._last_buttons = state.buttons


class InputHandler:
    """
    Apply controller input arriving over an unordered, unreliable channel.

    A packet is applied only if its timestamp is newer than the last
    applied one; late or duplicated packets are discarded.
    """

    def __init__(
        self,
        sink: Optional[ControllerSink] = None,
        on_input: Optional[Callable[[GamepadInputState], None]] = None,
    ):
        self.sink: ControllerSink = sink or LoggingControllerSink()
        self.on_input = on_input

        self.last_timestamp: Optional[int] = None
        self.state: Optional[GamepadInputState] = None
        self.applied = 0
        self.dropped = 0

    def apply(self, state: GamepadInputState) -> bool:
        """
        Apply a decoded state unless it is stale.

        Returns:
            True if the state reached the sink
        """
        if self.last_timestamp is not None and state.timestamp <= self.last_timestamp:
            self.dropped += 1
            return False

        self.last_timestamp = state.timestamp
        self.state = state
        self.applied += 1

        self.sink.update(state)
        if self.on_input:
            self.on_input(state)
        return True

    def handle_packet(self, data: bytes) -> bool:
        """
        Decode and apply a raw packet from the data channel.

        Wrong-size packets are logged and ignored.
        """
        try:
            state = decode_input(data)
        except GamepadPacketError as e:
            logger.warning("Dropping input packet: %s", e)
            self.dropped += 1
            return False
        return self.apply(state)

    def reset(self) -> None:
        """Forget the last applied packet (new peer, new clock)."""
        self.last_timestamp = None
        self.state = None
