"""
Peer connection orchestrator.

Drives one host/client pairing from session setup through streaming:
signaling, relay configuration, offer/answer exchange, the input data
channel, adaptive quality and recovery. Teardown is idempotent and safe
from any state.

State machine:

    disconnected -> connecting -> (waiting-for-peer [host] -> connecting)
                 -> streaming -> disconnected | waiting-for-peer
"""

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from . import messages
from .capture import LocalMedia, open_media
from .config import Config, get_config
from .gamepad import GamepadInputState, encode_input
from .input_handler import InputHandler
from .quality import AdaptiveQualityController, ConnectionQuality
from .relay import PUBLIC_STUN, RelayCredentialService
from .sdp import prefer_codec, set_bandwidth
from .sessions import ROLE_CLIENT, ROLE_HOST
from .signaling_client import SessionCodeInUseError, SignalingClient, SignalingError

logger = logging.getLogger(__name__)

# No 0/O or 1/I
SESSION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SESSION_CODE_LENGTH = 6
CREATE_SESSION_ATTEMPTS = 5

INPUT_CHANNEL_LABEL = "input"
INPUT_CHANNEL_ID = 0


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WAITING_FOR_PEER = "waiting-for-peer"
    STREAMING = "streaming"


@dataclass
class SessionCallbacks:
    """Hooks for the UI layer. Every callback is optional."""

    on_state_change: Optional[Callable[[ConnectionState], None]] = None
    on_peer_connected: Optional[Callable[[str], None]] = None
    on_peer_disconnected: Optional[Callable[[Optional[str]], None]] = None
    on_error: Optional[Callable[[str], None]] = None
    on_latency_update: Optional[Callable[[float], None]] = None
    on_stream_received: Optional[Callable[[Any], None]] = None
    on_input_received: Optional[Callable[[GamepadInputState], None]] = None


def generate_session_code(length: int = SESSION_CODE_LENGTH) -> str:
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(length))


def normalize_session_code(code: str) -> str:
    return code.strip().upper()


def apply_sender_bitrate(sender, bitrate: int) -> None:
    """
    Set the target bitrate of a running video sender's encoder.

    aiortc exposes no public parameter API, so this reaches the sender's
    encoder directly. It only exists once the first frame was encoded.
    """
    encoder = getattr(sender, "_RTCRtpSender__encoder", None)
    if encoder is None:
        raise RuntimeError("Video encoder not started yet")
    encoder.target_bitrate = bitrate


def to_rtc_ice_server(server: Dict[str, Any]) -> RTCIceServer:
    return RTCIceServer(
        urls=server["urls"],
        username=server.get("username"),
        credential=server.get("credential"),
    )


class PeerSession:
    """
    One side of a streaming session.

    Call start_hosting() or connect_to_host(code), then disconnect() when
    done. Collaborators can be injected for testing; by default they are
    built from the config.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        callbacks: Optional[SessionCallbacks] = None,
        relay: Optional[RelayCredentialService] = None,
        input_handler: Optional[InputHandler] = None,
        signaling_factory: Optional[Callable[[], SignalingClient]] = None,
        media_factory: Optional[Callable[[], LocalMedia]] = None,
        pc_factory: Callable[..., RTCPeerConnection] = RTCPeerConnection,
    ):
        self.config = config or get_config()
        self.callbacks = callbacks or SessionCallbacks()
        self.relay = relay if relay is not None else RelayCredentialService.from_config(self.config)
        self.input_handler = input_handler or InputHandler()
        self.input_handler.on_input = self._on_input_applied

        self._signaling_factory = signaling_factory or self._default_signaling
        self._media_factory = media_factory or (lambda: open_media(self.config))
        self._pc_factory = pc_factory

        self.peer_id = uuid.uuid4().hex[:8]
        self.state = ConnectionState.DISCONNECTED
        self.role: Optional[str] = None
        self.session_code: Optional[str] = None
        self.remote_peer_id: Optional[str] = None

        self.signaling: Optional[SignalingClient] = None
        self.pc: Optional[RTCPeerConnection] = None
        self.channel = None
        self.media: Optional[LocalMedia] = None
        self.quality: Optional[AdaptiveQualityController] = None
        self.remote_tracks: List[Any] = []

        self._ice_servers: List[Dict[str, Any]] = []
        # Signals that arrived before the peer connection existed
        self._pending_signals: List[Dict[str, Any]] = []
        self._video_sender = None
        self._recovery_task: Optional[asyncio.Task] = None
        self._closing = False
        self._closed = asyncio.Event()
        self._closed.set()

    def _default_signaling(self) -> SignalingClient:
        c = self.config
        return SignalingClient(
            c.signaling_url,
            connect_timeout=c.connect_timeout,
            request_timeout=c.request_timeout,
            max_retries=c.max_retries,
            base_delay=c.retry_base_delay,
            max_delay=c.retry_max_delay,
        )

    # Callbacks

    def _emit(self, name: str, *args) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("%s callback failed", name)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.info("State: %s -> %s", self.state.value, state.value)
        self.state = state
        if state == ConnectionState.DISCONNECTED:
            self._closed.set()
        else:
            self._closed.clear()
        self._emit("on_state_change", state)

    async def wait_closed(self) -> None:
        """Block until the session is back in the disconnected state."""
        await self._closed.wait()

    # Setup

    async def start_hosting(self) -> str:
        """
        Create a session and wait for a client.

        Returns:
            The session code to hand to the client
        """
        self._require_idle()
        self.role = ROLE_HOST
        self._set_state(ConnectionState.CONNECTING)

        try:
            await self._open_signaling()
            self.session_code = await self._create_session()
            self._ice_servers = await self._fetch_ice_servers()
            self.media = self._media_factory()
            self._build_peer_connection()
            self._set_state(ConnectionState.WAITING_FOR_PEER)

            # A client may have joined while the transport was being built
            if self.remote_peer_id:
                await self._start_negotiation()
        except Exception as e:
            await self._fail(e)
            raise

        return self.session_code

    async def connect_to_host(self, session_code: str) -> None:
        """Join the host's session; the host sends the offer."""
        self._require_idle()
        self.role = ROLE_CLIENT
        code = normalize_session_code(session_code)
        self._set_state(ConnectionState.CONNECTING)

        try:
            await self._open_signaling()
            self.remote_peer_id = await self.signaling.join_session(code, self.peer_id)
            self.session_code = code
            logger.info("Joined session %s (host %s)", code, self.remote_peer_id)
            self._ice_servers = await self._fetch_ice_servers()
            self._build_peer_connection()
            await self._replay_pending_signals()
        except Exception as e:
            await self._fail(e)
            raise

    def _require_idle(self) -> None:
        if self.state != ConnectionState.DISCONNECTED:
            raise RuntimeError(f"Session already active ({self.state.value})")

    async def _fail(self, error: Exception) -> None:
        await self.disconnect()
        self._emit("on_error", str(error))

    async def _open_signaling(self) -> None:
        signaling = self._signaling_factory()
        signaling.on(messages.PEER_JOINED, self._on_peer_joined)
        signaling.on(messages.PEER_LEFT, self._on_peer_left)
        signaling.on(messages.HOST_LEFT, self._on_host_left)
        signaling.on(messages.SIGNAL, self._on_signal)
        signaling.on(messages.ERROR, self._on_server_error)
        signaling.on_close = self._on_signaling_closed
        self.signaling = signaling
        await signaling.connect()

    async def _create_session(self) -> str:
        for attempt in range(1, CREATE_SESSION_ATTEMPTS + 1):
            code = generate_session_code()
            try:
                await self.signaling.create_session(code, self.peer_id)
            except SessionCodeInUseError:
                logger.warning("Session code %s already in use (attempt %d)", code, attempt)
                continue
            logger.info("Hosting session %s", code)
            return code
        raise SignalingError("Could not allocate a free session code")

    async def _fetch_ice_servers(self) -> List[Dict[str, Any]]:
        try:
            servers = await self.relay.get_ice_servers(self.peer_id)
        except Exception as e:
            logger.warning("Relay credential service unavailable, using public STUN: %s", e)
            servers = []
        return servers or [dict(s) for s in PUBLIC_STUN]

    def _build_peer_connection(self) -> None:
        configuration = RTCConfiguration(
            iceServers=[to_rtc_ice_server(s) for s in self._ice_servers]
        )
        pc = self._pc_factory(configuration=configuration)
        self.pc = pc

        # Negotiated out of band with a fixed id on both sides
        channel = pc.createDataChannel(
            INPUT_CHANNEL_LABEL,
            ordered=False,
            maxRetransmits=0,
            negotiated=True,
            id=INPUT_CHANNEL_ID,
        )
        channel.on("message", self._on_channel_message)
        self.channel = channel

        async def on_connectionstatechange():
            await self._on_connection_state(pc)

        pc.on("connectionstatechange", on_connectionstatechange)
        pc.on("track", self._on_track)

        if self.role == ROLE_HOST and self.media is not None:
            self._video_sender = pc.addTrack(self.media.video)
            if self.media.audio is not None:
                pc.addTrack(self.media.audio)

    # Negotiation

    def _munge(self, sdp: str) -> str:
        sdp = set_bandwidth(sdp, self.config.bitrate_bps // 1000)
        return prefer_codec(sdp, self.config.codec)

    async def _start_negotiation(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self._emit("on_peer_connected", self.remote_peer_id)
        await self._send_offer()

    async def _send_offer(self, ice_restart: bool = False) -> None:
        pc = self.pc
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)

        # Local candidates are embedded in the description once gathered
        payload: Dict[str, Any] = {"type": "offer", "sdp": self._munge(pc.localDescription.sdp)}
        if ice_restart:
            payload["iceRestart"] = True

        await self.signaling.send_signal(self.session_code, payload, to=self.remote_peer_id)
        logger.info("Sent offer to %s%s", self.remote_peer_id, " (ICE restart)" if ice_restart else "")

    async def _accept_offer(self, sender: Optional[str], payload: Dict[str, Any]) -> None:
        pc = self.pc
        first = self.state != ConnectionState.STREAMING
        if sender:
            self.remote_peer_id = sender

        await pc.setRemoteDescription(RTCSessionDescription(sdp=payload["sdp"], type="offer"))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)

        await self.signaling.send_signal(
            self.session_code,
            {"type": "answer", "sdp": pc.localDescription.sdp},
            to=self.remote_peer_id,
        )
        logger.info("Answered offer from %s", self.remote_peer_id)
        if first:
            self._emit("on_peer_connected", self.remote_peer_id)

    async def _add_remote_candidate(self, init: Optional[Dict[str, Any]]) -> None:
        if not init or not init.get("candidate"):
            return  # end of candidates

        line = init["candidate"]
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        candidate = candidate_from_sdp(line)
        candidate.sdpMid = init.get("sdpMid")
        candidate.sdpMLineIndex = init.get("sdpMLineIndex")
        await self.pc.addIceCandidate(candidate)

    # Signaling events

    async def _on_peer_joined(self, message: Dict[str, Any]) -> None:
        if self.role != ROLE_HOST:
            return
        peer_id = (message.get("data") or {}).get("peerId")

        if self.state == ConnectionState.STREAMING:
            logger.warning("Ignoring %s, already streaming to %s", peer_id, self.remote_peer_id)
            return

        logger.info("Peer %s joined", peer_id)
        self.remote_peer_id = peer_id
        if self.pc is not None:
            await self._start_negotiation()

    async def _on_peer_left(self, message: Dict[str, Any]) -> None:
        if self.role != ROLE_HOST:
            return
        peer_id = (message.get("data") or {}).get("peerId")
        if self.remote_peer_id and peer_id != self.remote_peer_id:
            return

        logger.info("Peer %s left", peer_id)
        self._emit("on_peer_disconnected", peer_id)
        await self._reset_for_next_peer()

    async def _on_host_left(self, message: Dict[str, Any]) -> None:
        if self.role != ROLE_CLIENT:
            return
        logger.info("Host ended session %s", self.session_code)
        self._emit("on_peer_disconnected", self.remote_peer_id)
        # The server already dropped the session
        self.session_code = None
        await self.disconnect()

    async def _on_signal(self, message: Dict[str, Any]) -> None:
        if self.pc is None:
            if self.state == ConnectionState.CONNECTING:
                self._pending_signals.append(message)
            return
        data = message.get("data") or {}
        sender = data.get("from")
        payload = data.get("payload") or {}
        kind = payload.get("type")

        try:
            if kind == "offer" and self.role == ROLE_CLIENT:
                if payload.get("iceRestart"):
                    logger.info("Host requested ICE restart")
                await self._accept_offer(sender, payload)
            elif kind == "answer" and self.role == ROLE_HOST:
                await self.pc.setRemoteDescription(
                    RTCSessionDescription(sdp=payload["sdp"], type="answer")
                )
                logger.info("Applied answer from %s", sender)
            elif kind == "ice-candidate":
                await self._add_remote_candidate(payload.get("candidate"))
            else:
                logger.warning("Ignoring %r signal from %s", kind, sender)
        except (KeyError, ValueError, InvalidStateError) as e:
            logger.warning("Could not apply %s from %s: %s", kind, sender, e)

    async def _replay_pending_signals(self) -> None:
        pending, self._pending_signals = self._pending_signals, []
        for message in pending:
            await self._on_signal(message)

    def _on_server_error(self, message: Dict[str, Any]) -> None:
        reason = str(message.get("data") or "Signaling error")
        logger.warning("Signaling server error: %s", reason)
        self._emit("on_error", reason)

    async def _on_signaling_closed(self) -> None:
        if self._closing or self.state == ConnectionState.DISCONNECTED:
            return
        if self.state == ConnectionState.STREAMING:
            logger.warning("Lost signaling connection, stream continues without recovery")
            return
        self._emit("on_error", "Lost connection to signaling server")
        await self.disconnect()

    # Transport events

    async def _on_connection_state(self, pc) -> None:
        if pc is not self.pc:
            return
        state = pc.connectionState
        logger.info("Transport state: %s", state)

        if state == "connected":
            self._cancel_recovery()
            if self.state != ConnectionState.STREAMING:
                self._set_state(ConnectionState.STREAMING)
                self._start_quality()
        elif state == "disconnected":
            if self.role == ROLE_HOST:
                self._schedule_recovery()
        elif state == "failed":
            await self._on_transport_failed()

    async def _on_transport_failed(self) -> None:
        logger.warning("Transport to %s failed", self.remote_peer_id)
        self._emit("on_peer_disconnected", self.remote_peer_id)
        if self.role == ROLE_HOST:
            await self._reset_for_next_peer()
        else:
            self._emit("on_error", "Connection to host failed")
            await self.disconnect()

    def _schedule_recovery(self) -> None:
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        self._recovery_task = asyncio.create_task(self._recover(self.pc))

    def _cancel_recovery(self) -> None:
        task, self._recovery_task = self._recovery_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _recover(self, pc) -> None:
        await asyncio.sleep(self.config.renegotiate_grace)
        if pc is not self.pc or pc.connectionState != "disconnected":
            return

        logger.info("Still disconnected after %ss, renegotiating", self.config.renegotiate_grace)
        try:
            await self._send_offer(ice_restart=self.config.ice_restart)
        except (SignalingError, InvalidStateError) as e:
            logger.warning("Renegotiation failed: %s", e)

    def _on_track(self, track) -> None:
        logger.info("Receiving remote %s track", track.kind)
        self.remote_tracks.append(track)
        self._emit("on_stream_received", track)

    def _on_channel_message(self, message) -> None:
        if self.role != ROLE_HOST:
            return
        if isinstance(message, str):
            logger.warning("Ignoring text message on input channel")
            return
        self.input_handler.handle_packet(message)

    def _on_input_applied(self, state: GamepadInputState) -> None:
        self._emit("on_input_received", state)

    # Quality

    def _start_quality(self) -> None:
        c = self.config
        self.quality = AdaptiveQualityController(
            stats_source=self.pc.getStats,
            apply_bitrate=self._apply_bitrate,
            target_bitrate=c.bitrate_bps,
            interval=c.sample_interval,
            window_size=c.quality_window,
            min_delta=c.min_bitrate_delta,
            cooldown=c.quality_cooldown,
            adaptive=c.adaptive_quality and self._video_sender is not None,
            on_update=self._on_quality_update,
        )
        self.quality.start()

    def _apply_bitrate(self, bitrate: int) -> None:
        if self._video_sender is None:
            raise RuntimeError("No outbound video")
        apply_sender_bitrate(self._video_sender, bitrate)

    def _on_quality_update(self, quality: ConnectionQuality) -> None:
        self._emit("on_latency_update", quality.latency)

    # Input

    def send_input(self, state: GamepadInputState) -> bool:
        """
        Send controller state to the host.

        Returns:
            False if the input channel is not open
        """
        channel = self.channel
        if channel is None or channel.readyState != "open":
            return False
        channel.send(encode_input(state))
        return True

    # Teardown

    async def _close_transport(self) -> None:
        if self.quality is not None:
            quality, self.quality = self.quality, None
            await quality.stop()

        if self.channel is not None:
            channel, self.channel = self.channel, None
            channel.close()

        if self.pc is not None:
            pc, self.pc = self.pc, None
            await pc.close()

        self._video_sender = None
        self.remote_tracks = []

    async def _reset_for_next_peer(self) -> None:
        self._cancel_recovery()
        await self._close_transport()
        self.remote_peer_id = None
        self.input_handler.reset()

        if self.signaling is None:
            return
        self._build_peer_connection()
        self._set_state(ConnectionState.WAITING_FOR_PEER)

    async def disconnect(self) -> None:
        """
        Tear everything down. Safe to call repeatedly and from any state.
        """
        if self._closing:
            return
        self._closing = True
        try:
            self._cancel_recovery()
            await self._close_transport()

            if self.media is not None:
                media, self.media = self.media, None
                media.stop()

            if self.signaling is not None:
                signaling, self.signaling = self.signaling, None
                if self.session_code and signaling.connected:
                    try:
                        await signaling.leave_session(self.session_code)
                    except SignalingError as e:
                        logger.debug("leave-session not delivered: %s", e)
                await signaling.close()

            self.session_code = None
            self.remote_peer_id = None
            self.role = None
            self._pending_signals = []
            self.input_handler.reset()
            self._set_state(ConnectionState.DISCONNECTED)
        finally:
            self._closing = False
