"""
Signaling server for TitanLink.
Speaks the WebSocket wire format directly on raw asyncio transports and
routes JSON signaling messages between hosts and clients.
"""

import asyncio
import json
import logging
from typing import Optional, Set

from . import messages
from .config import Config, get_config
from .framing import (
    INCOMPLETE,
    OP_BINARY,
    OP_CLOSE,
    OP_PING,
    OP_PONG,
    OP_TEXT,
    Rejected,
    encode_frame,
    is_upgrade_request,
    parse_frame,
    parse_http_request,
    upgrade_response,
)
from .messages import MessageError, encode_message, parse_message
from .sessions import Connection, SessionRegistry

logger = logging.getLogger(__name__)

SERVER_NAME = "TitanLink Signaling"

# Largest HTTP request head we are willing to buffer
MAX_REQUEST_HEAD = 8192


class SignalingProtocol(Connection, asyncio.Protocol):
    """One accepted socket: HTTP request, then WebSocket frames."""

    def __init__(self, server: "SignalingServer"):
        super().__init__()
        self.server = server
        self.transport: Optional[asyncio.Transport] = None
        self.upgraded = False
        self.closed = False
        self.awaiting_pong = False
        self._buffer = bytearray()

    # asyncio.Protocol

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]
        self.server.protocols.add(self)

    def data_received(self, data: bytes) -> None:
        self._buffer += data

        if not self.upgraded:
            self._handle_request()
            if not self.upgraded:
                return

        self._process_frames()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.closed = True
        self.server.protocols.discard(self)

        if self.upgraded:
            if exc:
                logger.info("Client %s dropped: %s", self.id, exc)
            else:
                logger.info("Client disconnected: %s", self.id)
            self.server.registry.remove_connection(self)

    # Connection

    def send(self, message) -> None:
        self._write(encode_frame(encode_message(message)))

    # Internals

    def _write(self, data: bytes) -> None:
        if self.closed or self.transport is None or self.transport.is_closing():
            return
        self.transport.write(data)

    def close(self) -> None:
        self.closed = True
        if self.transport is not None:
            self.transport.close()

    def ping(self) -> bool:
        """
        Send a heartbeat ping.

        Returns:
            False if the previous ping went unanswered and the
            connection was closed instead
        """
        if self.awaiting_pong:
            logger.info("Terminating dead connection %s", self.id)
            self.close()
            return False
        self.awaiting_pong = True
        self._write(encode_frame(b"", OP_PING))
        return True

    def _handle_request(self) -> None:
        try:
            parsed = parse_http_request(bytes(self._buffer))
        except ValueError as e:
            logger.warning("Bad HTTP request: %s", e)
            self.close()
            return

        if parsed is None:
            if len(self._buffer) > MAX_REQUEST_HEAD:
                logger.warning("HTTP request head too large, closing")
                self.close()
            return

        method, path, headers, head_size = parsed
        del self._buffer[:head_size]

        if not is_upgrade_request(headers):
            logger.debug("HTTP %s %s", method, path)
            self._respond_status()
            return

        key = headers.get("sec-websocket-key")
        if not key:
            logger.warning("Upgrade without Sec-WebSocket-Key, closing")
            self.close()
            return

        self._write(upgrade_response(key))
        self.upgraded = True
        self.server.registry.add_connection(self)
        logger.info("Client connected: %s (%s)", self.id, path)

    def _respond_status(self) -> None:
        body = json.dumps(self.server.status()).encode("utf-8")
        head = (
            "HTTP/1.1 200 OK\r\n"
            "Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: close\r\n"
            "\r\n"
        ).encode("ascii")
        self._write(head + body)
        self.close()

    def _process_frames(self) -> None:
        while not self.closed:
            result = parse_frame(self._buffer)

            if result is INCOMPLETE:
                return

            if isinstance(result, Rejected):
                logger.warning("Closing %s: %s", self.id, result.reason)
                self.close()
                return

            del self._buffer[:result.size]
            self._handle_frame(result.opcode, result.payload)

    def _handle_frame(self, opcode: int, payload: bytes) -> None:
        # Any frame proves the peer is alive
        self.awaiting_pong = False

        if opcode == OP_CLOSE:
            logger.debug("Close frame from %s", self.id)
            self._write(encode_frame(b"", OP_CLOSE))
            self.close()
        elif opcode == OP_PING:
            self._write(encode_frame(payload, OP_PONG))
        elif opcode in (OP_TEXT, OP_BINARY):
            self._handle_message(payload)
        elif opcode != OP_PONG:
            logger.debug("Ignoring frame with opcode %#x from %s", opcode, self.id)

    def _handle_message(self, payload: bytes) -> None:
        try:
            message = parse_message(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Failed to parse JSON from %s: %s", self.id, e)
            return
        except MessageError as e:
            logger.warning("Invalid message from %s: %s", self.id, e)
            self.send(messages.error(str(e)))
            return

        logger.debug("Message from %s: %s", self.id, type(message).__name__)
        self.server.registry.handle(self, message)


class SignalingServer:
    """
    Always-on signaling service.

    Features:
    - Hand-rolled WebSocket framing on raw sockets
    - Session registry with host/client routing
    - Heartbeat pings to drop dead connections
    - Idle session garbage collection
    - JSON health endpoint on plain HTTP requests
    """

    def __init__(self, config: Optional[Config] = None, registry: Optional[SessionRegistry] = None):
        """Initialize the server."""
        self.config = config or get_config()
        self.registry = registry or SessionRegistry()

        # Accepted sockets, upgraded or not
        self.protocols: Set[SignalingProtocol] = set()

        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: list[asyncio.Task] = []

        # Shutdown event
        self.shutdown_event = asyncio.Event()

    @property
    def port(self) -> int:
        """Port actually bound (useful when configured with port 0)."""
        if self._server is None or not self._server.sockets:
            return self.config.port
        return self._server.sockets[0].getsockname()[1]

    def status(self) -> dict:
        return {"status": "ok", "name": SERVER_NAME, "sessions": len(self.registry)}

    async def start(self) -> None:
        """Start listening and the periodic maintenance tasks."""
        loop = asyncio.get_running_loop()
        self._server = await loop.create_server(
            lambda: SignalingProtocol(self),
            self.config.host,
            self.config.port,
        )

        self._tasks = [
            asyncio.create_task(self._cleanup_loop()),
            asyncio.create_task(self._heartbeat_loop()),
        ]

        logger.info("Signaling server listening on %s:%d", self.config.host, self.port)

    async def stop(self) -> None:
        """Stop the server and close every connection."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        for protocol in list(self.protocols):
            protocol.close()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("Signaling server stopped")

    async def run_forever(self) -> None:
        """Run the server until shutdown_event is set or the task is cancelled."""
        await self.start()

        try:
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            self.registry.expire_idle(self.config.session_ttl_seconds)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            for protocol in list(self.protocols):
                if protocol.upgraded:
                    protocol.ping()


def run_server(config: Optional[Config] = None) -> None:
    """Run the server (blocking)."""
    server = SignalingServer(config)

    try:
        asyncio.run(server.run_forever())
    except KeyboardInterrupt:
        print("\nShutting down...")
