"""
Client side of the signaling protocol.

Wraps one WebSocket connection to the signaling server: connecting with
bounded exponential backoff, request/response helpers for session setup,
and sequential dispatch of server pushes to registered handlers.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import messages

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class SignalingError(RuntimeError):
    """Signaling server unreachable, timed out, or refused a request."""


class SessionNotFoundError(SignalingError):
    """No active session with the requested code."""


class SessionCodeInUseError(SignalingError):
    """Another host already owns the requested code."""


class SignalingClient:
    """
    Connection to the signaling server.

    Server messages that answer a pending request() resolve it; all other
    messages go, in arrival order, to the handlers registered with on().
    """

    def __init__(
        self,
        url: str,
        connect_timeout: float = 15.0,
        request_timeout: float = 10.0,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        connector: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        self.url = url
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._connector = connector

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[Handler]] = {}
        self._waiters: List[Tuple[Set[str], asyncio.Future]] = []
        self.on_close: Optional[Callable[[], Any]] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, message_type: str, handler: Handler) -> None:
        self._handlers.setdefault(message_type, []).append(handler)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number attempt (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    async def connect(self) -> None:
        """
        Open the connection, retrying with exponential backoff.

        Raises:
            SignalingError: After max_retries failed attempts
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                self._ws = await asyncio.wait_for(self._connector(self.url), self.connect_timeout)
                break
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(
                    "Signaling connect attempt %d/%d to %s failed: %r",
                    attempt, self.max_retries, self.url, e,
                )
                if attempt == self.max_retries:
                    raise SignalingError(
                        f"Could not reach signaling server after {attempt} attempts"
                    ) from e
                await asyncio.sleep(self.backoff_delay(attempt))

        logger.info("Connected to signaling server %s", self.url)
        self._reader = asyncio.create_task(self._read_loop())

    async def send(self, message: Dict[str, Any]) -> None:
        if self._ws is None:
            raise SignalingError("Not connected to signaling server")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise SignalingError("Signaling connection closed") from e

    async def request(self, message: Dict[str, Any], expect: Iterable[str]) -> Dict[str, Any]:
        """Send message and wait for the first reply of one of the expected types."""
        future = asyncio.get_running_loop().create_future()
        waiter = (set(expect), future)
        self._waiters.append(waiter)
        try:
            await self.send(message)
            return await asyncio.wait_for(future, self.request_timeout)
        except asyncio.TimeoutError as e:
            raise SignalingError(f"Timed out waiting for {message.get('type')} reply") from e
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    async def create_session(self, session_code: str, host_id: str) -> None:
        reply = await self.request(
            {"type": messages.CREATE_SESSION, "sessionCode": session_code, "hostId": host_id},
            expect=(messages.SESSION_CREATED, messages.ERROR),
        )
        if reply["type"] == messages.ERROR:
            raise SessionCodeInUseError(str(reply.get("data") or "Session creation failed"))

    async def join_session(self, session_code: str, client_id: str) -> str:
        """
        Join a session.

        Returns:
            The host's peer id
        """
        reply = await self.request(
            {"type": messages.JOIN_SESSION, "sessionCode": session_code, "clientId": client_id},
            expect=(messages.SESSION_JOINED, messages.SESSION_NOT_FOUND, messages.ERROR),
        )
        if reply["type"] == messages.SESSION_NOT_FOUND:
            raise SessionNotFoundError("Session not found. Check the code and try again.")
        if reply["type"] == messages.ERROR:
            raise SignalingError(str(reply.get("data") or "Join failed"))
        return reply["data"]["hostId"]

    async def send_signal(self, session_code: str, payload: Any, to: Optional[str] = None) -> None:
        message: Dict[str, Any] = {
            "type": messages.SIGNAL,
            "sessionCode": session_code,
            "payload": payload,
        }
        if to:
            message["to"] = to
        await self.send(message)

    async def leave_session(self, session_code: str) -> None:
        await self.send({"type": messages.LEAVE_SESSION, "sessionCode": session_code})

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None

        if ws is not None:
            await ws.close()

        # A handler may close the client from inside the reader task
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError) as e:
                    logger.warning("Malformed message from signaling server: %s", e)
                    continue
                if not isinstance(message, dict) or "type" not in message:
                    logger.warning("Ignoring untyped message from signaling server")
                    continue
                await self._dispatch(message)
        except ConnectionClosed:
            logger.info("Signaling connection closed")
        finally:
            for _, future in self._waiters:
                if not future.done():
                    future.set_exception(SignalingError("Signaling connection closed"))
            if self._ws is ws:
                self._ws = None
                if self.on_close:
                    result = self.on_close()
                    if inspect.isawaitable(result):
                        await result

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        kind = message["type"]

        for types, future in self._waiters:
            if kind in types and not future.done():
                future.set_result(message)
                return

        handlers = self._handlers.get(kind)
        if not handlers:
            logger.debug("No handler for %s", kind)
            return

        for handler in handlers:
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", kind)
