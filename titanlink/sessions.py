"""
Session registry for the signaling service.

The registry is owned by one SignalingServer and only mutated from its
event loop, so it carries no locks.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from . import messages
from .messages import CreateSession, InboundMessage, JoinSession, LeaveSession, Signal

logger = logging.getLogger(__name__)

ROLE_HOST = "host"
ROLE_CLIENT = "client"


class Connection:
    """
    One signaling peer as seen by the registry.

    Transports subclass this and implement send().
    """

    def __init__(self, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex[:8]
        self.session_code: Optional[str] = None
        self.role: Optional[str] = None
        self.peer_id = ""

    def send(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    def unbind(self) -> None:
        self.session_code = None
        self.role = None
        self.peer_id = ""


@dataclass
class ClientEntry:
    connection_id: str
    joined_at: float


@dataclass
class Session:
    code: str
    host_id: str
    host_connection_id: str
    created_at: float
    last_active_at: float
    clients: Dict[str, ClientEntry] = field(default_factory=dict)


class SessionRegistry:
    """Active sessions and the connections bound to them."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.sessions: Dict[str, Session] = {}
        self.connections: Dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self.sessions)

    def get(self, code: str) -> Optional[Session]:
        return self.sessions.get(code)

    def add_connection(self, conn: Connection) -> None:
        self.connections[conn.id] = conn

    def remove_connection(self, conn: Connection) -> None:
        """Drop a closed connection; same semantics as leave-session."""
        self.leave(conn)
        self.connections.pop(conn.id, None)

    def handle(self, conn: Connection, message: InboundMessage) -> None:
        """Dispatch a validated inbound message from conn."""
        if isinstance(message, CreateSession):
            self.create_session(conn, message.session_code, message.host_id)
        elif isinstance(message, JoinSession):
            self.join_session(conn, message.session_code, message.client_id)
        elif isinstance(message, Signal):
            self.route_signal(conn, message)
        elif isinstance(message, LeaveSession):
            self.leave(conn)

    def create_session(self, conn: Connection, code: str, host_id: str) -> bool:
        if code in self.sessions:
            logger.info("Session code %s already in use (conn %s)", code, conn.id)
            conn.send(messages.error("Session code already in use"))
            return False

        if conn.session_code:
            self.leave(conn)

        now = self._clock()
        self.sessions[code] = Session(
            code=code,
            host_id=host_id,
            host_connection_id=conn.id,
            created_at=now,
            last_active_at=now,
        )
        conn.session_code = code
        conn.role = ROLE_HOST
        conn.peer_id = host_id

        logger.info("Session created: %s by host %s", code, host_id)
        conn.send(messages.session_created())
        return True

    def join_session(self, conn: Connection, code: str, client_id: str) -> bool:
        session = self.sessions.get(code)
        if session is None:
            conn.send(messages.session_not_found())
            return False

        if conn.session_code:
            self.leave(conn)
            # Leaving may have destroyed the session if conn was its host
            session = self.sessions.get(code)
            if session is None:
                conn.send(messages.session_not_found())
                return False

        now = self._clock()
        session.clients[client_id] = ClientEntry(connection_id=conn.id, joined_at=now)
        session.last_active_at = now
        conn.session_code = code
        conn.role = ROLE_CLIENT
        conn.peer_id = client_id

        logger.info("Client %s joined session %s", client_id, code)
        conn.send(messages.session_joined(session.host_id))

        host = self.connections.get(session.host_connection_id)
        if host:
            host.send(messages.peer_joined(client_id))
        return True

    def route_signal(self, conn: Connection, message: Signal) -> int:
        """
        Forward a signal to its target, or to every other session member.

        Returns:
            Number of connections the signal was delivered to
        """
        session = self.sessions.get(message.session_code)
        if session is None:
            logger.debug("Signal for unknown session %s dropped", message.session_code)
            return 0

        session.last_active_at = self._clock()
        outbound = messages.signal(conn.peer_id, message.to, message.payload)

        if message.to:
            target = self._resolve(session, message.to)
            if target is None:
                logger.debug("Signal target %s not in session %s", message.to, session.code)
                return 0
            target.send(outbound)
            return 1

        delivered = 0
        for other in self.members(session.code):
            if other is not conn:
                other.send(outbound)
                delivered += 1
        return delivered

    def leave(self, conn: Connection) -> None:
        """Unbind conn from its session, notifying the remaining members."""
        code = conn.session_code
        if not code:
            return

        session = self.sessions.get(code)
        if session is not None:
            if conn.role == ROLE_HOST and session.host_connection_id == conn.id:
                for member in self.members(code):
                    member.send(messages.host_left())
                    if member is not conn:
                        member.unbind()
                del self.sessions[code]
                logger.info("Session destroyed: %s", code)
            elif conn.role == ROLE_CLIENT:
                entry = session.clients.get(conn.peer_id)
                if entry and entry.connection_id == conn.id:
                    del session.clients[conn.peer_id]
                    host = self.connections.get(session.host_connection_id)
                    if host:
                        host.send(messages.peer_left(conn.peer_id))
                    logger.info("Client %s left session %s", conn.peer_id, code)

        conn.unbind()

    def members(self, code: str) -> List[Connection]:
        return [c for c in self.connections.values() if c.session_code == code]

    def expire_idle(self, max_idle_seconds: float) -> List[str]:
        """Remove sessions with no activity for max_idle_seconds."""
        now = self._clock()
        expired = [
            code for code, session in self.sessions.items()
            if now - session.last_active_at > max_idle_seconds
        ]
        for code in expired:
            for member in self.members(code):
                member.unbind()
            del self.sessions[code]
            logger.info("Cleaned up stale session: %s", code)
        return expired

    def _resolve(self, session: Session, peer_id: str) -> Optional[Connection]:
        if peer_id == session.host_id:
            return self.connections.get(session.host_connection_id)
        entry = session.clients.get(peer_id)
        if entry is None:
            return None
        return self.connections.get(entry.connection_id)
