"""
Relay (TURN) credential service.

Self-hosted relay servers are configured with a shared secret and issue
time-limited credentials in the coturn "use-auth-secret" scheme:

    username   = "<expiry epoch seconds>:<user id>"
    credential = base64(HMAC-SHA1(secret, username))

The service keeps a pool of such servers, probes each one with a STUN
binding request, and hands out ICE server lists built from the healthy
ones, ranked by latency. When none is healthy it degrades to a hosted
provider (if configured) and then to a public relay pool.
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import math
import re
import secrets
import struct
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .twilio import TwilioError, TwilioRelayProvider

logger = logging.getLogger(__name__)

IceServer = Dict[str, Any]

# Always offered first, no credentials needed
BOOTSTRAP_STUN: List[IceServer] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]

# Used by peers when the credential service is unavailable
PUBLIC_STUN: List[IceServer] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
    {"urls": "stun:stun2.l.google.com:19302"},
    {"urls": "stun:stun3.l.google.com:19302"},
    {"urls": "stun:stun4.l.google.com:19302"},
    {"urls": "stun:stun.services.mozilla.com:3478"},
    {"urls": "stun:global.stun.twilio.com:3478"},
]

# Free public relays, last resort when no self-hosted server answers
PUBLIC_RELAY_POOL: List[IceServer] = [
    {
        "urls": "turn:openrelay.metered.ca:80",
        "username": "openrelayproject",
        "credential": "openrelayproject",
    },
    {
        "urls": "turn:openrelay.metered.ca:443",
        "username": "openrelayproject",
        "credential": "openrelayproject",
    },
    {
        "urls": "turn:openrelay.metered.ca:443?transport=tcp",
        "username": "openrelayproject",
        "credential": "openrelayproject",
    },
]

DEFAULT_TURN_PORT = 3478
DEFAULT_TURNS_PORT = 5349

STUN_BINDING_REQUEST = 0x0001
STUN_MAGIC_COOKIE = 0x2112A442


@dataclass(frozen=True)
class RelayCredentials:
    username: str
    credential: str
    expires_at: int  # epoch seconds


def generate_credentials(
    secret: str,
    user_id: str = "titanlink",
    ttl_seconds: int = 86400,
    now: Optional[float] = None,
) -> RelayCredentials:
    """
    Generate time-limited relay credentials.

    Args:
        secret: Shared secret configured on the relay server
        user_id: Identifier embedded in the username
        ttl_seconds: Credential lifetime
        now: Current epoch time (defaults to time.time())
    """
    if now is None:
        now = time.time()
    expires_at = int(now) + int(ttl_seconds)
    username = f"{expires_at}:{user_id}"
    digest = hmac.new(secret.encode("utf-8"), username.encode("utf-8"), hashlib.sha1).digest()
    return RelayCredentials(
        username=username,
        credential=base64.b64encode(digest).decode("ascii"),
        expires_at=expires_at,
    )


def parse_server_url(url: str) -> Tuple[str, int]:
    """
    Extract host and port from a relay URL.

    Accepts "turn:host:port", "turns:host", "host:port?transport=udp" and
    bare hostnames.
    """
    rest = re.sub(r"^(turns?|stuns?):", "", url.strip())
    rest = rest.lstrip("/").split("?", 1)[0]
    host, sep, port = rest.rpartition(":")
    if not sep:
        return rest, DEFAULT_TURN_PORT
    try:
        return host, int(port)
    except ValueError:
        return rest, DEFAULT_TURN_PORT


@dataclass
class RelayServerEntry:
    """One self-hosted relay server and its last health-check result."""

    url: str
    secret: str
    priority: int = 0
    healthy: bool = False
    latency_ms: Optional[float] = None
    last_checked_at: Optional[float] = None

    @property
    def host(self) -> str:
        return parse_server_url(self.url)[0]

    @property
    def port(self) -> int:
        return parse_server_url(self.url)[1]

    def rank_key(self) -> Tuple[bool, float, int]:
        latency = self.latency_ms if self.latency_ms is not None else math.inf
        return (not self.healthy, latency, self.priority)


def relay_endpoints(server: RelayServerEntry, creds: RelayCredentials) -> List[IceServer]:
    """STUN entry plus UDP, TCP and TLS relay entries for one server."""
    host, port = server.host, server.port
    auth = {"username": creds.username, "credential": creds.credential}
    return [
        {"urls": f"stun:{host}:{port}"},
        {"urls": f"turn:{host}:{port}", **auth},
        {"urls": f"turn:{host}:{port}?transport=tcp", **auth},
        {"urls": f"turns:{host}:{DEFAULT_TURNS_PORT}?transport=tcp", **auth},
    ]


def stun_binding_request(transaction_id: Optional[bytes] = None) -> bytes:
    """Minimal 20-byte STUN binding request with no attributes."""
    if transaction_id is None:
        transaction_id = secrets.token_bytes(12)
    return struct.pack("!HHI12s", STUN_BINDING_REQUEST, 0, STUN_MAGIC_COOKIE, transaction_id)


class _ProbeProtocol(asyncio.DatagramProtocol):
    def __init__(self, done: asyncio.Future):
        self.done = done

    def datagram_received(self, data: bytes, addr) -> None:
        if not self.done.done():
            self.done.set_result(data)

    def error_received(self, exc: Exception) -> None:
        if not self.done.done():
            self.done.set_exception(exc)


async def probe_server(host: str, port: int, timeout: float) -> Optional[float]:
    """
    Send a STUN binding request over UDP and wait for any reply.

    Returns:
        Round-trip time in milliseconds, or None if nothing came back
    """
    loop = asyncio.get_running_loop()
    done = loop.create_future()
    started = time.monotonic()

    try:
        transport, _ = await asyncio.wait_for(
            loop.create_datagram_endpoint(lambda: _ProbeProtocol(done), remote_addr=(host, port)),
            timeout,
        )
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug("Probe to %s:%d could not start: %s", host, port, e)
        return None

    try:
        transport.sendto(stun_binding_request())
        await asyncio.wait_for(done, timeout)
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug("Probe to %s:%d failed: %r", host, port, e)
        return None
    finally:
        transport.close()

    return (time.monotonic() - started) * 1000


Prober = Callable[[str, int, float], Awaitable[Optional[float]]]


class RelayCredentialService:
    """
    Ranked, health-checked pool of self-hosted relay servers.

    Health results are cached for health_check_interval seconds; changing
    the pool or a server's secret discards them immediately.
    """

    def __init__(
        self,
        servers: Optional[Iterable[Dict[str, Any]]] = None,
        ttl_seconds: int = 86400,
        user_id: str = "titanlink",
        health_check_interval: float = 60,
        probe_timeout: float = 2.0,
        twilio: Optional[TwilioRelayProvider] = None,
        prober: Prober = probe_server,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.user_id = user_id
        self.health_check_interval = health_check_interval
        self.probe_timeout = probe_timeout
        self.twilio = twilio

        self._prober = prober
        self._clock = clock
        self._servers: List[RelayServerEntry] = []
        self._last_check: Optional[float] = None
        self._generation = 0
        self._check_lock = asyncio.Lock()

        if servers:
            self.configure_multiple(servers)

    @classmethod
    def from_config(cls, config) -> "RelayCredentialService":
        twilio = TwilioRelayProvider(config.twilio_account_sid, config.twilio_auth_token)
        return cls(
            servers=config.relay_servers,
            ttl_seconds=config.credential_ttl,
            user_id=config.relay_user_id,
            health_check_interval=config.health_check_interval,
            probe_timeout=config.probe_timeout,
            twilio=twilio,
        )

    @property
    def servers(self) -> List[RelayServerEntry]:
        """Current pool in rank order."""
        return list(self._servers)

    def is_configured(self) -> bool:
        return bool(self._servers)

    def invalidate(self) -> None:
        """Forget cached health results."""
        self._generation += 1
        self._last_check = None

    def add_or_update(self, url: str, secret: str, priority: int = 0) -> RelayServerEntry:
        """Insert a server, or replace the secret and priority of an existing one."""
        for entry in self._servers:
            if entry.url == url:
                entry.secret = secret
                entry.priority = priority
                break
        else:
            entry = RelayServerEntry(url=url, secret=secret, priority=priority)
            self._servers.append(entry)

        self.invalidate()
        logger.info("Relay server configured: %s (priority %d)", url, priority)
        return entry

    def configure_multiple(self, servers: Iterable[Dict[str, Any]]) -> None:
        """Replace the whole pool."""
        self._servers = [
            RelayServerEntry(
                url=s["url"],
                secret=s["secret"],
                priority=int(s.get("priority", 0)),
            )
            for s in servers
        ]
        self.invalidate()
        logger.info("Relay pool replaced: %d server(s)", len(self._servers))

    def remove(self, url: str) -> bool:
        before = len(self._servers)
        self._servers = [s for s in self._servers if s.url != url]
        self.invalidate()
        return len(self._servers) != before

    def _is_fresh(self) -> bool:
        return (
            self._last_check is not None
            and self._clock() - self._last_check < self.health_check_interval
        )

    async def check_health(self, force: bool = False) -> List[RelayServerEntry]:
        """
        Probe every server concurrently and re-rank the pool.

        Skipped if the previous run is younger than health_check_interval,
        unless force is set. If the pool or a secret changes while probes
        are in flight, the new pool is probed before the results count.
        """
        async with self._check_lock:
            if not force and self._is_fresh():
                return self.servers

            while True:
                generation = self._generation
                await self._probe_all(list(self._servers))
                if generation == self._generation:
                    break
                logger.info("Relay pool changed during health check, probing again")

            self._servers.sort(key=RelayServerEntry.rank_key)
            self._last_check = self._clock()
            return self.servers

    async def _probe_all(self, servers: List[RelayServerEntry]) -> None:
        results = await asyncio.gather(
            *(self._prober(s.host, s.port, self.probe_timeout) for s in servers),
            return_exceptions=True,
        )

        checked_at = time.time()
        for server, result in zip(servers, results):
            if isinstance(result, BaseException):
                logger.warning("Health probe for %s raised: %s", server.url, result)
                result = None
            server.healthy = result is not None
            server.latency_ms = result
            server.last_checked_at = checked_at
            if server.healthy:
                logger.info("Relay %s healthy (%.1f ms)", server.url, result)
            else:
                logger.warning("Relay %s unreachable", server.url)

    async def get_ice_servers(self, user_id: Optional[str] = None) -> List[IceServer]:
        """
        Assemble the ICE server list handed to peer connections.

        Returns:
            Bootstrap STUN entries followed by one STUN and three relay
            entries per healthy server, or a fallback relay pool when no
            self-hosted server is healthy.
        """
        if self._servers:
            await self.check_health()

        ice_servers = [dict(s) for s in BOOTSTRAP_STUN]
        healthy = [s for s in self._servers if s.healthy]

        if healthy:
            for server in healthy:
                creds = generate_credentials(server.secret, user_id or self.user_id, self.ttl_seconds)
                ice_servers.extend(relay_endpoints(server, creds))
            return ice_servers

        if self.twilio is not None and self.twilio.is_configured():
            try:
                ice_servers.extend(await self.twilio.get_ice_servers())
                return ice_servers
            except TwilioError as e:
                logger.warning("Hosted relay provider failed: %s", e)

        logger.info("No healthy self-hosted relay, using public relay pool")
        ice_servers.extend(dict(s) for s in PUBLIC_RELAY_POOL)
        return ice_servers
