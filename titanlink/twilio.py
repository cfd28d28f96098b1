"""
Hosted relay credentials from Twilio's Network Traversal Service.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

TOKENS_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Tokens.json"

# Refresh this long before Twilio's own expiry
EXPIRY_MARGIN_SECONDS = 300


class TwilioError(RuntimeError):
    """Raised when Twilio credentials cannot be fetched."""


class TwilioRelayProvider:
    """Fetch and cache temporary ICE servers from Twilio."""

    def __init__(
        self,
        account_sid: str = "",
        auth_token: str = "",
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.timeout = timeout
        self._clock = clock
        self._cached: Optional[List[Dict[str, Any]]] = None
        self._expires_at = 0.0

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    def set_credentials(self, account_sid: str, auth_token: str) -> None:
        """Swap account credentials and drop anything cached under the old ones."""
        self.account_sid = account_sid
        self.auth_token = auth_token
        self._cached = None
        self._expires_at = 0.0

    async def get_ice_servers(self) -> List[Dict[str, Any]]:
        """
        Return Twilio ICE servers, using the cache while it is valid.

        Raises:
            TwilioError: If not configured or the API call fails
        """
        if self._cached is not None and self._clock() < self._expires_at - EXPIRY_MARGIN_SECONDS:
            logger.debug("Using cached Twilio credentials")
            return [dict(s) for s in self._cached]

        if not self.is_configured():
            raise TwilioError("Twilio credentials are not configured")

        token = await self._fetch_token()

        servers = []
        for server in token.get("ice_servers", []):
            entry: Dict[str, Any] = {"urls": server.get("urls") or server.get("url", "")}
            if server.get("username"):
                entry["username"] = server["username"]
            if server.get("credential"):
                entry["credential"] = server["credential"]
            servers.append(entry)

        try:
            ttl = int(token.get("ttl", 86400))
        except (TypeError, ValueError):
            ttl = 86400

        self._cached = servers
        self._expires_at = self._clock() + ttl
        logger.info("Got %d ICE servers from Twilio, expires in %ds", len(servers), ttl)
        return [dict(s) for s in servers]

    async def _fetch_token(self) -> Dict[str, Any]:
        url = TOKENS_URL.format(account_sid=self.account_sid)
        auth = aiohttp.BasicAuth(self.account_sid, self.auth_token)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(auth=auth, timeout=timeout) as session:
                async with session.post(url) as response:
                    if response.status not in (200, 201):
                        body = await response.text()
                        raise TwilioError(f"Twilio API error: {response.status} - {body}")
                    return await response.json()
        except asyncio.TimeoutError as e:
            raise TwilioError(f"Twilio request timed out after {self.timeout}s") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise TwilioError(f"Twilio request failed: {e}") from e
