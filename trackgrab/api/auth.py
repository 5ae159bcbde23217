"""
Handles the client-credentials grant for the catalog API and keeps the
resulting access token fresh.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import aiohttp

from trackgrab.exceptions import CredentialError

if TYPE_CHECKING:
    from .client import SpotifyCatalogClient

log = logging.getLogger(__name__)

TOKEN_URL = "https://accounts.spotify.com/api/token"
# Refresh slightly before the catalog would reject the token
EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float

    def is_fresh(self, margin: float = EXPIRY_MARGIN_SECONDS) -> bool:
        return time.monotonic() < self.expires_at - margin


class SpotifyAuthenticator:
    """
    Manages the access token used by the catalog client.
    """

    def __init__(self, api_client: "SpotifyCatalogClient"):
        """
        Initializes the authenticator.

        Args:
            api_client: A reference to the catalog client owning the session.
        """
        self._api_client = api_client
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()

    @property
    def token(self) -> AccessToken | None:
        return self._token

    def invalidate(self) -> None:
        """Forgets the cached token so the next call fetches a new one."""
        self._token = None

    async def get_token(self) -> str:
        """
        Returns a valid access token, requesting a new one when the cached
        token is missing or about to expire. Concurrent callers share one
        refresh.
        """
        token = self._token
        if token and token.is_fresh():
            return token.value

        async with self._lock:
            if self._token and self._token.is_fresh():
                return self._token.value
            self._token = await self._request_token()
            return self._token.value

    async def _request_token(self) -> AccessToken:
        client_id = self._api_client.client_id
        client_secret = self._api_client.client_secret
        if not client_id or not client_secret:
            raise CredentialError("Catalog client id/secret are not configured.")

        log.debug("Requesting catalog access token...")
        session = await self._api_client.get_session()
        try:
            async with session.post(
                TOKEN_URL,
                data={"grant_type": "client_credentials"},
                auth=aiohttp.BasicAuth(client_id, client_secret),
            ) as r:
                if r.status in (400, 401):
                    raise CredentialError(
                        "The catalog rejected the client credentials."
                    )
                r.raise_for_status()
                payload = await r.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CredentialError(f"Could not reach the catalog token endpoint: {e}") from e

        try:
            value = payload["access_token"]
            expires_in = float(payload.get("expires_in", 3600))
        except (KeyError, TypeError, ValueError) as e:
            raise CredentialError("Malformed token response from the catalog.") from e

        log.info("Catalog access token refreshed.")
        return AccessToken(value=value, expires_at=time.monotonic() + expires_in)
