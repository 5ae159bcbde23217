"""
Async client for the track catalog (Spotify Web API), used to turn a free
text query into canonical track metadata.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from trackgrab.exceptions import CatalogTransportError, CredentialError, NoMatch
from trackgrab.models.track import TrackMetadata
from trackgrab.utils.circuit_breaker import CircuitBreaker, CircuitBreakerError

from .auth import SpotifyAuthenticator
from .rate_limiter import AdaptiveRateLimiter

log = logging.getLogger(__name__)


def parse_track(item: Dict[str, Any]) -> TrackMetadata:
    """Builds TrackMetadata from one catalog search result."""
    album = item.get("album") or {}
    images = album.get("images") or []
    # The catalog lists images widest first
    artwork_url = images[0].get("url") if images else None
    artists = tuple(a["name"] for a in item.get("artists", []) if a.get("name"))
    return TrackMetadata(
        title=item.get("name") or "Unknown Title",
        artists=artists,
        album=album.get("name") or "Unknown Album",
        artwork_url=artwork_url,
        catalog_id=item.get("id"),
    )


class SpotifyCatalogClient:
    """
    Async client for the catalog's search endpoint.

    Features:
    - Client-credentials token handling with automatic refresh
    - Circuit breaker for API resilience
    - Adaptive rate limiting
    """

    BASE_URL = "https://api.spotify.com/v1/"

    def __init__(self, client_id: str, client_secret: str, market: Optional[str] = None):
        """
        Initializes the catalog client.

        Args:
            client_id: Catalog application client id.
            client_secret: Catalog application client secret.
            market: Optional ISO country code to restrict results to.
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.market = market

        self._session: Optional[aiohttp.ClientSession] = None
        self._rate_limiter = AdaptiveRateLimiter()
        self._authenticator = SpotifyAuthenticator(self)
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60,
            counted_exceptions=(aiohttp.ClientError, asyncio.TimeoutError),
        )

    @property
    def authenticator(self) -> SpotifyAuthenticator:
        """Provides access to the authentication helper."""
        return self._authenticator

    async def get_session(self) -> aiohttp.ClientSession:
        """Ensures an active aiohttp session is available."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=30, connect=10),
            )
        return self._session

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def api_call(self, endpoint: str, **params: Any) -> Dict[str, Any]:
        """
        Makes an authenticated GET with rate limiting and circuit breaker.
        A 401 invalidates the cached token and the call is repeated once.
        """
        session = await self.get_session()
        for attempt in (1, 2):
            token = await self._authenticator.get_token()
            async with self._circuit_breaker:
                await self._rate_limiter.acquire()
                start_time = time.monotonic()
                async with session.get(
                    self.BASE_URL + endpoint,
                    params=params,
                    headers={"Authorization": f"Bearer {token}"},
                ) as r:
                    duration_ms = (time.monotonic() - start_time) * 1000
                    log.debug(f"Catalog call {endpoint} -> {r.status} ({duration_ms:.0f} ms)")

                    if r.status == 401 and attempt == 1:
                        self._authenticator.invalidate()
                        continue
                    if r.status == 429:
                        retry_after = r.headers.get("Retry-After")
                        await self._rate_limiter.on_429(
                            float(retry_after) if retry_after and retry_after.isdigit() else None
                        )
                    r.raise_for_status()
                    return await r.json()
        raise CredentialError("The catalog rejected a freshly issued access token.")

    async def search_tracks(self, query: str, limit: int = 1) -> Dict[str, Any]:
        params: Dict[str, Any] = {"q": query, "type": "track", "limit": limit}
        if self.market:
            params["market"] = self.market
        return await self.api_call("search", **params)

    async def match_track(self, query: str) -> TrackMetadata:
        """
        Returns the catalog's single best match for ``query``.

        Ranking is left entirely to the catalog; only the top result is used.

        Raises:
            NoMatch: The catalog returned zero results.
            CatalogTransportError: The catalog could not be reached or failed.
        """
        try:
            response = await self.search_tracks(query, limit=1)
        except CircuitBreakerError as e:
            raise CatalogTransportError(f"Catalog temporarily disabled: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CatalogTransportError(f"Catalog search failed: {e}") from e

        items = (response.get("tracks") or {}).get("items") or []
        if not items:
            log.info(f"No catalog match for query '{query}'")
            raise NoMatch()
        return parse_track(items[0])
