"""
Catalog API Layer.

This package handles all communication with the external track catalog.
"""

from .auth import AccessToken, SpotifyAuthenticator
from .client import SpotifyCatalogClient, parse_track
from .rate_limiter import AdaptiveRateLimiter

__all__ = [
    "AccessToken",
    "AdaptiveRateLimiter",
    "SpotifyAuthenticator",
    "SpotifyCatalogClient",
    "parse_track",
]
