"""
Provides an adaptive rate limiter to avoid 429 "Too Many Requests" errors from the catalog.
"""

import asyncio
import logging
import time

log = logging.getLogger(__name__)


class AdaptiveRateLimiter:
    """
    Spaces out catalog calls and backs off when the catalog pushes back.
    """

    def __init__(
        self, initial_calls_per_second: float = 5.0, max_calls_per_second: float = 10.0
    ):
        self._rate = initial_calls_per_second
        self._max_rate = max_calls_per_second
        self._last_call_time = 0.0
        self._last_429_time = 0.0
        self._blocked_until = 0.0
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    async def on_429(self, retry_after: float | None = None) -> None:
        """
        Called when a 429 is received. Halves the rate and honours the
        server's Retry-After hint for every caller.
        """
        async with self._lock:
            self._rate = max(1.0, self._rate * 0.5)
            now = time.monotonic()
            self._last_429_time = now
            if retry_after:
                self._blocked_until = max(self._blocked_until, now + retry_after)
            log.warning(
                f"[yellow]Catalog rate limit hit. New rate: {self._rate:.1f} calls/s[/yellow]"
            )

    async def acquire(self) -> None:
        """Waits until the next call is allowed."""
        async with self._lock:
            now = time.monotonic()
            if now - self._last_429_time > 300:
                self._rate = min(self._max_rate, self._rate * 1.01)

            wait = max(
                self._blocked_until - now,
                (1.0 / self._rate) - (now - self._last_call_time),
                0.0,
            )
            if wait:
                await asyncio.sleep(wait)
            self._last_call_time = time.monotonic()
