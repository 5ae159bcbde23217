"""
Circuit breaker guarding calls to the external track catalog.
"""

import asyncio
import logging
import time
from enum import Enum

log = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised when a call is refused because the circuit is open."""

    def __init__(self, retry_in: float):
        self.retry_in = retry_in
        super().__init__(f"Circuit is open. Retrying allowed in {retry_in:.0f}s.")


class CircuitBreaker:
    """
    Stops hammering a failing service.

    After ``failure_threshold`` consecutive failures the circuit opens and
    every call is refused for ``recovery_timeout`` seconds. The first call
    after that runs as a probe (HALF_OPEN): ``success_threshold`` successes
    close the circuit again, one failure re-opens it.

    Only exceptions matching ``counted_exceptions`` count as failures, so a
    legitimate "no result" answer does not trip the breaker.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        success_threshold: int = 1,
        counted_exceptions: tuple[type[BaseException], ...] = (Exception,),
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.counted_exceptions = counted_exceptions

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_successes = 0
        self._opened_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _remaining_open_time(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self._opened_at))

    async def _before_call(self) -> None:
        async with self._lock:
            if self._state is not CircuitState.OPEN:
                return
            remaining = self._remaining_open_time()
            if remaining > 0:
                raise CircuitBreakerError(remaining)
            log.info("[yellow]Catalog circuit half-open, probing recovery.[/yellow]")
            self._state = CircuitState.HALF_OPEN
            self._probe_successes = 0

    async def _record_success(self) -> None:
        async with self._lock:
            self._failures = 0
            if self._state is CircuitState.HALF_OPEN:
                self._probe_successes += 1
                if self._probe_successes >= self.success_threshold:
                    log.info("[green]✓ Catalog circuit closed.[/green]")
                    self._state = CircuitState.CLOSED
                    self._opened_at = None

    async def _record_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN or (
                self._state is CircuitState.CLOSED
                and self._failures >= self.failure_threshold
            ):
                log.error(
                    f"[red]✗ Catalog circuit opened after {self._failures} "
                    f"failure(s); calls blocked for {self.recovery_timeout:.0f}s.[/red]"
                )
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()
                self._failures = 0

    async def __aenter__(self):
        await self._before_call()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self._record_success()
        elif issubclass(exc_type, self.counted_exceptions):
            await self._record_failure()
        return False
