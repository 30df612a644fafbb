"""
CircuitBreaker - Stops calling the catalog provider while it is failing.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Provider is failing, requests are rejected without a network attempt
- HALF_OPEN: One trial request is let through to probe recovery

Transitions:
- CLOSED → OPEN: When failure_threshold consecutive failures are reached
- OPEN → HALF_OPEN: After reset_timeout has elapsed since opening
- HALF_OPEN → CLOSED: Trial request succeeded
- HALF_OPEN → OPEN: Trial request failed (opened_at is reset)
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from moviehub.services.errors import CircuitOpenError, ClientError

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    reset_timeout: timedelta = timedelta(seconds=60)  # Time before half-open
    half_open_max_requests: int = 1  # Trial requests allowed in half-open state


class CircuitBreaker:
    """
    Process-wide circuit breaker for the catalog provider.

    All state changes happen under one lock so concurrent callers cannot
    both take the half-open trial slot.

    Usage:
        cb = CircuitBreaker("tmdb")
        data = await cb.call(lambda: http_get(url))
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: datetime | None = None
        self._opened_at: datetime | None = None
        self._half_open_requests = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Current state, reporting HALF_OPEN once the cooldown has elapsed."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def opened_at(self) -> datetime | None:
        return self._opened_at

    def _cooldown_elapsed(self) -> bool:
        return (
            self._opened_at is not None
            and self._clock() >= self._opened_at + self.config.reset_timeout
        )

    def _refresh_state(self) -> None:
        """Apply the OPEN → HALF_OPEN transition. Caller holds the lock."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._half_open_requests = 0
            logger.info(f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN")

    async def acquire(self) -> bool:
        """
        Reserve permission for one request.

        Returns:
            True when the caller holds the half-open trial slot. Pass it back
            to record_success/record_failure; in HALF_OPEN only the trial
            outcome moves the circuit.

        Raises:
            CircuitOpenError: If the circuit is open, or the half-open trial
                slot is already taken
        """
        async with self._lock:
            self._refresh_state()

            if self._state == CircuitState.CLOSED:
                return False

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_requests < self.config.half_open_max_requests:
                    self._half_open_requests += 1
                    logger.info(
                        f"Circuit breaker '{self.service_id}' allowing trial request"
                    )
                    return True
                # Trial in flight, everyone else is treated as OPEN
                raise CircuitOpenError(self.service_id, 0)

            raise CircuitOpenError(self.service_id, self.get_time_until_reset() or 0)

    async def record_success(self, trial: bool = False) -> None:
        """Record a successful request."""
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                if trial:
                    self._close()
            elif self._state == CircuitState.CLOSED:
                # Only consecutive failures count
                self._failure_count = 0

    async def record_failure(self, trial: bool = False) -> None:
        """Record a failed request."""
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN and not trial:
                # Started before the circuit opened; the trial decides
                return

            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                # Any failure in half-open reopens the circuit
                self._open()
            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.config.failure_threshold:
                    self._open()

    async def _release_trial(self) -> None:
        """Give back a half-open slot without recording an outcome."""
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_requests:
                self._half_open_requests -= 1

    async def call(self, request_fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run request_fn through the breaker.

        Client errors mean the provider answered, so they count as success.
        """
        trial = await self.acquire()
        try:
            result = await request_fn()
        except ClientError:
            await self.record_success(trial)
            raise
        except asyncio.CancelledError:
            if trial:
                await self._release_trial()
            raise
        except Exception:
            await self.record_failure(trial)
            raise

        await self.record_success(trial)
        return result

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._half_open_requests = 0
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {self._failure_count} failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._half_open_requests = 0
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._half_open_requests = 0
        self._last_failure_time = None
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or not self._opened_at:
            return None

        reset_at = self._opened_at + self.config.reset_timeout
        remaining = (reset_at - self._clock()).total_seconds()
        return max(0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "opened_at": (self._opened_at.isoformat() if self._opened_at else None),
            "time_until_reset": self.get_time_until_reset(),
        }
