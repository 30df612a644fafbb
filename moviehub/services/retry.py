"""
RetryPolicy - Bounded retries with exponential backoff for provider calls.

Only transient failures (timeouts, network errors, 5xx, 429) are retried.
Client errors and an open circuit surface on the first attempt.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from moviehub.services.circuit_breaker import CircuitBreaker
from moviehub.services.errors import UpstreamTransientError

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Retry configuration and runner.

    Usage:
        policy = RetryPolicy(max_attempts=3, base_delay=1.0)
        data = await policy.run(lambda: http_get(url), breaker=cb)
    """

    max_attempts: int = 3  # Total attempts, first one included
    base_delay: float = 1.0  # Seconds before the first retry
    max_delay: float = 10.0
    jitter: bool = True
    sleep: Callable[[float], Awaitable[None]] = field(
        default=asyncio.sleep, repr=False
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def compute_delay(self, attempt: int) -> float:
        """Delay after the given zero-based attempt."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter and delay > 0:
            delay += random.uniform(0, 0.1 * delay)
        return delay

    async def run(
        self,
        request_fn: Callable[[], Awaitable[T]],
        breaker: CircuitBreaker | None = None,
    ) -> T:
        """
        Call request_fn until it succeeds or attempts run out.

        When a breaker is given every attempt goes through it, so an open
        circuit stops the loop immediately with CircuitOpenError.

        Raises:
            The last failure once max_attempts is reached, or the first
            non-transient failure.
        """
        for attempt in range(self.max_attempts):
            try:
                if breaker is not None:
                    result = await breaker.call(request_fn)
                else:
                    result = await request_fn()
            except UpstreamTransientError as e:
                if attempt == self.max_attempts - 1:
                    logger.error(
                        f"Request failed after {self.max_attempts} attempts: {e}"
                    )
                    raise

                delay = self.compute_delay(attempt)
                logger.warning(
                    f"Transient failure (attempt {attempt + 1}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self.sleep(delay)
                continue

            if attempt > 0:
                logger.info(f"Request succeeded after {attempt + 1} attempts")
            return result

        # max_attempts >= 1, so the loop always returns or raises
        raise RuntimeError("retry loop exited without a result")
