"""Token-bucket rate limiting for outbound provider calls.

Each logical service (usually ``"<network>-handler"``) gets its own bucket.
Waiting suspends only the calling task.
"""

import asyncio
import logging
import time
from typing import Optional

from hotwallet.errors import ThrottledError

logger = logging.getLogger(__name__)


class TokenBucket:
    """A refilling bucket of request tokens."""

    def __init__(self, capacity: int, refill_rate: float):
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.updated_at = time.monotonic()
        self.lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.updated_at
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.updated_at = now

    def try_acquire(self) -> float:
        """Take a token if one is available.

        Returns:
            0.0 if a token was taken, otherwise seconds until one is available
        """
        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return 0.0
        return (1 - self.tokens) / self.refill_rate


class RateLimiter:
    """Per-service token bucket rate limiter."""

    def __init__(
        self,
        capacity: int = 10,
        refill_rate: float = 10.0,
        default_timeout: Optional[float] = 30.0,
    ):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.default_timeout = default_timeout
        self._buckets: dict[str, TokenBucket] = {}

    def configure(self, service: str, capacity: int, refill_rate: float) -> None:
        """Override bucket parameters for a single service."""
        self._buckets[service] = TokenBucket(capacity, refill_rate)

    def _bucket(self, service: str) -> TokenBucket:
        bucket = self._buckets.get(service)
        if bucket is None:
            bucket = TokenBucket(self.capacity, self.refill_rate)
            self._buckets[service] = bucket
        return bucket

    async def wait_for_availability(self, service: str, timeout: Optional[float] = None) -> None:
        """Wait until a token is available for ``service``.

        Args:
            service: Logical service name
            timeout: Max seconds to wait (defaults to the limiter's timeout)

        Raises:
            ThrottledError: If no token becomes available in time
        """
        if timeout is None:
            timeout = self.default_timeout
        bucket = self._bucket(service)
        deadline = time.monotonic() + timeout if timeout is not None else None

        while True:
            async with bucket.lock:
                wait = bucket.try_acquire()
            if wait == 0.0:
                return

            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining < wait:
                    logger.warning(f"Rate limit exceeded for {service}")
                    raise ThrottledError(service, wait)
            await asyncio.sleep(wait)

    def available_tokens(self, service: str) -> float:
        bucket = self._bucket(service)
        bucket._refill()
        return bucket.tokens
