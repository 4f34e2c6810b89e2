"""Circuit breaker keyed by logical service name.

CLOSED: calls pass through; failures inside the window are counted.
OPEN: calls are rejected immediately with CircuitOpenError.
HALF_OPEN: after the reset timeout one trial call is allowed; success
closes the circuit, failure reopens it.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from hotwallet.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure-counting breaker for one logical service."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        failure_window: float = 60.0,
        is_failure: Optional[Callable[[BaseException], bool]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failure_window = failure_window
        self.is_failure = is_failure or (lambda exc: True)

        self.state = CircuitState.CLOSED
        self.opened_at: Optional[float] = None
        self._failures: list[float] = []
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def failure_count(self) -> int:
        return len(self._failures)

    def _prune(self, now: float) -> None:
        cutoff = now - self.failure_window
        self._failures = [t for t in self._failures if t >= cutoff]

    async def before_call(self) -> bool:
        """Admit or reject a call.

        Returns:
            True if the admitted call is the half-open trial

        Raises:
            CircuitOpenError: If the circuit rejects the call
        """
        async with self._lock:
            now = time.monotonic()
            if self.state == CircuitState.OPEN:
                elapsed = now - (self.opened_at or now)
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
                self.state = CircuitState.HALF_OPEN
                logger.info(f"Circuit {self.name} half-open, allowing trial call")

            if self.state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, self.reset_timeout)
                self._trial_in_flight = True
                return True

            return False

    async def record_success(self, trial: bool = False) -> None:
        async with self._lock:
            if trial:
                self._trial_in_flight = False
            if self.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit {self.name} closed after successful trial")
            self.state = CircuitState.CLOSED
            self.opened_at = None
            self._failures.clear()

    async def record_failure(self, trial: bool = False) -> None:
        async with self._lock:
            now = time.monotonic()
            if trial:
                self._trial_in_flight = False

            if self.state == CircuitState.HALF_OPEN:
                self._open(now)
                return

            self._failures.append(now)
            self._prune(now)
            if len(self._failures) >= self.failure_threshold:
                self._open(now)

    async def release_trial(self) -> None:
        """Return an unused half-open slot (call ended with a caller error)."""
        async with self._lock:
            self._trial_in_flight = False

    def _open(self, now: float) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = now
        logger.warning(
            f"Circuit {self.name} opened after {len(self._failures)} failures, "
            f"retry in {self.reset_timeout}s"
        )

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn()`` under breaker accounting."""
        trial = await self.before_call()
        try:
            result = await fn()
        except BaseException as e:
            if isinstance(e, Exception) and self.is_failure(e):
                await self.record_failure(trial)
            elif trial:
                await self.release_trial()
            raise
        await self.record_success(trial)
        return result

    async def reset(self) -> None:
        async with self._lock:
            self.state = CircuitState.CLOSED
            self.opened_at = None
            self._failures.clear()
            self._trial_in_flight = False


class CircuitBreakerMap:
    """Hands out one breaker per logical service name."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        failure_window: float = 60.0,
        is_failure: Optional[Callable[[BaseException], bool]] = None,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failure_window = failure_window
        self.is_failure = is_failure
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                failure_window=self.failure_window,
                is_failure=self.is_failure,
            )
            self._breakers[name] = breaker
        return breaker

    def states(self) -> dict[str, str]:
        return {name: b.state.value for name, b in self._breakers.items()}
