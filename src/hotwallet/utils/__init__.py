"""Utility modules for the hot-wallet engine."""

from hotwallet.utils.circuit import CircuitBreaker, CircuitBreakerMap, CircuitState
from hotwallet.utils.locks import WalletLock, get_wallet_lock
from hotwallet.utils.ratelimit import RateLimiter

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerMap",
    "CircuitState",
    "RateLimiter",
    "WalletLock",
    "get_wallet_lock",
]
