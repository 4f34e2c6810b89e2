"""Concurrency control for wallet operations.

Provides per-(network, address) locking so two state-mutating operations on
the same wallet (for example two concurrent sends) never race for a nonce.
Operations on different wallets run concurrently.
"""

import asyncio
import logging
from typing import Optional

from hotwallet.errors import LockTimeoutError

logger = logging.getLogger(__name__)

# Global lock registry: (network, address) -> asyncio.Lock
_wallet_locks: dict[tuple[str, str], asyncio.Lock] = {}
_registry_lock = asyncio.Lock()


def _lock_key(network: str, address: str) -> tuple[str, str]:
    # EVM addresses are case-insensitive; base58/bech32 ones are not
    if address.startswith("0x"):
        address = address.lower()
    return str(network), address


async def get_wallet_lock(network: str, address: str) -> asyncio.Lock:
    """Get or create the lock for a wallet.

    Args:
        network: Network identifier
        address: Wallet address

    Returns:
        asyncio.Lock for the wallet
    """
    key = _lock_key(network, address)
    async with _registry_lock:
        if key not in _wallet_locks:
            _wallet_locks[key] = asyncio.Lock()
        return _wallet_locks[key]


class WalletLock:
    """Context manager for exclusive access to a wallet's on-chain state.

    Example:
        async with WalletLock("ETH", address, operation="send"):
            nonce = await registry.get_nonce(...)
            ...
    """

    def __init__(
        self,
        network: str,
        address: str,
        timeout: Optional[float] = 60.0,
        operation: str = "wallet_operation",
    ):
        """Initialize the lock.

        Args:
            network: Network identifier
            address: Wallet address
            timeout: Maximum time to wait for lock (None = wait forever)
            operation: Description of the operation for logging
        """
        self.network = str(network)
        self.address = address
        self.timeout = timeout
        self.operation = operation
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "WalletLock":
        """Acquire the lock."""
        self._lock = await get_wallet_lock(self.network, self.address)

        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
            self._acquired = True
            logger.debug(f"Lock acquired for {self.network}:{self.address}: {self.operation}")
            return self

        except asyncio.TimeoutError:
            logger.warning(
                f"Lock timeout for {self.network}:{self.address} after {self.timeout}s: {self.operation}"
            )
            raise LockTimeoutError(
                f"Could not acquire lock for {self.address} on {self.network} within {self.timeout}s"
            )

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Release the lock."""
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            logger.debug(f"Lock released for {self.network}:{self.address}: {self.operation}")
        return False


def clear_wallet_locks() -> None:
    """Clear all wallet locks (useful for testing)."""
    _wallet_locks.clear()
