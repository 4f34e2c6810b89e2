"""Base chain handler interface.

One handler instance is bound to one provider endpoint. The registry keeps
a handler per endpoint and rotates between them.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from hotwallet.contracts.transactions import FeeQuote, SimulationResult, TransactionReceipt
from hotwallet.networks import EndpointOverrides, NetworkConfig, find_token
from hotwallet.types import (
    FeeMarket,
    SignedTransaction,
    TransactionDraft,
    UnsignedTransaction,
)

logger = logging.getLogger(__name__)


class ChainHandler(ABC):
    """Uniform read/build/sign/broadcast contract for one network family.

    Every async method is a network round-trip through ``self.provider``;
    ``sign`` is pure CPU and never awaits.
    """

    def __init__(self, config: NetworkConfig, provider: Any, overrides: Optional[EndpointOverrides] = None):
        self.config = config
        self.provider = provider
        self.overrides = overrides or EndpointOverrides()
        self._decimals_cache: dict[str, int] = {}

    @property
    def network(self):
        return self.config.network

    @property
    def confirmations_required(self) -> int:
        return self.overrides.confirmations or self.config.confirmations

    # ---- addresses and assets ----

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        """Check address format for this network."""
        pass

    def normalize_address(self, address: str) -> str:
        return address

    def resolve_token(self, token: str) -> str:
        """Map a token symbol or address to its contract/mint address."""
        info = find_token(self.network, token)
        if info:
            return info.address
        return token

    async def token_decimals(self, asset: str) -> int:
        """Decimals of a token, read from chain once and cached."""
        info = find_token(self.network, asset)
        if info:
            return info.decimals
        if asset not in self._decimals_cache:
            self._decimals_cache[asset] = await self._fetch_token_decimals(asset)
        return self._decimals_cache[asset]

    async def _fetch_token_decimals(self, asset: str) -> int:
        raise NotImplementedError(f"Tokens are not supported on {self.network.value}")

    # ---- reads ----

    @abstractmethod
    async def get_balance(self, address: str, token: Optional[str] = None) -> int:
        """Balance in base units; ``token`` is a resolved contract/mint address."""
        pass

    @abstractmethod
    async def get_fee_market(self) -> FeeMarket:
        pass

    @abstractmethod
    async def get_nonce(self, address: str) -> Optional[int]:
        """Next nonce for account chains, None where nonces do not exist."""
        pass

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        pass

    @abstractmethod
    async def get_height(self) -> int:
        pass

    # ---- transaction lifecycle ----

    @abstractmethod
    async def build_unsigned_transaction(
        self, draft: TransactionDraft, fee: Optional[FeeQuote] = None
    ) -> UnsignedTransaction:
        """Build a transaction.

        Without ``fee`` the result is a skeleton suitable for gas estimation;
        with ``fee`` it is final and carries the fee actually applied.
        """
        pass

    @abstractmethod
    async def estimate_gas(self, unsigned: UnsignedTransaction) -> int:
        """Gas limit (EVM), virtual size (UTXO) or compute units (Solana)."""
        pass

    @abstractmethod
    async def simulate(self, unsigned: UnsignedTransaction) -> SimulationResult:
        """Dry-run the exact transaction; rejections are a failed result, not an error."""
        pass

    @abstractmethod
    def sign(self, unsigned: UnsignedTransaction, private_key: bytearray) -> SignedTransaction:
        pass

    @abstractmethod
    async def broadcast(self, signed: SignedTransaction) -> str:
        pass

    def supports_atomic_batch(self, draft: TransactionDraft) -> bool:
        """Whether every transfer of ``draft`` fits in one transaction."""
        return len(draft.transfers) == 1

    # ---- observation ----

    @property
    def supports_push(self) -> bool:
        return self.provider.supports_push

    def subscribe(self, address: str) -> AsyncIterator[Any]:
        """Push channel yielding a signal whenever ``address`` may have changed."""
        return self.provider.subscribe(address)

    async def get_pending(self, address: str) -> list[dict]:
        return []
