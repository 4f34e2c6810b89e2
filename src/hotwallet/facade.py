"""HotWallet: the single entry point of the engine.

Everything crossing this boundary is plain data (Pydantic contracts) or a
typed HotWalletError. Decrypted key material never leaves the wallet
manager; a generated mnemonic is returned exactly once.
"""

import logging
from typing import Optional

from hotwallet.config import Settings, get_settings
from hotwallet.contracts.history import HistoryOptions, HistoryPage
from hotwallet.contracts.nft import NFTAsset, NFTCollection, NFTStandard, NFTTransferItem
from hotwallet.contracts.transactions import (
    BatchItemOutcome,
    FeeQuote,
    Priority,
    TransactionReceipt,
    TransactionRequest,
    TransactionResult,
)
from hotwallet.contracts.wallets import BalanceResult, GeneratedWallet, WalletInfo
from hotwallet.errors import SimulationError
from hotwallet.handlers.registry import ChainHandlerRegistry
from hotwallet.pipeline import TransactionPipeline
from hotwallet.services.balance import BalanceService
from hotwallet.services.gas import GasService
from hotwallet.services.history import HistoryService
from hotwallet.services.monitoring import MonitoringService, Subscription
from hotwallet.services.nft import NFTService
from hotwallet.wallet.manager import WalletManager

logger = logging.getLogger(__name__)


class HotWallet:
    """Multi-chain hot wallet."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[ChainHandlerRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or ChainHandlerRegistry(self.settings)

        session_factory = None
        if self.settings.persist_wallets:
            from hotwallet.ledger.database import get_db

            session_factory = get_db

        self.wallets = WalletManager(
            self.settings.resolve_master_key(),
            persist=self.settings.persist_wallets,
            session_factory=session_factory,
        )
        self.gas = GasService(self.registry, self.settings)
        self.pipeline = TransactionPipeline(self.registry, self.wallets, self.gas, session_factory=session_factory)
        self.balances = BalanceService(self.registry)
        self.nfts = NFTService(self.registry, self.pipeline, self.settings)
        self.history = HistoryService(self.registry, self.pipeline)
        self.monitoring = MonitoringService(self.registry, self.settings, self.history)
        self._started = False

    async def start(self) -> None:
        """Create tables and load persisted wallets (when persistence is on)."""
        if self._started:
            return
        if self.settings.persist_wallets:
            from hotwallet.ledger.database import init_db

            await init_db()
            await self.wallets.load()
        self._started = True
        logger.info(f"HotWallet started ({self.settings.environment}, {len(self.registry.networks)} networks)")

    async def close(self) -> None:
        """Stop monitoring and release database connections."""
        await self.monitoring.stop_all()
        if self.settings.persist_wallets:
            from hotwallet.ledger.database import close_db

            await close_db()
        self._started = False
        logger.info("HotWallet closed")

    async def __aenter__(self) -> "HotWallet":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ======================
    # Wallets
    # ======================

    async def generate_wallet(self, network, path: Optional[str] = None) -> GeneratedWallet:
        return await self.wallets.generate(network, path)

    async def import_wallet(self, phrase: str, network, path: Optional[str] = None) -> WalletInfo:
        return await self.wallets.import_from_phrase(phrase, network, path)

    def list_wallets(self, network=None) -> list[WalletInfo]:
        return self.wallets.list_wallets(network)

    async def remove_wallet(self, network, address: str) -> bool:
        return await self.wallets.remove_wallet(network, address)

    async def rotate_master_key(self, new_master_key: str) -> int:
        return await self.wallets.rotate_master_key(new_master_key)

    # ======================
    # Balances
    # ======================

    async def get_balance(self, network, address: str) -> BalanceResult:
        return await self.balances.get_native_balance(network, address)

    async def get_token_balance(self, network, address: str, token: str) -> BalanceResult:
        return await self.balances.get_token_balance(network, address, token)

    async def get_balances(self, network, address: str, tokens: Optional[list[str]] = None) -> list[BalanceResult]:
        return await self.balances.get_balances(network, address, tokens)

    # ======================
    # Transactions
    # ======================

    async def get_fee_quote(self, request: TransactionRequest) -> dict[Priority, FeeQuote]:
        """Fee quotes for every priority tier of ``request``."""
        job = await self.pipeline.draft_from_request(request)
        skeleton = await self.registry.build_unsigned_transaction(job.network, job.draft)
        return await self.gas.recommendations(job.network, skeleton)

    async def prepare_transaction(self, request: TransactionRequest) -> TransactionResult:
        """Build and quote without simulating or signing."""
        job = await self.pipeline.prepare(request)
        return job.result()

    async def simulate_transaction(self, request: TransactionRequest) -> TransactionResult:
        """Build, quote and dry-run. A rejected dry-run is returned, not raised."""
        job = await self.pipeline.prepare(request)
        try:
            await self.pipeline.simulate(job)
        except SimulationError:
            pass
        return job.result()

    async def send_transaction(
        self, request: TransactionRequest, wait: bool = False, timeout: Optional[float] = None
    ) -> TransactionResult:
        """Run ``request`` through the full pipeline.

        Args:
            request: Transfer request
            wait: Wait for the network's confirmation threshold
            timeout: Seconds to wait for confirmation

        Raises:
            SimulationError: If the dry-run rejected the transaction
            InsufficientBalanceError: If the balance does not cover amount plus fee
            TransactionError: If broadcast failed or the transaction reverted
        """
        return await self.pipeline.execute(request, wait=wait, timeout=timeout)

    async def send_token_transaction(
        self,
        network,
        from_address: str,
        to_address: str,
        token: str,
        amount: str,
        priority: Priority = Priority.MEDIUM,
        wait: bool = False,
    ) -> TransactionResult:
        request = TransactionRequest(
            network=self.registry.config(network).network,
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            token=token,
            priority=priority,
        )
        return await self.pipeline.execute(request, wait=wait)

    async def send_batch(self, requests: list[TransactionRequest], wait: bool = False) -> list[BatchItemOutcome]:
        return await self.pipeline.execute_batch(requests, wait=wait)

    async def get_receipt(self, network, tx_hash: str) -> Optional[TransactionReceipt]:
        return await self.registry.get_receipt(network, tx_hash)

    async def get_pending(self, network, address: str) -> list[dict]:
        return await self.history.get_pending(network, address)

    async def get_history(self, network, address: str, options: Optional[HistoryOptions] = None) -> HistoryPage:
        return await self.history.get_history(network, address, options)

    # ======================
    # NFTs
    # ======================

    async def register_nft_collection(
        self, network, contract: str, standard: Optional[NFTStandard] = None, token_ids: Optional[list[int]] = None
    ) -> NFTCollection:
        return await self.nfts.register_collection(network, contract, standard, token_ids)

    def list_nft_collections(self, network) -> list[NFTCollection]:
        return self.nfts.list_collections(network)

    async def list_nfts(self, network, address: str, include_metadata: bool = False) -> list[NFTAsset]:
        return await self.nfts.list_owned_assets(network, address, include_metadata)

    async def get_nft_metadata(self, network, contract: str, token_id: int) -> dict:
        return await self.nfts.get_metadata(network, contract, token_id)

    async def owns_nft(
        self, network, owner: str, contract: str, token_id: int, quantity: int = 1, max_age: Optional[float] = None
    ) -> bool:
        return await self.nfts.owns_asset(network, owner, contract, token_id, quantity, max_age)

    async def transfer_nft(
        self,
        network,
        from_address: str,
        to_address: str,
        contract: str,
        token_id: int,
        priority: Priority = Priority.MEDIUM,
        wait: bool = False,
    ) -> TransactionResult:
        return await self.nfts.transfer(network, from_address, to_address, contract, token_id, priority, wait)

    async def transfer_nft_units(
        self,
        network,
        from_address: str,
        to_address: str,
        contract: str,
        token_id: int,
        quantity: int,
        priority: Priority = Priority.MEDIUM,
        wait: bool = False,
    ) -> TransactionResult:
        return await self.nfts.transfer_multi_unit(
            network, from_address, to_address, contract, token_id, quantity, priority, wait
        )

    async def batch_transfer_nfts(
        self,
        network,
        from_address: str,
        items: list[NFTTransferItem],
        priority: Priority = Priority.MEDIUM,
        wait: bool = False,
    ) -> list[BatchItemOutcome]:
        return await self.nfts.batch_transfer(network, from_address, items, priority, wait)

    # ======================
    # Monitoring
    # ======================

    async def monitor_address(
        self,
        network,
        address: str,
        track_balance: bool = True,
        tokens: tuple[str, ...] = (),
        track_transfers: bool = False,
    ) -> Subscription:
        return await self.monitoring.monitor_address(network, address, track_balance, tokens, track_transfers)

    async def stop_monitoring(self, subscription_id: str) -> bool:
        return await self.monitoring.stop_monitoring(subscription_id)

    # ======================
    # Operators
    # ======================

    def endpoint_status(self, network) -> dict:
        return self.registry.endpoint_status(network)

    async def set_endpoint_enabled(self, network, url: str, enabled: bool) -> None:
        await self.registry.set_endpoint_enabled(network, url, enabled)

    async def check_endpoints(self, network) -> dict:
        """Re-check unhealthy endpoints and return the refreshed status."""
        return await self.registry.check_endpoints(network)
