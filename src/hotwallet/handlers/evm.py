"""EVM chain handler (ETH, MATIC, BNB).

Builds EIP-1559 (type 2) transactions where the network supports them and
legacy transactions otherwise. Token and NFT transfers are encoded as
contract calls with eth_abi; signing uses eth_account.
"""

import logging
import statistics
from typing import Optional

from eth_account import Account
from eth_utils import is_address, to_checksum_address

from hotwallet import abi
from hotwallet.contracts.transactions import (
    FeeQuote,
    Priority,
    ReceiptStatus,
    SimulationResult,
    TransactionReceipt,
)
from hotwallet.errors import ConfigurationError, ValidationError
from hotwallet.handlers.base import ChainHandler
from hotwallet.providers.base import ProviderRejection
from hotwallet.types import (
    FeeMarket,
    SignedTransaction,
    TransactionDraft,
    Transfer,
    UnsignedTransaction,
)

logger = logging.getLogger(__name__)

# fee-history reward percentiles per tier
TIER_PERCENTILES = {Priority.LOW: 10, Priority.MEDIUM: 50, Priority.HIGH: 90}
FEE_HISTORY_BLOCKS = 10


class EVMHandler(ChainHandler):
    """Handler for Ethereum-compatible account chains."""

    def validate_address(self, address: str) -> bool:
        return bool(address) and is_address(address)

    def normalize_address(self, address: str) -> str:
        if not self.validate_address(address):
            raise ValidationError(f"Invalid {self.network.value} address: {address}", address=address)
        return to_checksum_address(address)

    def resolve_token(self, token: str) -> str:
        resolved = super().resolve_token(token)
        if not is_address(resolved):
            raise ValidationError(f"Unknown token {token} on {self.network.value}", token=token)
        return to_checksum_address(resolved)

    async def call(self, to: str, data: str) -> str:
        """Read-only contract call."""
        return await self.provider.call({"to": to, "data": data})

    async def _fetch_token_decimals(self, asset: str) -> int:
        (decimals,) = abi.decode_result(["uint8"], await self.call(asset, abi.encode_call(abi.ERC20_DECIMALS)))
        return int(decimals)

    async def get_balance(self, address: str, token: Optional[str] = None) -> int:
        if token is None:
            return await self.provider.get_balance(address)
        result = await self.call(token, abi.encode_call(abi.ERC20_BALANCE_OF, to_checksum_address(address)))
        (balance,) = abi.decode_result(["uint256"], result)
        return int(balance)

    async def get_fee_market(self) -> FeeMarket:
        if not self.config.eip1559:
            return FeeMarket(network=self.network, gas_price=await self.provider.gas_price())

        percentiles = [TIER_PERCENTILES[p] for p in Priority]
        history = await self.provider.fee_history(FEE_HISTORY_BLOCKS, percentiles)
        rewards = {}
        for column, priority in enumerate(Priority):
            samples = [row[column] for row in history["rewards"] if len(row) > column]
            rewards[priority] = int(statistics.median(samples)) if samples else 0
        return FeeMarket(network=self.network, base_fee=history["base_fee"], rewards=rewards)

    async def get_nonce(self, address: str) -> Optional[int]:
        return await self.provider.get_transaction_count(address, "pending")

    async def get_height(self) -> int:
        return await self.provider.block_number()

    async def get_pending(self, address: str) -> list[dict]:
        return await self.provider.pending_transactions(address)

    def supports_atomic_batch(self, draft: TransactionDraft) -> bool:
        if len(draft.transfers) == 1:
            return True
        first = draft.transfers[0]
        return all(
            t.standard == "erc1155" and t.asset == first.asset and t.to == first.to for t in draft.transfers
        )

    def _encode(self, sender: str, transfers: list[Transfer], data: Optional[str]) -> tuple[str, int, str]:
        """Return (to, value, calldata) for the transfers."""
        if len(transfers) > 1:
            if not self.supports_atomic_batch(TransactionDraft(self.network, sender, transfers)):
                raise ValidationError("EVM transactions carry one transfer unless batching ERC-1155 items")
            first = transfers[0]
            calldata = abi.encode_call(
                abi.ERC1155_SAFE_BATCH_TRANSFER_FROM,
                sender,
                to_checksum_address(first.to),
                [t.token_id for t in transfers],
                [t.amount for t in transfers],
                b"",
            )
            return first.asset, 0, calldata

        transfer = transfers[0]
        to = to_checksum_address(transfer.to)
        if transfer.is_native:
            return to, transfer.amount, data or "0x"
        if transfer.standard == "erc20":
            return transfer.asset, 0, abi.encode_call(abi.ERC20_TRANSFER, to, transfer.amount)
        if transfer.standard == "erc721":
            return transfer.asset, 0, abi.encode_call(abi.ERC721_SAFE_TRANSFER_FROM, sender, to, transfer.token_id)
        if transfer.standard == "erc1155":
            return (
                transfer.asset,
                0,
                abi.encode_call(abi.ERC1155_SAFE_TRANSFER_FROM, sender, to, transfer.token_id, transfer.amount, b""),
            )
        raise ValidationError(f"Unsupported transfer standard: {transfer.standard}")

    async def build_unsigned_transaction(
        self, draft: TransactionDraft, fee: Optional[FeeQuote] = None
    ) -> UnsignedTransaction:
        sender = self.normalize_address(draft.sender)
        to, value, data = self._encode(sender, draft.transfers, draft.data)
        nonce = draft.nonce if draft.nonce is not None else await self.get_nonce(sender)

        tx = {
            "from": sender,
            "to": to_checksum_address(to),
            "value": value,
            "data": data,
            "nonce": nonce,
            "chainId": self.config.chain_id,
        }
        if fee is not None:
            tx["gas"] = fee.gas_limit
            if fee.is_eip1559:
                if not self.config.eip1559:
                    raise ValidationError(f"{self.network.value} does not support EIP-1559 fees")
                tx["maxFeePerGas"] = fee.max_fee_per_gas
                tx["maxPriorityFeePerGas"] = fee.max_priority_fee_per_gas
            else:
                tx["gasPrice"] = fee.gas_price

        return UnsignedTransaction(draft=draft, payload=tx, fee=fee, nonce=nonce)

    async def estimate_gas(self, unsigned: UnsignedTransaction) -> int:
        tx = {k: v for k, v in unsigned.payload.items() if k in ("from", "to", "value", "data")}
        return await self.provider.estimate_gas(tx)

    async def simulate(self, unsigned: UnsignedTransaction) -> SimulationResult:
        tx = unsigned.payload
        try:
            await self.provider.call(tx)
            gas = await self.provider.estimate_gas(tx)
        except ProviderRejection as e:
            logger.info(f"Simulation rejected on {self.network.value}: {e.detail}")
            return SimulationResult(success=False, error_detail=e.detail)

        if "gas" in tx and gas > tx["gas"]:
            return SimulationResult(
                success=False,
                estimated_gas=gas,
                error_detail=f"gas limit {tx['gas']} below required {gas}",
            )
        return SimulationResult(success=True, estimated_gas=gas)

    def sign(self, unsigned: UnsignedTransaction, private_key: bytearray) -> SignedTransaction:
        account = Account.from_key(bytes(private_key))
        if account.address.lower() != unsigned.sender.lower():
            raise ValidationError("Signing key does not match sender address")

        tx = {k: v for k, v in unsigned.payload.items() if k != "from"}
        signed = account.sign_transaction(tx)
        raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
        return SignedTransaction(
            network=self.network,
            hash="0x" + bytes(signed.hash).hex(),
            raw=bytes(raw),
            unsigned=unsigned,
        )

    async def broadcast(self, signed: SignedTransaction) -> str:
        tx_hash = await self.provider.send_raw_transaction(signed)
        return tx_hash or signed.hash

    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        receipt = await self.provider.get_transaction_receipt(tx_hash)
        if receipt is None:
            return None
        head = await self.provider.block_number()
        return TransactionReceipt(
            network=self.network,
            hash=tx_hash,
            status=ReceiptStatus.SUCCESS if receipt["status"] == 1 else ReceiptStatus.FAILED,
            block_number=receipt["block_number"],
            gas_used=receipt["gas_used"],
            effective_gas_price=receipt["effective_gas_price"],
            fee_paid=receipt["gas_used"] * receipt["effective_gas_price"],
            confirmations=max(0, head - receipt["block_number"] + 1),
        )

    async def explorer_history(
        self, address: str, action: str, start_block: int, end_block: int, page: int, offset: int
    ) -> list[dict]:
        if self.provider.explorer is None:
            raise ConfigurationError(f"No explorer API configured for {self.network.value}")
        return await self.provider.explorer.account_history(
            address, action, start_block, end_block, page, offset
        )
