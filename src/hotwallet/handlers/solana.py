"""Solana chain handler.

Native transfers use the system program; SPL token transfers use
``transfer_checked`` between associated token accounts, creating the
recipient's account in the same transaction when it does not exist yet.
"""

import logging
import math
from typing import Optional

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from spl.token.models import TransferCheckedParams

from hotwallet.contracts.transactions import (
    FeeQuote,
    Priority,
    ReceiptStatus,
    SimulationResult,
    TransactionReceipt,
)
from hotwallet.errors import ValidationError
from hotwallet.handlers.base import ChainHandler
from hotwallet.providers.base import ProviderRejection
from hotwallet.types import (
    FeeMarket,
    SignedTransaction,
    TransactionDraft,
    UnsignedTransaction,
)

logger = logging.getLogger(__name__)

SIGNATURE_FEE = 5000  # lamports per signature
FINALIZED_CONFIRMATIONS = 32
# Extra compute consumed by the two compute-budget instructions
COMPUTE_BUDGET_UNITS = 300
MAX_BATCH_TRANSFERS = 8

TIER_PERCENTILES = {Priority.LOW: 25, Priority.MEDIUM: 50, Priority.HIGH: 90}


def percentile(values: list[int], pct: int) -> int:
    """Nearest-rank percentile of ``values`` (0 for an empty list)."""
    if not values:
        return 0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


class SolanaHandler(ChainHandler):
    """Handler for Solana system and SPL token transfers."""

    def validate_address(self, address: str) -> bool:
        if not address:
            return False
        try:
            Pubkey.from_string(address)
        except ValueError:
            return False
        return True

    def resolve_token(self, token: str) -> str:
        mint = super().resolve_token(token)
        if not self.validate_address(mint):
            raise ValidationError(f"Unknown token {token} on {self.network.value}", token=token)
        return mint

    async def _fetch_token_decimals(self, asset: str) -> int:
        return await self.provider.get_token_decimals(asset)

    async def get_balance(self, address: str, token: Optional[str] = None) -> int:
        if token is None:
            return await self.provider.get_balance(address)
        return await self.provider.get_token_balance(address, token)

    async def get_fee_market(self) -> FeeMarket:
        fees = await self.provider.get_recent_prioritization_fees()
        rewards = {priority: percentile(fees, pct) for priority, pct in TIER_PERCENTILES.items()}
        return FeeMarket(
            network=self.network,
            gas_price=rewards[Priority.MEDIUM],
            rewards=rewards,
            fixed_fee=SIGNATURE_FEE,
        )

    async def get_nonce(self, address: str) -> Optional[int]:
        return None

    async def get_height(self) -> int:
        return await self.provider.get_slot()

    async def signatures(self, address: str, before: Optional[str] = None, limit: int = 100) -> list[dict]:
        return await self.provider.get_signatures_for_address(address, before=before, limit=limit)

    async def transaction_detail(self, signature: str) -> Optional[dict]:
        return await self.provider.get_transaction(signature)

    def supports_atomic_batch(self, draft: TransactionDraft) -> bool:
        return len(draft.transfers) <= MAX_BATCH_TRANSFERS

    async def build_unsigned_transaction(
        self, draft: TransactionDraft, fee: Optional[FeeQuote] = None
    ) -> UnsignedTransaction:
        if not self.supports_atomic_batch(draft):
            raise ValidationError(f"At most {MAX_BATCH_TRANSFERS} transfers fit in one Solana transaction")

        sender = Pubkey.from_string(draft.sender)
        instructions = []
        if fee is not None and fee.gas_price:
            instructions.append(set_compute_unit_limit(fee.gas_limit))
            instructions.append(set_compute_unit_price(fee.gas_price))

        created: set[str] = set()
        for item in draft.transfers:
            if not self.validate_address(item.to):
                raise ValidationError(f"Invalid {self.network.value} address: {item.to}", address=item.to)
            recipient = Pubkey.from_string(item.to)

            if item.is_native:
                instructions.append(
                    transfer(TransferParams(from_pubkey=sender, to_pubkey=recipient, lamports=item.amount))
                )
                continue

            mint = Pubkey.from_string(item.asset)
            decimals = await self.token_decimals(item.asset)
            source = get_associated_token_address(sender, mint)
            destination = get_associated_token_address(recipient, mint)
            if str(destination) not in created and not await self.provider.account_exists(str(destination)):
                instructions.append(create_associated_token_account(payer=sender, owner=recipient, mint=mint))
                created.add(str(destination))
            instructions.append(
                transfer_checked(
                    TransferCheckedParams(
                        program_id=TOKEN_PROGRAM_ID,
                        source=source,
                        mint=mint,
                        dest=destination,
                        owner=sender,
                        amount=item.amount,
                        decimals=decimals,
                    )
                )
            )

        blockhash = await self.provider.get_latest_blockhash()
        message = Message.new_with_blockhash(instructions, sender, Hash.from_string(blockhash))
        return UnsignedTransaction(
            draft=draft,
            payload=message,
            fee=fee,
            extra={"blockhash": blockhash, "created_accounts": sorted(created)},
        )

    async def estimate_gas(self, unsigned: UnsignedTransaction) -> int:
        result = await self.provider.simulate_transaction(unsigned)
        if result.get("err") is not None:
            raise ProviderRejection(f"Transaction simulation failed: {result['err']}")
        return int(result.get("units_consumed") or 0) + COMPUTE_BUDGET_UNITS

    async def simulate(self, unsigned: UnsignedTransaction) -> SimulationResult:
        result = await self.provider.simulate_transaction(unsigned)
        logs = result.get("logs") or []
        units = result.get("units_consumed")
        if result.get("err") is not None:
            logger.info(f"Simulation rejected on {self.network.value}: {result['err']}")
            return SimulationResult(success=False, error_detail=str(result["err"]), logs=logs, estimated_gas=units)
        if unsigned.fee is not None and unsigned.fee.gas_price and units and units > unsigned.fee.gas_limit:
            return SimulationResult(
                success=False,
                estimated_gas=units,
                error_detail=f"compute unit limit {unsigned.fee.gas_limit} below required {units}",
                logs=logs,
            )
        return SimulationResult(success=True, estimated_gas=units, logs=logs)

    def sign(self, unsigned: UnsignedTransaction, private_key: bytearray) -> SignedTransaction:
        keypair = Keypair.from_seed(bytes(private_key[:32]))
        if str(keypair.pubkey()) != unsigned.sender:
            raise ValidationError("Signing key does not match sender address")
        tx = Transaction([keypair], unsigned.payload, Hash.from_string(unsigned.extra["blockhash"]))
        return SignedTransaction(
            network=self.network,
            hash=str(tx.signatures[0]),
            raw=bytes(tx),
            unsigned=unsigned,
        )

    async def broadcast(self, signed: SignedTransaction) -> str:
        signature = await self.provider.send_transaction(signed)
        return signature or signed.hash

    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        (status,) = await self.provider.get_signature_statuses([tx_hash])
        if status is None:
            return None

        if status.get("confirmation_status") == "finalized":
            confirmations = max(self.confirmations_required, FINALIZED_CONFIRMATIONS)
        else:
            confirmations = (status.get("confirmations") or 0) + 1

        fee_paid = None
        detail = await self.provider.get_transaction(tx_hash)
        if detail is not None:
            fee_paid = detail.get("meta", {}).get("fee")

        return TransactionReceipt(
            network=self.network,
            hash=tx_hash,
            status=ReceiptStatus.FAILED if status.get("err") else ReceiptStatus.SUCCESS,
            block_number=status.get("slot"),
            fee_paid=fee_paid,
            confirmations=confirmations,
        )
