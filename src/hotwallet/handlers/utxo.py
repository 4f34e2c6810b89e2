"""Bitcoin (UTXO) chain handler.

Coin selection is largest-first over the sender's unspent outputs. Change
below the dust limit is folded into the fee instead of creating an
unspendable output. Output scripts, witness signing and the txid come
from bitcoinlib.
"""

import logging
import math
from dataclasses import dataclass
from typing import NamedTuple, Optional

from bip_utils import P2WPKHAddrEncoder
from bitcoinlib.encoding import EncodingError
from bitcoinlib.keys import BKeyError, Key
from bitcoinlib.transactions import Output, Transaction
from bitcoinlib.transactions import TransactionError as BitcoinlibTransactionError
from ecdsa import SECP256k1, SigningKey

from hotwallet.contracts.transactions import (
    FeeQuote,
    Priority,
    ReceiptStatus,
    SimulationResult,
    TransactionReceipt,
)
from hotwallet.errors import InsufficientBalanceError, NetworkUnavailableError, ValidationError
from hotwallet.handlers.base import ChainHandler
from hotwallet.types import (
    FeeMarket,
    SignedTransaction,
    TransactionDraft,
    UnsignedTransaction,
    Utxo,
)

logger = logging.getLogger(__name__)

DUST_LIMIT = 546
# Opt-in replace-by-fee, no relative locktime
RBF_SEQUENCE = 0xFFFFFFFD

# Confirmation target (blocks) per tier
TIER_TARGETS = {Priority.LOW: 144, Priority.MEDIUM: 6, Priority.HIGH: 2}

# bech32 prefix -> bitcoinlib network name
BITCOINLIB_NETWORKS = {"bc": "bitcoin", "tb": "testnet", "bcrt": "regtest"}

# P2WPKH input: outpoint, empty scriptSig, sequence; witness: count, DER sig + hashtype, pubkey
_INPUT_BASE_SIZE = 32 + 4 + 1 + 4
_INPUT_WITNESS_SIZE = 1 + 1 + 72 + 1 + 33

_LIBRARY_ERRORS = (BKeyError, EncodingError, BitcoinlibTransactionError)


def rate_for_target(estimates: dict[int, float], target: int) -> int:
    """Fee rate for the closest available target at or below ``target``."""
    if not estimates:
        raise ValueError("no fee estimates")
    eligible = [t for t in estimates if t <= target]
    chosen = max(eligible) if eligible else min(estimates)
    return max(1, math.ceil(estimates[chosen]))


def _compact_size_len(n: int) -> int:
    return 1 if n < 0xFD else 3 if n <= 0xFFFF else 5


class PaymentOutput(NamedTuple):
    address: str
    value: int
    script: bytes = b""


@dataclass
class UtxoSpend:
    """Inputs and outputs chosen for a P2WPKH spend.

    ``vsize`` is the size the signed transaction will have, assuming
    72-byte signatures, so a quote never undershoots the real fee rate.
    """

    inputs: list[Utxo]
    outputs: list[PaymentOutput]
    change_index: Optional[int] = None

    @property
    def fee(self) -> int:
        return sum(u.value for u in self.inputs) - sum(o.value for o in self.outputs)

    @property
    def outpoints(self) -> set[tuple[str, int]]:
        return {(u.txid, u.vout) for u in self.inputs}

    @property
    def vsize(self) -> int:
        base = 4 + 4 + _compact_size_len(len(self.inputs)) + _compact_size_len(len(self.outputs))
        base += _INPUT_BASE_SIZE * len(self.inputs)
        base += sum(8 + _compact_size_len(len(o.script)) + len(o.script) for o in self.outputs)
        witness = 2 + _INPUT_WITNESS_SIZE * len(self.inputs)
        return math.ceil((base * 4 + witness) / 4)


class UTXOHandler(ChainHandler):
    """Handler for native SegWit Bitcoin wallets."""

    @property
    def hrp(self) -> str:
        return self.config.address_hrp or "bc"

    @property
    def library_network(self) -> str:
        return BITCOINLIB_NETWORKS.get(self.hrp, "bitcoin")

    def lock_script(self, address: str) -> bytes:
        """Output script paying ``address`` on this network.

        Raises:
            ValidationError: If the address is malformed or from another network
        """
        try:
            output = Output(0, address, network=self.library_network)
        except _LIBRARY_ERRORS as e:
            raise ValidationError(f"Invalid {self.network.value} address {address}: {e}", address=address)
        if not output.lock_script:
            raise ValidationError(f"Invalid {self.network.value} address {address}", address=address)
        return output.lock_script

    def validate_address(self, address: str) -> bool:
        if not address:
            return False
        try:
            self.lock_script(address)
        except ValidationError:
            return False
        return True

    def resolve_token(self, token: str) -> str:
        raise ValidationError(f"Tokens are not supported on {self.network.value}", token=token)

    async def get_balance(self, address: str, token: Optional[str] = None) -> int:
        if token is not None:
            raise ValidationError(f"Tokens are not supported on {self.network.value}", token=token)
        return await self.provider.get_balance(address)

    async def get_fee_market(self) -> FeeMarket:
        estimates = await self.provider.fee_estimates()
        if not estimates:
            raise NetworkUnavailableError(self.network.value, "no fee estimates")
        rewards = {priority: rate_for_target(estimates, target) for priority, target in TIER_TARGETS.items()}
        return FeeMarket(network=self.network, gas_price=rewards[Priority.MEDIUM], rewards=rewards)

    async def get_nonce(self, address: str) -> Optional[int]:
        return None

    async def get_height(self) -> int:
        return await self.provider.tip_height()

    async def get_pending(self, address: str) -> list[dict]:
        return [{"hash": tx["txid"], **tx} for tx in await self.provider.mempool_transactions(address)]

    async def address_transactions(self, address: str, last_seen_txid: Optional[str] = None) -> list[dict]:
        return await self.provider.address_transactions(address, last_seen_txid)

    async def mempool_transactions(self, address: str) -> list[dict]:
        return await self.provider.mempool_transactions(address)

    def supports_atomic_batch(self, draft: TransactionDraft) -> bool:
        return all(t.is_native for t in draft.transfers)

    def _assemble(
        self, sender: str, selected: list[Utxo], payments: list[PaymentOutput], fee_rate: int
    ) -> Optional[UtxoSpend]:
        """Spend ``selected``, or None if they cannot pay ``fee_rate``."""
        total_in = sum(u.value for u in selected)
        total_out = sum(o.value for o in payments)

        change_script = self.lock_script(sender)
        with_change = UtxoSpend(
            inputs=list(selected),
            outputs=payments + [PaymentOutput(sender, 0, change_script)],
            change_index=len(payments),
        )
        change = total_in - total_out - math.ceil(with_change.vsize * fee_rate)
        if change >= DUST_LIMIT:
            with_change.outputs[-1] = PaymentOutput(sender, change, change_script)
            return with_change

        without_change = UtxoSpend(inputs=list(selected), outputs=list(payments))
        if total_in - total_out >= math.ceil(without_change.vsize * fee_rate):
            return without_change
        return None

    async def build_unsigned_transaction(
        self, draft: TransactionDraft, fee: Optional[FeeQuote] = None
    ) -> UnsignedTransaction:
        if not self.supports_atomic_batch(draft):
            raise ValidationError(f"Only native transfers are supported on {self.network.value}")
        if not self.lock_script(draft.sender).startswith(b"\x00\x14"):
            raise ValidationError(f"Sender {draft.sender} is not a P2WPKH address", address=draft.sender)

        payments = []
        for transfer in draft.transfers:
            if transfer.amount < DUST_LIMIT:
                raise ValidationError(
                    f"Output of {transfer.amount} sat is below the dust limit of {DUST_LIMIT}",
                    to=transfer.to,
                )
            payments.append(PaymentOutput(transfer.to, transfer.amount, self.lock_script(transfer.to)))

        fee_rate = fee.gas_price if fee is not None else 0
        utxos = [
            u for u in await self.provider.get_utxos(draft.sender) if (u.txid, u.vout) not in draft.reserved_outpoints
        ]
        ordered = sorted(utxos, key=lambda u: (u.confirmed, u.value), reverse=True)

        spend = None
        selected: list[Utxo] = []
        for utxo in ordered:
            selected.append(utxo)
            spend = self._assemble(draft.sender, selected, payments, fee_rate)
            if spend is not None:
                break

        if spend is None:
            available = sum(u.value for u in utxos)
            required = sum(o.value for o in payments)
            if fee is not None:
                required += fee.estimated_cost
            raise InsufficientBalanceError(available, required, asset=self.config.symbol)

        if fee is not None:
            # Excess from folded dust change is reported as fixed fee
            variable = spend.vsize * fee_rate
            fee = fee.model_copy(
                update={
                    "gas_limit": spend.vsize,
                    "fixed_fee": spend.fee - variable,
                    "estimated_cost": spend.fee,
                }
            )

        logger.debug(
            f"Selected {len(spend.inputs)} of {len(utxos)} UTXOs for {draft.sender} "
            f"(vsize={spend.vsize}, fee={spend.fee})"
        )
        return UnsignedTransaction(draft=draft, payload=spend, fee=fee, extra={"fee_rate": fee_rate})

    async def estimate_gas(self, unsigned: UnsignedTransaction) -> int:
        return unsigned.payload.vsize

    async def simulate(self, unsigned: UnsignedTransaction) -> SimulationResult:
        """Re-validate the exact transaction against current chain state.

        Esplora has no dry-run endpoint, so the inputs are checked to still
        be unspent and the value balance is checked locally.
        """
        spend: UtxoSpend = unsigned.payload
        unspent = {(u.txid, u.vout): u for u in await self.provider.get_utxos(unsigned.sender)}

        for tx_in in spend.inputs:
            utxo = unspent.get((tx_in.txid, tx_in.vout))
            if utxo is None:
                return SimulationResult(
                    success=False, error_detail=f"input {tx_in.txid}:{tx_in.vout} is missing or spent"
                )
            if (tx_in.txid, tx_in.vout) in unsigned.draft.reserved_outpoints:
                return SimulationResult(
                    success=False, error_detail=f"input {tx_in.txid}:{tx_in.vout} is spent by a pending send"
                )
            if utxo.value != tx_in.value:
                return SimulationResult(
                    success=False, error_detail=f"input {tx_in.txid}:{tx_in.vout} value mismatch"
                )

        if spend.fee <= 0:
            return SimulationResult(success=False, error_detail="outputs exceed inputs")
        for output in spend.outputs:
            if output.value < DUST_LIMIT:
                return SimulationResult(success=False, error_detail=f"dust output to {output.address}")
        if unsigned.fee is not None and spend.fee != unsigned.fee.estimated_cost:
            return SimulationResult(success=False, error_detail="fee does not match quote")

        return SimulationResult(success=True, estimated_gas=spend.vsize)

    def sign(self, unsigned: UnsignedTransaction, private_key: bytearray) -> SignedTransaction:
        """Sign every input with the wallet key (BIP-143, SIGHASH_ALL).

        Raises:
            ValidationError: If an input is not owned by the key
        """
        spend: UtxoSpend = unsigned.payload
        verifying_key = SigningKey.from_string(bytes(private_key), curve=SECP256k1).get_verifying_key()
        own_address = P2WPKHAddrEncoder.EncodeKey(verifying_key.to_string("compressed"), hrp=self.hrp)
        for tx_in in spend.inputs:
            if tx_in.address != own_address:
                raise ValidationError(f"Signing key does not control input {tx_in.txid}:{tx_in.vout}")

        try:
            key = Key(bytes(private_key), network=self.library_network, compressed=True)
            tx = Transaction(network=self.library_network, witness_type="segwit", version=2)
            for tx_in in spend.inputs:
                tx.add_input(
                    tx_in.txid,
                    tx_in.vout,
                    keys=key,
                    value=tx_in.value,
                    witness_type="segwit",
                    sequence=RBF_SEQUENCE,
                )
            for output in spend.outputs:
                tx.add_output(output.value, output.address)
            tx.sign_and_update()
        except _LIBRARY_ERRORS as e:
            raise ValidationError(f"Could not sign {self.network.value} transaction: {e}")
        if not tx.verify():
            raise ValidationError(f"Signed {self.network.value} transaction failed verification")

        return SignedTransaction(network=self.network, hash=tx.txid, raw=tx.raw(), unsigned=unsigned)

    async def broadcast(self, signed: SignedTransaction) -> str:
        txid = await self.provider.broadcast(signed)
        return txid or signed.hash

    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        tx = await self.provider.get_transaction(tx_hash)
        if tx is None:
            return None

        status = tx.get("status", {})
        vsize = math.ceil(tx.get("weight", 0) / 4)
        if not status.get("confirmed"):
            return TransactionReceipt(
                network=self.network,
                hash=tx_hash,
                status=ReceiptStatus.PENDING,
                gas_used=vsize,
                fee_paid=tx.get("fee"),
            )

        tip = await self.provider.tip_height()
        return TransactionReceipt(
            network=self.network,
            hash=tx_hash,
            status=ReceiptStatus.SUCCESS,
            block_number=status.get("block_height"),
            gas_used=vsize,
            effective_gas_price=tx["fee"] // vsize if vsize else None,
            fee_paid=tx.get("fee"),
            confirmations=max(0, tip - status["block_height"] + 1),
        )
