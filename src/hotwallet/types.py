"""Internal chain-level types shared by providers, handlers and services."""

from dataclasses import dataclass, field
from typing import Any, Optional

from hotwallet.contracts.transactions import FeeQuote, Priority
from hotwallet.networks import Network


@dataclass
class Transfer:
    """One movement of value in a transaction.

    ``asset`` is None for the native coin, otherwise the token contract
    (EVM) or mint (SOL). ``standard`` is one of ``"erc20"``, ``"spl"``,
    ``"erc721"``, ``"erc1155"`` for non-native transfers.
    """

    to: str
    amount: int
    asset: Optional[str] = None
    standard: Optional[str] = None
    token_id: Optional[int] = None

    @property
    def is_native(self) -> bool:
        return self.asset is None

    @property
    def is_nft(self) -> bool:
        return self.standard in ("erc721", "erc1155")


@dataclass
class TransactionDraft:
    """What a transaction should do, before fees and chain specifics."""

    network: Network
    sender: str
    transfers: list[Transfer]
    nonce: Optional[int] = None
    data: Optional[str] = None  # raw EVM calldata sent to transfers[0].to
    # UTXO outpoints already spent by this wallet's unconfirmed sends
    reserved_outpoints: set[tuple[str, int]] = field(default_factory=set)


@dataclass
class UnsignedTransaction:
    """A fully built transaction ready for simulation and signing.

    ``payload`` is family specific: an EVM transaction dict, a
    ``UtxoSpend`` or a Solana ``Message``.
    """

    draft: TransactionDraft
    payload: Any
    fee: Optional[FeeQuote] = None
    nonce: Optional[int] = None
    extra: dict = field(default_factory=dict)

    @property
    def network(self) -> Network:
        return self.draft.network

    @property
    def sender(self) -> str:
        return self.draft.sender

    @property
    def transfers(self) -> list[Transfer]:
        return self.draft.transfers

    def native_amount(self) -> int:
        return sum(t.amount for t in self.transfers if t.is_native)

    def token_amounts(self) -> dict[str, int]:
        """Fungible token amounts leaving the sender, keyed by asset."""
        totals: dict[str, int] = {}
        for t in self.transfers:
            if t.asset is not None and not t.is_nft:
                totals[t.asset] = totals.get(t.asset, 0) + t.amount
        return totals


@dataclass
class SignedTransaction:
    """Signed, serialised transaction. Holds no key material."""

    network: Network
    hash: str
    raw: bytes
    unsigned: UnsignedTransaction

    @property
    def raw_hex(self) -> str:
        return "0x" + self.raw.hex()


@dataclass
class FeeMarket:
    """Raw fee-market snapshot reported by a handler.

    ``rewards`` maps each priority tier to the market price the family
    reports for it: EIP-1559 tips (wei), BTC sat/vB for the tier's block
    target, or SOL micro-lamports per compute unit.
    """

    network: Network
    base_fee: Optional[int] = None
    gas_price: Optional[int] = None
    rewards: dict[Priority, int] = field(default_factory=dict)
    fixed_fee: int = 0


@dataclass
class Utxo:
    """An unspent output owned by an address."""

    txid: str
    vout: int
    value: int
    address: str
    confirmed: bool = True
    block_height: Optional[int] = None
