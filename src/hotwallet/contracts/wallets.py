"""Wallet and balance contracts."""

from typing import Optional

from pydantic import BaseModel, Field

from hotwallet.networks import Network


class WalletInfo(BaseModel):
    """Public view of a custodied wallet. Never includes key material."""

    network: Network
    address: str
    derivation_path: str


class GeneratedWallet(BaseModel):
    """A freshly generated wallet. The mnemonic is returned exactly once."""

    wallet: WalletInfo
    mnemonic: str = Field(..., description="BIP39 seed phrase; store offline, it is not kept")


class BalanceResult(BaseModel):
    """Balance of one asset for one address.

    When ``available`` is False the provider could not be reached and
    ``balance``/``raw`` are None; an outage never reads as an empty wallet.
    """

    network: Network
    address: str
    asset: str = Field(..., description="Native symbol or token symbol/address")
    available: bool = True
    balance: Optional[str] = Field(None, description="Decimal string in human units")
    raw: Optional[int] = Field(None, description="Balance in base units")
    decimals: Optional[int] = None
    error: Optional[dict] = None
