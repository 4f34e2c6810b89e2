"""Wallet custody: mnemonic derivation and encrypted key storage."""

from hotwallet.wallet.derivation import DerivedKey, derive_key, generate_mnemonic, validate_mnemonic
from hotwallet.wallet.manager import Wallet, WalletManager

__all__ = [
    "DerivedKey",
    "Wallet",
    "WalletManager",
    "derive_key",
    "generate_mnemonic",
    "validate_mnemonic",
]
