"""BIP39 mnemonics and per-family key derivation.

- EVM and BTC: BIP32 secp256k1 (BIP44 / BIP84 paths)
- SOL: SLIP-10 ed25519, every path segment hardened

Derived private keys are returned in a ``bytearray`` so the caller can wipe
them after encryption.
"""

import logging
from dataclasses import dataclass

from bip_utils import (
    Bip32Secp256k1,
    Bip32Slip10Ed25519,
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip39WordsNum,
    EthAddrEncoder,
    P2WPKHAddrEncoder,
    SolAddrEncoder,
)

from hotwallet.errors import ValidationError
from hotwallet.networks import NetworkConfig, NetworkFamily, validate_derivation_path

logger = logging.getLogger(__name__)


@dataclass
class DerivedKey:
    """Address and raw private key derived for one path."""

    address: str
    derivation_path: str
    private_key: bytearray


def generate_mnemonic() -> str:
    """Generate a fresh 12-word English mnemonic."""
    return str(Bip39MnemonicGenerator().FromWordsNumber(Bip39WordsNum.WORDS_NUM_12))


def validate_mnemonic(phrase: str) -> str:
    """Normalise and validate a mnemonic.

    Raises:
        ValidationError: If the phrase is not a valid BIP39 mnemonic
    """
    normalized = " ".join(phrase.strip().lower().split()) if phrase else ""
    if not normalized:
        raise ValidationError("Seed phrase is empty")
    try:
        valid = Bip39MnemonicValidator().IsValid(normalized)
    except Exception:
        valid = False
    if not valid:
        raise ValidationError("Invalid seed phrase")
    return normalized


def derive_key(phrase: str, config: NetworkConfig, path: str) -> DerivedKey:
    """Derive the address and private key at ``path`` for a network.

    Args:
        phrase: Validated mnemonic
        config: Target network
        path: BIP32 derivation path

    Returns:
        DerivedKey with the private key in a wipeable bytearray
    """
    path = validate_derivation_path(path)
    seed = Bip39SeedGenerator(phrase).Generate()

    if config.family == NetworkFamily.SOLANA:
        if any(not (segment.endswith("'") or segment.endswith("h")) for segment in path.split("/")[1:]):
            raise ValidationError(f"Solana paths must be fully hardened: {path}", path=path)
        ctx = Bip32Slip10Ed25519.FromSeedAndPath(seed, path)
        address = SolAddrEncoder.EncodeKey(ctx.PublicKey().KeyObject())
    else:
        ctx = Bip32Secp256k1.FromSeedAndPath(seed, path)
        if config.family == NetworkFamily.EVM:
            address = EthAddrEncoder.EncodeKey(ctx.PublicKey().KeyObject())
        else:
            address = P2WPKHAddrEncoder.EncodeKey(ctx.PublicKey().KeyObject(), hrp=config.address_hrp or "bc")

    return DerivedKey(
        address=address,
        derivation_path=path,
        private_key=bytearray(ctx.PrivateKey().Raw().ToBytes()),
    )
