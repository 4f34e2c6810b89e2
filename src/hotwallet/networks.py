"""Supported networks, token registry and derivation paths.

Networks form a closed set; each belongs to exactly one family:
- EVM account chains: ETH, MATIC (EIP-1559), BNB (legacy gas price)
- UTXO chain: BTC (native SegWit, BIP84)
- Non-EVM account chain: SOL

Derivation paths follow the standard BIP44/BIP84 layouts used by common
software wallets.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from hotwallet.errors import ConfigurationError, ValidationError


class NetworkFamily(str, Enum):
    """Transaction/fee/address model shared by a group of networks."""

    EVM = "evm"
    UTXO = "utxo"
    SOLANA = "solana"


class Network(str, Enum):
    """Network identifiers accepted by the engine."""

    ETH = "ETH"
    MATIC = "MATIC"
    BNB = "BNB"
    BTC = "BTC"
    SOL = "SOL"


@dataclass(frozen=True)
class NetworkConfig:
    """Static configuration for a network."""

    network: Network
    family: NetworkFamily
    name: str
    symbol: str
    decimals: int
    rpc_urls: tuple[str, ...]
    default_path: str
    confirmations: int

    chain_id: Optional[int] = None  # EVM chains only
    eip1559: bool = False
    ws_url: Optional[str] = None
    explorer_api_url: Optional[str] = None
    fallback_fee_price: int = 0  # wei/gas, sat/vB or micro-lamports/CU
    address_hrp: Optional[str] = None  # bech32 prefix for UTXO chains


@dataclass(frozen=True)
class TokenInfo:
    """A fungible token known to the registry."""

    symbol: str
    network: Network
    address: str  # contract address (EVM) or mint (SOL)
    decimals: int
    name: Optional[str] = None


GWEI = 10**9

NETWORKS: dict[Network, NetworkConfig] = {
    Network.ETH: NetworkConfig(
        network=Network.ETH,
        family=NetworkFamily.EVM,
        name="Ethereum",
        symbol="ETH",
        decimals=18,
        rpc_urls=("https://eth.llamarpc.com", "https://rpc.ankr.com/eth"),
        default_path="m/44'/60'/0'/0/0",
        confirmations=12,
        chain_id=1,
        eip1559=True,
        explorer_api_url="https://api.etherscan.io/api",
        fallback_fee_price=50 * GWEI,
    ),
    Network.MATIC: NetworkConfig(
        network=Network.MATIC,
        family=NetworkFamily.EVM,
        name="Polygon",
        symbol="MATIC",
        decimals=18,
        rpc_urls=("https://polygon-rpc.com", "https://rpc.ankr.com/polygon"),
        default_path="m/44'/60'/0'/0/0",
        confirmations=64,
        chain_id=137,
        eip1559=True,
        explorer_api_url="https://api.polygonscan.com/api",
        fallback_fee_price=5 * GWEI,
    ),
    Network.BNB: NetworkConfig(
        network=Network.BNB,
        family=NetworkFamily.EVM,
        name="BNB Smart Chain",
        symbol="BNB",
        decimals=18,
        rpc_urls=("https://bsc-dataseed.binance.org", "https://rpc.ankr.com/bsc"),
        default_path="m/44'/60'/0'/0/0",
        confirmations=15,
        chain_id=56,
        eip1559=False,
        explorer_api_url="https://api.bscscan.com/api",
        fallback_fee_price=5 * GWEI,
    ),
    Network.BTC: NetworkConfig(
        network=Network.BTC,
        family=NetworkFamily.UTXO,
        name="Bitcoin",
        symbol="BTC",
        decimals=8,
        rpc_urls=("https://blockstream.info/api", "https://mempool.space/api"),
        default_path="m/84'/0'/0'/0/0",
        confirmations=2,
        fallback_fee_price=20,
        address_hrp="bc",
    ),
    Network.SOL: NetworkConfig(
        network=Network.SOL,
        family=NetworkFamily.SOLANA,
        name="Solana",
        symbol="SOL",
        decimals=9,
        rpc_urls=("https://api.mainnet-beta.solana.com",),
        default_path="m/44'/501'/0'/0'",
        confirmations=1,
        fallback_fee_price=0,
    ),
}


# ======================
# Token registry
# ======================

_TOKEN_LIST = [
    TokenInfo("USDT", Network.ETH, "0xdAC17F958D2ee523a2206206994597C13D831ec7", 6, "Tether USD"),
    TokenInfo("USDC", Network.ETH, "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6, "USD Coin"),
    TokenInfo("LINK", Network.ETH, "0x514910771AF9Ca656af840dff83E8264EcF986CA", 18, "Chainlink"),
    TokenInfo("UNI", Network.ETH, "0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984", 18, "Uniswap"),
    TokenInfo("AAVE", Network.ETH, "0x7Fc66500c84A76Ad7e9c93437bFc5Ac33E2DDaE9", 18, "Aave"),
    TokenInfo("USDC", Network.MATIC, "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", 6, "USD Coin (PoS)"),
    TokenInfo("LINK", Network.MATIC, "0x53E0bca35eC356BD5ddDFebbD1Fc0fD03FaBad39", 18, "Chainlink"),
    TokenInfo("AAVE", Network.MATIC, "0xD6DF932A45C0f255f85145f286eA0b292B21C90B", 18, "Aave"),
    TokenInfo("CAKE", Network.BNB, "0x0E09FaBB73Bd3Ade0a17ECC321fD13a19e81cE82", 18, "PancakeSwap"),
    TokenInfo("XVS", Network.BNB, "0xcF6BB5389c92Bdda8a3747Ddb454cB7a64626C63", 18, "Venus"),
    TokenInfo("USDT", Network.BNB, "0x55d398326f99059fF775485246999027B3197955", 18, "Tether USD"),
    TokenInfo("USDC", Network.SOL, "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", 6, "USD Coin"),
]

TOKENS: dict[tuple[Network, str], TokenInfo] = {(t.network, t.symbol): t for t in _TOKEN_LIST}


def get_network(network) -> NetworkConfig:
    """Resolve a network identifier to its configuration.

    Raises:
        ConfigurationError: If the identifier is not a supported network
    """
    try:
        key = network if isinstance(network, Network) else Network(str(network).upper())
    except ValueError:
        raise ConfigurationError(f"Unsupported network: {network}", network=str(network))
    return NETWORKS[key]


def find_token(network: Network, identifier: str) -> Optional[TokenInfo]:
    """Find a registered token by symbol or contract/mint address."""
    by_symbol = TOKENS.get((network, identifier.upper()))
    if by_symbol:
        return by_symbol
    for token in _TOKEN_LIST:
        if token.network == network and token.address.lower() == identifier.lower():
            return token
    return None


def validate_derivation_path(path: str) -> str:
    """Check that a custom derivation path is well-formed.

    Returns the path unchanged when valid.

    Raises:
        ValidationError: If the path is malformed
    """
    parts = path.strip().split("/")
    if len(parts) < 2 or parts[0] != "m":
        raise ValidationError(f"Invalid derivation path: {path}", path=path)
    for part in parts[1:]:
        index = part[:-1] if part.endswith("'") or part.endswith("h") else part
        if not index.isdigit() or int(index) >= 2**31:
            raise ValidationError(f"Invalid derivation path segment: {part}", path=path)
    return path.strip()


@dataclass
class EndpointOverrides:
    """Per-network endpoint configuration resolved from settings."""

    rpc_urls: list[str] = field(default_factory=list)
    ws_url: Optional[str] = None
    explorer_api_url: Optional[str] = None
    explorer_api_key: Optional[str] = None
    confirmations: Optional[int] = None
    fallback_fee_price: Optional[int] = None
