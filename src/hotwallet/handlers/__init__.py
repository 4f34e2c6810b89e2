"""Per-family chain handlers and the endpoint-rotating registry."""

from hotwallet.handlers.base import ChainHandler
from hotwallet.handlers.evm import EVMHandler
from hotwallet.handlers.registry import ChainHandlerRegistry, EndpointPool, ProviderEndpoint
from hotwallet.handlers.solana import SolanaHandler
from hotwallet.handlers.utxo import UTXOHandler

__all__ = [
    "ChainHandler",
    "ChainHandlerRegistry",
    "EVMHandler",
    "EndpointPool",
    "ProviderEndpoint",
    "SolanaHandler",
    "UTXOHandler",
]
