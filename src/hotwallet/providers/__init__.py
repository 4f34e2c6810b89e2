"""Transport clients for per-network chain providers."""

from hotwallet.providers.base import (
    EVMProvider,
    ExplorerProvider,
    ProviderError,
    ProviderRejection,
    SolanaProvider,
    UTXOProvider,
)
from hotwallet.providers.factory import create_provider

__all__ = [
    "EVMProvider",
    "ExplorerProvider",
    "ProviderError",
    "ProviderRejection",
    "SolanaProvider",
    "UTXOProvider",
    "create_provider",
]
