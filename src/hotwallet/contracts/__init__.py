"""Plain-data request and result contracts of the engine.

These Pydantic models are the only types that cross the facade boundary.
None of them ever carries decrypted key material.
"""

from hotwallet.contracts.history import Direction, HistoryOptions, HistoryPage, HistoryRecord
from hotwallet.contracts.monitoring import (
    BalanceChangeEvent,
    MonitoringEvent,
    MonitoringLostEvent,
    MonitoringState,
    TokenBalanceChangeEvent,
    TransferEvent,
)
from hotwallet.contracts.nft import NFTAsset, NFTCollection, NFTStandard, NFTTransferItem
from hotwallet.contracts.transactions import (
    BatchItemOutcome,
    FeeQuote,
    Priority,
    ReceiptStatus,
    SimulationResult,
    TransactionReceipt,
    TransactionRequest,
    TransactionResult,
    TransactionState,
)
from hotwallet.contracts.wallets import BalanceResult, GeneratedWallet, WalletInfo

__all__ = [
    # Transactions
    "BatchItemOutcome",
    "FeeQuote",
    "Priority",
    "ReceiptStatus",
    "SimulationResult",
    "TransactionReceipt",
    "TransactionRequest",
    "TransactionResult",
    "TransactionState",
    # Wallets
    "BalanceResult",
    "GeneratedWallet",
    "WalletInfo",
    # NFT
    "NFTAsset",
    "NFTCollection",
    "NFTStandard",
    "NFTTransferItem",
    # History
    "Direction",
    "HistoryOptions",
    "HistoryPage",
    "HistoryRecord",
    # Monitoring
    "BalanceChangeEvent",
    "MonitoringEvent",
    "MonitoringLostEvent",
    "MonitoringState",
    "TokenBalanceChangeEvent",
    "TransferEvent",
]
