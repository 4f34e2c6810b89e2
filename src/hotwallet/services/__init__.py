"""Services built on the chain handler registry."""

from hotwallet.services.balance import BalanceService
from hotwallet.services.gas import FeePrice, GasService
from hotwallet.services.history import HistoryService
from hotwallet.services.monitoring import MonitoringService, Subscription

__all__ = [
    "BalanceService",
    "FeePrice",
    "GasService",
    "HistoryService",
    "MonitoringService",
    "Subscription",
]
