"""Persistence for encrypted wallets and submitted transactions."""

from hotwallet.ledger.database import close_db, get_db, get_engine, get_session_factory, init_db
from hotwallet.ledger.models import Base, TransactionRecord, WalletRecord
from hotwallet.ledger.repository import TransactionRepository, WalletRepository

__all__ = [
    # Models
    "Base",
    "TransactionRecord",
    "WalletRecord",
    # Database
    "close_db",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    # Repositories
    "TransactionRepository",
    "WalletRepository",
]
