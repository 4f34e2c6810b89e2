"""SQLAlchemy models for custodied wallets and submitted transactions."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class WalletRecord(Base):
    """A custodied wallet. Only the encrypted private key is stored."""

    __tablename__ = "wallets"
    __table_args__ = (Index("ix_wallets_network_address", "network", "address", unique=True),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)  # Fernet token
    derivation_path: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TransactionRecord(Base):
    """A transaction submitted by the pipeline."""

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_network_hash", "network", "tx_hash", unique=True),
        Index("ix_transactions_sender", "network", "sender"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    sender: Mapped[str] = mapped_column(String(128), nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    asset: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[str] = mapped_column(String(80), nullable=False)  # decimal string, human units
    fee: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)  # base units
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    block_number: Mapped[Optional[int]] = mapped_column(nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
