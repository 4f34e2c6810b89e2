"""Repositories for wallet and transaction records."""

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from hotwallet.ledger.models import TransactionRecord, WalletRecord


class WalletRepository:
    """Encrypted wallet storage."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, network: str, address: str) -> Optional[WalletRecord]:
        stmt = select(WalletRecord).where(WalletRecord.network == network, WalletRecord.address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, network: Optional[str] = None) -> list[WalletRecord]:
        stmt = select(WalletRecord).order_by(WalletRecord.network, WalletRecord.id)
        if network:
            stmt = stmt.where(WalletRecord.network == network)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def save(
        self, network: str, address: str, encrypted_private_key: str, derivation_path: str
    ) -> WalletRecord:
        """Insert a wallet or replace the ciphertext of an existing one."""
        record = await self.get(network, address)
        if record is None:
            record = WalletRecord(
                network=network,
                address=address,
                encrypted_private_key=encrypted_private_key,
                derivation_path=derivation_path,
            )
            self.session.add(record)
        else:
            record.encrypted_private_key = encrypted_private_key
            record.derivation_path = derivation_path
        await self.session.flush()
        return record

    async def delete(self, network: str, address: str) -> bool:
        stmt = delete(WalletRecord).where(WalletRecord.network == network, WalletRecord.address == address)
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def delete_all(self) -> int:
        result = await self.session.execute(delete(WalletRecord))
        return result.rowcount


class TransactionRepository:
    """Submitted transaction tracking."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, network: str, tx_hash: str) -> Optional[TransactionRecord]:
        stmt = select(TransactionRecord).where(
            TransactionRecord.network == network, TransactionRecord.tx_hash == tx_hash
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def record(
        self,
        network: str,
        tx_hash: str,
        sender: str,
        recipient: Optional[str],
        asset: str,
        amount: str,
        state: str,
        fee: Optional[int] = None,
    ) -> TransactionRecord:
        """Create a record for a submitted transaction."""
        record = TransactionRecord(
            network=network,
            tx_hash=tx_hash,
            sender=sender,
            recipient=recipient,
            asset=asset,
            amount=amount,
            fee=str(fee) if fee is not None else None,
            state=state,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def update_state(
        self,
        network: str,
        tx_hash: str,
        state: str,
        block_number: Optional[int] = None,
        fee: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> Optional[TransactionRecord]:
        record = await self.get(network, tx_hash)
        if record is None:
            return None
        record.state = state
        if block_number is not None:
            record.block_number = block_number
        if fee is not None:
            record.fee = str(fee)
        if error_message is not None:
            record.error_message = error_message
        await self.session.flush()
        return record

    async def list_by_sender(
        self, network: str, sender: str, states: Optional[list[str]] = None, limit: int = 100
    ) -> list[TransactionRecord]:
        stmt = (
            select(TransactionRecord)
            .where(TransactionRecord.network == network, TransactionRecord.sender == sender)
            .order_by(TransactionRecord.id.desc())
            .limit(limit)
        )
        if states:
            stmt = stmt.where(TransactionRecord.state.in_(states))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
