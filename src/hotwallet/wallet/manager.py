"""Wallet manager: custody of encrypted private keys.

Private keys are encrypted with the master key the moment they are derived
and only ever decrypted inside ``with_signing_key``/``signing_key``, into a
bytearray that is wiped on every exit path. Mnemonics are never stored.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional, TypeVar

from hotwallet.contracts.wallets import GeneratedWallet, WalletInfo
from hotwallet.crypto import KeyEncryptor, wipe_memory
from hotwallet.errors import WalletNotFoundError
from hotwallet.networks import Network, NetworkConfig, get_network, validate_derivation_path
from hotwallet.utils.locks import WalletLock
from hotwallet.wallet.derivation import derive_key, generate_mnemonic, validate_mnemonic

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Wallet:
    """A custodied wallet. Holds ciphertext only."""

    network: Network
    address: str
    encrypted_private_key: str = field(repr=False)
    derivation_path: str = ""

    def info(self) -> WalletInfo:
        return WalletInfo(network=self.network, address=self.address, derivation_path=self.derivation_path)


def _wallet_key(network: Network, address: str) -> tuple[Network, str]:
    return network, address.lower() if address.startswith("0x") else address


class WalletManager:
    """Generates, imports and stores wallets; lends out signing keys."""

    def __init__(
        self,
        master_key: str,
        persist: bool = False,
        session_factory: Optional[Callable] = None,
        lock_timeout: Optional[float] = 60.0,
    ):
        """Initialize the manager.

        Args:
            master_key: Fernet key protecting every private key
            persist: Save encrypted wallet records through WalletRepository
            session_factory: Async session context manager factory (defaults to ``get_db``)
            lock_timeout: Seconds to wait for a wallet lock
        """
        self._encryptor = KeyEncryptor(master_key)
        self._wallets: dict[tuple[Network, str], Wallet] = {}
        self._signing_locks: dict[tuple[Network, str], asyncio.Lock] = {}
        self.persist = persist
        self.lock_timeout = lock_timeout
        if session_factory is None and persist:
            from hotwallet.ledger.database import get_db

            session_factory = get_db
        self._session_factory = session_factory

    # ---- creation ----

    async def generate(self, network, path: Optional[str] = None) -> GeneratedWallet:
        """Generate a new wallet from a fresh 12-word mnemonic.

        The mnemonic is returned once and not kept.
        """
        config = get_network(network)
        if path is not None:
            path = validate_derivation_path(path)
        mnemonic = generate_mnemonic()
        wallet = await self._store(config, mnemonic, path)
        return GeneratedWallet(wallet=wallet.info(), mnemonic=mnemonic)

    async def import_from_phrase(self, phrase: str, network, path: Optional[str] = None) -> WalletInfo:
        """Import a wallet from an existing mnemonic.

        Raises:
            ValidationError: If the phrase or path is invalid (nothing is derived)
        """
        config = get_network(network)
        normalized = validate_mnemonic(phrase)
        if path is not None:
            path = validate_derivation_path(path)
        wallet = await self._store(config, normalized, path)
        return wallet.info()

    async def _store(self, config: NetworkConfig, phrase: str, path: Optional[str]) -> Wallet:
        derived = derive_key(phrase, config, path or config.default_path)
        try:
            token = self._encryptor.encrypt(derived.private_key)
        finally:
            wipe_memory(derived.private_key)

        wallet = Wallet(
            network=config.network,
            address=derived.address,
            encrypted_private_key=token,
            derivation_path=derived.derivation_path,
        )
        self._wallets[_wallet_key(wallet.network, wallet.address)] = wallet
        if self.persist:
            await self._save(wallet)
        logger.info(f"Stored {config.network.value} wallet {wallet.address} ({wallet.derivation_path})")
        return wallet

    # ---- lookup ----

    def get_wallet(self, network, address: str) -> Wallet:
        config = get_network(network)
        wallet = self._wallets.get(_wallet_key(config.network, address))
        if wallet is None:
            raise WalletNotFoundError(config.network.value, address)
        return wallet

    def has_wallet(self, network, address: str) -> bool:
        config = get_network(network)
        return _wallet_key(config.network, address) in self._wallets

    def list_wallets(self, network=None) -> list[WalletInfo]:
        target = get_network(network).network if network is not None else None
        return [w.info() for w in self._wallets.values() if target is None or w.network == target]

    async def remove_wallet(self, network, address: str) -> bool:
        config = get_network(network)
        wallet = self._wallets.pop(_wallet_key(config.network, address), None)
        if wallet is None:
            return False
        if self.persist:
            from hotwallet.ledger.repository import WalletRepository

            async with self._session_factory() as session:
                await WalletRepository(session).delete(wallet.network.value, wallet.address)
        logger.info(f"Removed {config.network.value} wallet {wallet.address}")
        return True

    def clear(self) -> None:
        """Forget every wallet held in memory."""
        self._wallets.clear()
        self._signing_locks.clear()

    # ---- signing ----

    def wallet_lock(self, network, address: str, operation: str = "wallet_operation") -> WalletLock:
        """Lock serialising state-mutating operations of one wallet."""
        config = get_network(network)
        return WalletLock(config.network.value, address, timeout=self.lock_timeout, operation=operation)

    def _signing_lock(self, wallet: Wallet) -> asyncio.Lock:
        key = _wallet_key(wallet.network, wallet.address)
        if key not in self._signing_locks:
            self._signing_locks[key] = asyncio.Lock()
        return self._signing_locks[key]

    async def with_signing_key(self, network, address: str, fn: Callable[[bytearray], T]) -> T:
        """Call ``fn(private_key)`` with the decrypted key and wipe it afterwards.

        ``fn`` runs synchronously, so once the key is decrypted nothing can
        suspend or cancel this task before the wipe.

        Raises:
            WalletNotFoundError: If no wallet matches
            DecryptionError: If the master key cannot open the stored key
        """
        wallet = self.get_wallet(network, address)
        async with self._signing_lock(wallet):
            key = self._encryptor.decrypt(wallet.encrypted_private_key)
            try:
                return fn(key)
            finally:
                wipe_memory(key)

    @asynccontextmanager
    async def signing_key(self, network, address: str) -> AsyncIterator[bytearray]:
        """Async context manager form of ``with_signing_key``.

        The key is wiped on exit, including when the body raises or the
        task is cancelled inside it.
        """
        wallet = self.get_wallet(network, address)
        async with self._signing_lock(wallet):
            key = self._encryptor.decrypt(wallet.encrypted_private_key)
            try:
                yield key
            finally:
                wipe_memory(key)

    # ---- master key ----

    async def rotate_master_key(self, new_master_key: str) -> int:
        """Re-encrypt every wallet under a new master key.

        All tokens are re-encrypted before any is replaced, so a failure
        leaves the manager on the old key.

        Returns:
            Number of wallets re-encrypted
        """
        KeyEncryptor(new_master_key)
        rotated = {
            key: self._encryptor.rotate(new_master_key, wallet.encrypted_private_key)
            for key, wallet in self._wallets.items()
        }
        for key, token in rotated.items():
            self._wallets[key].encrypted_private_key = token
        self._encryptor = KeyEncryptor(new_master_key)

        if self.persist:
            for wallet in self._wallets.values():
                await self._save(wallet)
        logger.info(f"Rotated master key for {len(rotated)} wallets")
        return len(rotated)

    # ---- persistence ----

    async def _save(self, wallet: Wallet) -> None:
        from hotwallet.ledger.repository import WalletRepository

        async with self._session_factory() as session:
            await WalletRepository(session).save(
                wallet.network.value, wallet.address, wallet.encrypted_private_key, wallet.derivation_path
            )

    async def load(self) -> int:
        """Restore persisted wallets.

        Every record is test-decrypted so a wrong master key fails at
        startup rather than at the first send.

        Raises:
            DecryptionError: If a stored key cannot be decrypted
        """
        if self._session_factory is None:
            return 0

        from hotwallet.ledger.repository import WalletRepository

        async with self._session_factory() as session:
            records = await WalletRepository(session).list_all()

        for record in records:
            wipe_memory(self._encryptor.decrypt(record.encrypted_private_key))
            wallet = Wallet(
                network=Network(record.network),
                address=record.address,
                encrypted_private_key=record.encrypted_private_key,
                derivation_path=record.derivation_path,
            )
            self._wallets[_wallet_key(wallet.network, wallet.address)] = wallet

        logger.info(f"Loaded {len(records)} wallets from storage")
        return len(records)
