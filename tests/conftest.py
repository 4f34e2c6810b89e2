"""Pytest configuration and fixtures."""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["MASTER_KEY"] = "aG90d2FsbGV0LXRlc3QtbWFzdGVyLWtleS0wMDAwMDE="
os.environ["PERSIST_WALLETS"] = "false"
os.environ["ETH_RPC_URLS"] = "sim://eth/a,sim://eth/b"
os.environ["MATIC_RPC_URLS"] = "sim://matic/a"
os.environ["BNB_RPC_URLS"] = "sim://bnb/a,sim://bnb/b"
os.environ["BTC_RPC_URLS"] = "sim://btc/a,sim://btc/b"
os.environ["SOL_RPC_URLS"] = "sim://sol/a,sim://sol/b"
os.environ["CONFIRMATIONS_ETH"] = "1"
os.environ["CONFIRMATIONS_MATIC"] = "1"
os.environ["CONFIRMATIONS_BNB"] = "1"
os.environ["CONFIRMATIONS_BTC"] = "1"
os.environ["CONFIRMATIONS_SOL"] = "1"
os.environ["RATE_LIMIT_CAPACITY"] = "1000"
os.environ["RATE_LIMIT_REFILL_PER_SECOND"] = "1000"

from hotwallet.config import Settings, get_settings
from hotwallet.handlers.registry import ChainHandlerRegistry
from hotwallet.ledger.models import Base
from hotwallet.ledger.repository import TransactionRepository, WalletRepository
from hotwallet.networks import Network
from hotwallet.pipeline import TransactionPipeline
from hotwallet.providers.simulated import get_simulated_chain, reset_simulated_chains
from hotwallet.services.gas import GasService
from hotwallet.utils.locks import clear_wallet_locks
from hotwallet.wallet.manager import WalletManager

TEST_MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"

ETH = 10**18


@pytest.fixture(autouse=True)
def reset_state():
    """Fresh simulated chains, locks and settings for every test."""
    reset_simulated_chains()
    clear_wallet_locks()
    get_settings.cache_clear()
    yield
    reset_simulated_chains()
    clear_wallet_locks()
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def registry(settings) -> ChainHandlerRegistry:
    return ChainHandlerRegistry(settings)


@pytest.fixture
def wallets(settings) -> WalletManager:
    return WalletManager(settings.master_key, lock_timeout=5.0)


@pytest.fixture
def gas(registry, settings) -> GasService:
    return GasService(registry, settings)


@pytest.fixture
def pipeline(registry, wallets, gas) -> TransactionPipeline:
    return TransactionPipeline(registry, wallets, gas, confirm_timeout=1.0, poll_interval=0.01)


@pytest.fixture
def eth_chain(registry):
    return get_simulated_chain(Network.ETH)


@pytest.fixture
def bnb_chain(registry):
    return get_simulated_chain(Network.BNB)


@pytest.fixture
def btc_chain(registry):
    return get_simulated_chain(Network.BTC)


@pytest.fixture
def sol_chain(registry):
    return get_simulated_chain(Network.SOL)


@pytest_asyncio.fixture
async def eth_wallet(wallets, eth_chain) -> str:
    """Imported ETH wallet funded with 10 ETH."""
    info = await wallets.import_from_phrase(TEST_MNEMONIC, Network.ETH)
    eth_chain.set_balance(info.address, 10 * ETH)
    return info.address


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def session_factory(db_engine):
    """Committing session context manager factory, shaped like ``get_db``."""
    from contextlib import asynccontextmanager

    factory = async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def get_session():
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return get_session


@pytest_asyncio.fixture
async def wallet_repo(db_session: AsyncSession) -> WalletRepository:
    return WalletRepository(db_session)


@pytest_asyncio.fixture
async def tx_repo(db_session: AsyncSession) -> TransactionRepository:
    return TransactionRepository(db_session)
