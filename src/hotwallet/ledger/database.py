"""Async engine and session handling for the wallet ledger.

One engine per process. ``get_db`` yields a session that commits on clean
exit and rolls back on error; the wallet manager and the pipeline take it
as their ``session_factory``.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hotwallet.config import get_settings
from hotwallet.ledger.models import Base

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _async_url(url: str) -> str:
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Return the process engine, creating it on first use.

    An in-memory SQLite database lives on a single shared connection;
    otherwise every checkout would see an empty database.
    """
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    url = _async_url(database_url or settings.database_url)
    kwargs = {"echo": settings.debug and not settings.is_production}
    if url.startswith("sqlite") and ":memory:" in url:
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}

    _engine = create_async_engine(url, **kwargs)
    logger.info(f"Ledger engine created ({url.split('://', 1)[0]})")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Committing session scope."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the wallet and transaction tables if they do not exist."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine so the next ``get_engine`` starts fresh."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
