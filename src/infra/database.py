"""
Database wiring for Receipt Insights.

Creates the async engine and session factory. Services receive the
``async_sessionmaker`` and open one session per unit of work:

    async with session_factory() as session, session.begin():
        ...

Usage:
    from src.infra.database import create_engine_and_factory, init_models

    engine, session_factory = create_engine_and_factory(settings.database_url)
    await init_models(engine)
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.models.base import Base

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine_and_factory(
    database_url: str, echo: bool = False
) -> tuple[AsyncEngine, SessionFactory]:
    """
    Create the async engine and a session factory bound to it.

    Args:
        database_url: SQLAlchemy async URL (e.g. ``sqlite+aiosqlite:///./receipts.db``)
        echo: Log every SQL statement

    Returns:
        (engine, session_factory)
    """
    engine = create_async_engine(database_url, echo=echo, future=True)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    return engine, factory


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    # Imported for its side effect of registering every table on Base.metadata
    import src.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready (%d tables)", len(Base.metadata.tables))


async def check_database(factory: SessionFactory) -> bool:
    """Return True if a trivial query succeeds."""
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception:  # Intentional catch-all: health probe reports failure instead of raising
        logger.exception("Database health check failed")
        return False


__all__ = ["SessionFactory", "check_database", "create_engine_and_factory", "init_models"]
