"""
Shared test fixtures for Receipt Insights.

This module provides common fixtures used across all test modules:
- session_factory: async session factory over a fresh in-memory SQLite
  database (aiosqlite) with every table created
- clock: a settable clock pinned to Wednesday 2026-03-18 12:00 UTC
- job_queue: a JobQueue mock whose ``enqueue`` calls can be asserted

Usage:
    All fixtures are automatically available to any test in the tests/ directory.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.infra.database import init_models
from src.services.job_queue import JobQueue

FIXED_NOW = datetime(2026, 3, 18, 12, 0, tzinfo=UTC)


class FixedClock:
    """Clock returning a settable instant."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """
    Provide an async session factory backed by an in-memory SQLite database.

    StaticPool keeps one connection so every session sees the same database.
    The engine is disposed after the test finishes.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    yield factory
    await engine.dispose()


# ---------------------------------------------------------------------------
# Clock and queue
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def job_queue() -> MagicMock:
    """JobQueue stand-in; ``enqueue`` is an AsyncMock."""
    return MagicMock(spec=JobQueue)
