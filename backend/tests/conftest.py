"""
Shared test fixtures for the trading core tests.

Provides reusable fixtures for:
- Async database sessions (in-memory SQLite)
- Message bus and cache instances isolated per test
- Mock exchange clients
- Observation window factories
"""

from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from tradingcore.cache import SimpleCache
from tradingcore.exchange_clients.base import ExchangeClient
from tradingcore.message_bus import MessageBus
from tradingcore.schemas import Observation


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def async_engine():
    """Create an in-memory async SQLite engine for testing."""
    from tradingcore.models import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    """Session factory bound to the in-memory engine, as services expect it."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide an async database session for direct assertions."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Messaging and cache
# ---------------------------------------------------------------------------


@pytest.fixture
async def bus():
    message_bus = MessageBus()
    yield message_bus
    await message_bus.close()


@pytest.fixture
def cache():
    """A fresh cache so tests never see each other's prices."""
    return SimpleCache()


# ---------------------------------------------------------------------------
# Mock exchange client
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_exchange_client():
    """Create a mock live exchange client for testing without hitting real APIs."""
    client = MagicMock(spec=ExchangeClient)
    client.is_simulated = MagicMock(return_value=False)
    client.get_balance = AsyncMock(return_value={"total": 10000.0, "available": 8000.0})
    client.get_positions = AsyncMock(return_value=[])
    client.place_order = AsyncMock()
    client.get_order = AsyncMock(return_value=None)
    client.cancel_order = AsyncMock()
    client.get_ticker = AsyncMock()
    client.get_funding_rate = AsyncMock(return_value=0.0)
    return client


# ---------------------------------------------------------------------------
# Sample data factories
# ---------------------------------------------------------------------------


@pytest.fixture
def observation_window():
    """Generate an oldest-first observation window from a list of prices."""
    def _make_window(prices, symbol="BTCUSDT", funding_rate=0.0):
        start = datetime.utcnow() - timedelta(seconds=len(prices))
        return [
            Observation(
                symbol=symbol,
                price=p,
                volume_24h=1000.0,
                funding_rate=funding_rate,
                timestamp=start + timedelta(seconds=i),
            )
            for i, p in enumerate(prices)
        ]
    return _make_window
