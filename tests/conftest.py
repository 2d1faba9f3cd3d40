"""Shared fixtures: in-memory database, fake BookScouter, pipeline components."""

import os

# Must be set before resale_tracker.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BOOK_LOCK_BACKEND", "local")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from resale_tracker.db.models import Base
from resale_tracker.detect.resolver import HistoricalResolver
from resale_tracker.pricing.auth import TokenManager
from resale_tracker.pricing.bookscouter import BookScouterClient
from resale_tracker.worker.locks import KeyedLock
from resale_tracker.worker.refresh import BookRefresher

from factories import BASE_URL, FakeBookScouter, FrozenClock


@pytest.fixture
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def bookscouter(clock):
    return FakeBookScouter(clock)


@pytest.fixture
async def http_client(bookscouter):
    client = bookscouter.client()
    yield client
    await client.aclose()


@pytest.fixture
def token_manager(session_factory, http_client, clock):
    return TokenManager(
        session_factory=session_factory,
        http_client=http_client,
        base_url=BASE_URL,
        username="reader@example.com",
        password="hunter2",
        clock=clock,
    )


@pytest.fixture
def price_client(token_manager, http_client):
    return BookScouterClient(token_manager, http_client=http_client, base_url=BASE_URL)


@pytest.fixture
def refresher(price_client, clock):
    return BookRefresher(price_client, HistoricalResolver(clock), KeyedLock(), clock=clock)
