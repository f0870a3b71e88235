"""
Test fixtures for the stock reservation engine.

Provides:
- In-memory SQLite database for isolated testing
- A frozen, manually advanced clock
- Async test client with proper session management and tenant headers
- Stock item factories
- A file-backed SQLite engine that serializes writers, for concurrency tests
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os

# DB settings required by Settings validation (tests use SQLite, these are not actually used)
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test")
# Development mode for tests (disables INTERNAL_API_KEY / ALLOWED_ORIGINS requirement)
os.environ.setdefault("ENVIRONMENT", "development")
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["RATE_LIMIT_RESERVE"] = "10000/minute"

from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from backend.app.api.deps import get_clock, get_session
from backend.app.core.base import Base
from backend.app.main import app
from backend.app.models.reservation import Reservation  # noqa: F401 - registers the table
from backend.app.models.stock import StockItem

ORG_ID = 1
OTHER_ORG_ID = 2
ACTOR_ID = 42

# Test database URL - SQLite in-memory
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Create test engine with StaticPool for in-memory SQLite
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)

TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 3, 2, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture(scope="function")
async def test_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.
    Creates all tables before and drops after each test.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(test_session) -> async_sessionmaker:
    """Session factory on the test database, for code that opens its own sessions."""
    return TestSessionLocal


@pytest.fixture
def tenant_headers() -> dict:
    return {"X-Organization-Id": str(ORG_ID), "X-Actor-Id": str(ACTOR_ID)}


@pytest.fixture
async def client(
    test_session: AsyncSession,
    clock: FrozenClock,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.
    Overrides the database session and the clock.

    Each API call gets a fresh session so it does not share a transaction
    with test_session, which the fixtures use.
    """
    async def override_get_session():
        async with TestSessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# --- Test Data Factories ---

@pytest.fixture
def make_stock_item(test_session: AsyncSession):
    """Factory: create and commit a stock item."""
    async def _make(
        product_id: int = 100,
        stock_on_hand: int = 10,
        variant_id: Optional[int] = None,
        branch_id: Optional[int] = None,
        organization_id: int = ORG_ID,
    ) -> StockItem:
        item = StockItem(
            organization_id=organization_id,
            product_id=product_id,
            variant_id=variant_id,
            branch_id=branch_id,
            stock_on_hand=stock_on_hand,
        )
        test_session.add(item)
        await test_session.commit()
        await test_session.refresh(item)
        return item

    return _make


@pytest.fixture
async def stock_item(make_stock_item) -> StockItem:
    """Organization-wide stock item: product 100, 10 units on hand."""
    return await make_stock_item()


# --- Concurrency ---

@pytest.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    Sessions on a file-backed SQLite database, one connection each.

    Every transaction starts with BEGIN IMMEDIATE, so concurrent writers
    queue on the database lock the way row locks queue them in PostgreSQL.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
