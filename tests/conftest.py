"""Pytest fixtures for testing."""
import os

# Must be set before any app imports that trigger Settings validation
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
# Ensure tests run in dev mode (bypasses auth) and without Redis regardless of local .env
os.environ["DEV_MODE"] = "true"
os.environ["REDIS_ENABLED"] = "false"

from collections.abc import AsyncGenerator, Generator  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from models.base import Base  # noqa: E402
from services.change_feed import ChangeFeed, set_change_feed  # noqa: E402


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """
    Create an in-memory SQLite engine with the schema created.

    StaticPool keeps the single in-memory database alive across sessions.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create an async session for service-level tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def change_feed() -> Generator[ChangeFeed]:
    """Install an in-process change feed for the duration of a test."""
    feed = ChangeFeed(queue_size=16)
    set_change_feed(feed)
    yield feed
    set_change_feed(None)


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    change_feed: ChangeFeed,  # noqa: ARG001
) -> AsyncGenerator[AsyncClient]:
    """Create a dev-mode test client whose requests commit to the test database."""
    # Clear the settings cache so it picks up DATABASE_URL from environment
    from core.config import get_settings

    get_settings.cache_clear()

    from api.main import app
    from db.session import get_async_session, unit_of_work

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        async with unit_of_work(session_factory) as session:
            yield session

    app.dependency_overrides[get_async_session] = override_get_async_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    app.dependency_overrides.clear()
