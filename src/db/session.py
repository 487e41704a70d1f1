"""Async SQLAlchemy session factory."""
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import get_settings
from services.change_feed import discard_pending_changes, publish_pending_changes


settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Open a session from ``session_factory`` as a single unit of work.

    Services use flush() for refreshing objects, commit happens once here at
    the end. Bookmark changes staged on the session are published to the
    change feed only after that commit succeeds; on failure they are discarded
    together with the rolled-back transaction.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            discard_pending_changes(session)
            raise
        await publish_pending_changes(session)


async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """
    Yield an async database session.

    Uses unit-of-work pattern: commit happens once at request end. This ensures
    atomic transactions per request - if anything fails, all changes are rolled
    back and no change-feed event is emitted.
    """
    async with unit_of_work(async_session_factory) as session:
        yield session
