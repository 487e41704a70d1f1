"""Shared fixtures for API tests."""
from collections.abc import AsyncGenerator, Generator
from contextlib import asynccontextmanager

import pytest
from fastapi import HTTPException
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.main import app
from core.config import Settings, get_settings
from db.session import get_async_session, unit_of_work
from services.change_feed import ChangeFeed

# Bearer token -> JWT claims accepted by the patched decoder
TOKENS = {
    "alice-token": {"sub": "auth0|alice", "email": "alice@example.com"},
    "bob-token": {"sub": "auth0|bob", "email": "bob@example.com"},
    "no-sub-token": {"email": "nobody@example.com"},
}


def fake_decode_jwt(token: str, settings: Settings) -> dict:  # noqa: ARG001
    """Accept the tokens in TOKENS, reject everything else like an invalid signature."""
    if token not in TOKENS:
        raise HTTPException(
            status_code=401,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return TOKENS[token]


@asynccontextmanager
async def create_auth_client(token: str | None) -> AsyncGenerator[AsyncClient]:
    """AsyncClient against the app that sends ``token`` as a bearer token."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=headers,
    ) as client:
        yield client


@pytest.fixture
def auth_mode(
    monkeypatch: pytest.MonkeyPatch,
    session_factory: async_sessionmaker[AsyncSession],
    change_feed: ChangeFeed,  # noqa: ARG001
) -> Generator[None]:
    """
    Run the app with authentication enabled.

    DEV_MODE is switched off through a settings override and token validation
    is replaced by fake_decode_jwt.
    """
    get_settings.cache_clear()
    monkeypatch.setattr("core.auth.decode_jwt", fake_decode_jwt)

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        async with unit_of_work(session_factory) as session:
            yield session

    def override_get_settings() -> Settings:
        return Settings(
            _env_file=None,
            database_url="sqlite+aiosqlite://",
            dev_mode=False,
            change_feed_heartbeat_seconds=0.05,
        )

    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[get_settings] = override_get_settings
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def alice_client(auth_mode: None) -> AsyncGenerator[AsyncClient]:  # noqa: ARG001
    """Client authenticated as alice."""
    async with create_auth_client("alice-token") as client:
        yield client


@pytest.fixture
async def bob_client(auth_mode: None) -> AsyncGenerator[AsyncClient]:  # noqa: ARG001
    """Client authenticated as bob."""
    async with create_auth_client("bob-token") as client:
        yield client


@pytest.fixture
async def anonymous_client(auth_mode: None) -> AsyncGenerator[AsyncClient]:  # noqa: ARG001
    """Client without credentials."""
    async with create_auth_client(None) as client:
        yield client


@pytest.fixture
async def forged_client(auth_mode: None) -> AsyncGenerator[AsyncClient]:  # noqa: ARG001
    """Client sending a token the decoder rejects."""
    async with create_auth_client("forged-token") as client:
        yield client


@pytest.fixture
async def no_sub_client(auth_mode: None) -> AsyncGenerator[AsyncClient]:  # noqa: ARG001
    """Client whose token has no ``sub`` claim."""
    async with create_auth_client("no-sub-token") as client:
        yield client
