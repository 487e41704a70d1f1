"""ApiBookmarkStore against the real application (DEV_MODE, SQLite)."""
import pytest
from httpx import AsyncClient

from bookmark_sync.errors import WriteError
from bookmark_sync.store import ApiBookmarkStore
from services.change_feed import ChangeFeed


async def test__store__round_trip_through_api(client: AsyncClient) -> None:
    store = ApiBookmarkStore(client)
    owner_id = await store.current_owner_id()
    assert owner_id is not None

    first = await store.insert(owner_id, "https://example.com/1", "First")
    second = await store.insert(owner_id, "  https://example.com/2 ", "Second")

    rows = await store.fetch_all(owner_id)
    assert [r.id for r in rows] == [second.id, first.id]
    assert rows[0].url == "https://example.com/2"
    assert all(r.user_id == owner_id for r in rows)

    await store.delete(first.id, owner_id)
    # Deleting again is not an error
    await store.delete(first.id, owner_id)

    assert [r.id for r in await store.fetch_all(owner_id)] == [second.id]


async def test__store__writes_reach_change_feed(
    client: AsyncClient, change_feed: ChangeFeed,
) -> None:
    store = ApiBookmarkStore(client)
    owner_id = await store.current_owner_id()
    assert owner_id is not None

    async with change_feed.subscribe(owner_id) as subscription:
        row = await store.insert(owner_id, "https://example.com", "Example")
        await store.delete(row.id, owner_id)

        inserted = await subscription.next_event(timeout=1)
        deleted = await subscription.next_event(timeout=1)

    assert inserted.new == row
    assert deleted.old is not None
    assert deleted.old.id == row.id


async def test__store__rejected_insert(client: AsyncClient) -> None:
    store = ApiBookmarkStore(client)
    owner_id = await store.current_owner_id()
    assert owner_id is not None

    with pytest.raises(WriteError, match="Only http and https"):
        await store.insert(owner_id, "ftp://example.com", "Example")
