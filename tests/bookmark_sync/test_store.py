"""Tests for the HTTP store client and its SSE parsing."""
import json
from collections.abc import AsyncIterator, Generator
from datetime import timedelta
from uuid import UUID

import httpx
import pytest
import respx
from httpx import Response

from bookmark_sync.errors import FetchError, SubscriptionError, WriteError, describe_http_error
from bookmark_sync.store import ApiBookmarkStore, ServerSentEvent, iter_sse
from schemas.change import ChangeType
from tests.bookmark_sync.fakes import ALICE, BOB, EPOCH, insert_event, make_bookmark

BASE_URL = "http://localhost:8000"


@pytest.fixture
def mock_api() -> Generator[respx.MockRouter]:
    """Context manager for mocking API responses."""
    with respx.mock(base_url=BASE_URL, assert_all_called=False) as respx_mock:
        respx_mock.get("/users/me").mock(
            return_value=Response(
                200, json={"id": str(ALICE), "auth0_id": "auth0|alice", "email": None},
            ),
        )
        yield respx_mock


@pytest.fixture
async def api_store() -> AsyncIterator[ApiBookmarkStore]:
    async with httpx.AsyncClient(base_url=BASE_URL) as client:
        yield ApiBookmarkStore(client, "test-token")


def row_json(owner_id: UUID = ALICE, title: str = "Example") -> dict:
    return make_bookmark(owner_id, title, EPOCH).model_dump(mode="json")


def sse_body(*frames: str) -> str:
    return "".join(frames)


def frame(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


SUBSCRIBED = frame("subscribed", json.dumps({"table": "bookmarks", "user_id": str(ALICE)}))


async def lines(*values: str) -> AsyncIterator[str]:
    for value in values:
        yield value


class TestIterSse:
    """Tests for the Server-Sent Events parser."""

    async def test__iter_sse__parses_frames(self) -> None:
        events = [
            e async for e in iter_sse(lines(
                "event: subscribed", "data: {}", "",
                ": keep-alive", "",
                "event: change", "data: line one", "data: line two", "",
                "data:no-space", "",
            ))
        ]
        assert events == [
            ServerSentEvent(event="subscribed", data="{}"),
            ServerSentEvent(event="change", data="line one\nline two"),
            ServerSentEvent(event="message", data="no-space"),
        ]

    async def test__iter_sse__ignores_incomplete_trailing_frame(self) -> None:
        events = [e async for e in iter_sse(lines("event: change", "data: partial"))]
        assert events == []


class TestCurrentOwner:
    """Tests for identifying the signed-in user."""

    async def test__current_owner_id__sends_bearer_token(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        assert await api_store.current_owner_id() == ALICE
        assert mock_api.calls[0].request.headers["authorization"] == "Bearer test-token"

    async def test__current_owner_id__not_signed_in(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        mock_api.get("/users/me").mock(
            return_value=Response(401, json={"detail": "Not authenticated"}),
        )
        assert await api_store.current_owner_id() is None

    async def test__current_owner_id__server_error(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        mock_api.get("/users/me").mock(return_value=Response(500, text="oops"))
        with pytest.raises(FetchError, match="HTTP 500"):
            await api_store.current_owner_id()


class TestFetchAll:
    """Tests for loading the owner's bookmarks."""

    async def test__fetch_all__decodes_and_filters_rows(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        mine = row_json(ALICE, "Mine")
        mock_api.get("/bookmarks/").mock(
            return_value=Response(
                200, json={"items": [mine, row_json(BOB, "Theirs")], "total": 2},
            ),
        )

        rows = await api_store.fetch_all(ALICE)

        assert [r.title for r in rows] == ["Mine"]
        assert rows[0].created_at == EPOCH

    async def test__fetch_all__refuses_other_owner(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        route = mock_api.get("/bookmarks/")
        with pytest.raises(FetchError, match="Not signed in as owner"):
            await api_store.fetch_all(BOB)
        assert not route.called

    async def test__fetch_all__server_error(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        mock_api.get("/bookmarks/").mock(
            return_value=Response(503, json={"detail": "Database unavailable"}),
        )
        with pytest.raises(FetchError, match="Database unavailable"):
            await api_store.fetch_all(ALICE)

    async def test__fetch_all__malformed_response(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        mock_api.get("/bookmarks/").mock(return_value=Response(200, json={"rows": []}))
        with pytest.raises(FetchError, match="Unexpected"):
            await api_store.fetch_all(ALICE)


class TestWrites:
    """Tests for insert and delete."""

    async def test__insert__posts_url_and_title(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        created = row_json(ALICE, "Example")
        route = mock_api.post("/bookmarks/").mock(return_value=Response(201, json=created))

        row = await api_store.insert(ALICE, "https://example.com", "Example")

        assert json.loads(route.calls[0].request.content) == {
            "url": "https://example.com", "title": "Example",
        }
        assert str(row.id) == created["id"]

    async def test__insert__validation_error(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        mock_api.post("/bookmarks/").mock(return_value=Response(
            422,
            json={"detail": [{"loc": ["body", "url"], "msg": "Value error, Invalid URL"}]},
        ))
        with pytest.raises(WriteError, match="Invalid URL"):
            await api_store.insert(ALICE, "nope", "Example")

    async def test__insert__refuses_other_owner(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        route = mock_api.post("/bookmarks/")
        with pytest.raises(WriteError):
            await api_store.insert(BOB, "https://example.com", "Example")
        assert not route.called

    async def test__delete__success(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        row = make_bookmark(ALICE, "Gone", EPOCH)
        route = mock_api.delete(f"/bookmarks/{row.id}").mock(return_value=Response(204))
        await api_store.delete(row.id, ALICE)
        assert route.called

    async def test__delete__already_gone_is_success(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        row = make_bookmark(ALICE, "Gone", EPOCH)
        mock_api.delete(f"/bookmarks/{row.id}").mock(
            return_value=Response(404, json={"detail": "Bookmark not found"}),
        )
        await api_store.delete(row.id, ALICE)

    async def test__delete__server_error(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        row = make_bookmark(ALICE, "Kept", EPOCH)
        mock_api.delete(f"/bookmarks/{row.id}").mock(return_value=Response(500))
        with pytest.raises(WriteError, match="HTTP 500"):
            await api_store.delete(row.id, ALICE)


class TestSubscribeChanges:
    """Tests for the SSE change feed client."""

    def mock_feed(self, mock_api: respx.MockRouter, body: str, status: int = 200) -> respx.Route:
        return mock_api.get("/changes/bookmarks").mock(
            return_value=Response(
                status, text=body, headers={"content-type": "text/event-stream"},
            ),
        )

    async def test__subscribe_changes__yields_typed_events(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        row = make_bookmark(ALICE, "New", EPOCH + timedelta(seconds=5))
        route = self.mock_feed(mock_api, sse_body(
            SUBSCRIBED,
            ": keep-alive\n\n",
            frame("change", insert_event(row).model_dump_json()),
        ))

        subscription = await api_store.subscribe_changes(ALICE)
        event = await anext(subscription)

        assert event.type == ChangeType.INSERT
        assert event.new == row
        assert route.calls[0].request.headers["accept"] == "text/event-stream"

        # The server closing the stream is a dropped feed
        with pytest.raises(SubscriptionError, match="ended by the server"):
            await anext(subscription)
        await subscription.close()

    async def test__subscribe_changes__malformed_event(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        self.mock_feed(mock_api, sse_body(
            SUBSCRIBED, frame("change", json.dumps({"type": "INSERT", "table": "bookmarks"})),
        ))
        subscription = await api_store.subscribe_changes(ALICE)
        with pytest.raises(SubscriptionError, match="Malformed change event"):
            await anext(subscription)
        await subscription.close()

    async def test__subscribe_changes__requires_confirmation(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        self.mock_feed(mock_api, frame("change", "{}"))
        with pytest.raises(SubscriptionError, match="Unexpected first change feed event"):
            await api_store.subscribe_changes(ALICE)

    async def test__subscribe_changes__empty_stream(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        self.mock_feed(mock_api, "")
        with pytest.raises(SubscriptionError, match="before it was confirmed"):
            await api_store.subscribe_changes(ALICE)

    async def test__subscribe_changes__http_error(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        mock_api.get("/changes/bookmarks").mock(
            return_value=Response(503, json={"detail": "Change feed unavailable"}),
        )
        with pytest.raises(SubscriptionError, match="Change feed unavailable"):
            await api_store.subscribe_changes(ALICE)

    async def test__subscribe_changes__connection_error(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        mock_api.get("/changes/bookmarks").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(SubscriptionError, match="Could not open change feed"):
            await api_store.subscribe_changes(ALICE)

    async def test__subscribe_changes__other_owner_or_table(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        route = self.mock_feed(mock_api, SUBSCRIBED)
        with pytest.raises(SubscriptionError, match="Not signed in"):
            await api_store.subscribe_changes(BOB)
        with pytest.raises(SubscriptionError, match="Unsupported table"):
            await api_store.subscribe_changes(ALICE, "notes")
        assert not route.called

    async def test__close__is_idempotent(
        self, mock_api: respx.MockRouter, api_store: ApiBookmarkStore,
    ) -> None:
        self.mock_feed(mock_api, SUBSCRIBED)
        subscription = await api_store.subscribe_changes(ALICE)
        await subscription.close()
        await subscription.close()
        assert subscription.closed


class TestDescribeHttpError:
    """Tests for turning httpx errors into messages."""

    def status_error(self, response: Response) -> httpx.HTTPStatusError:
        response.request = httpx.Request("GET", f"{BASE_URL}/bookmarks/")
        return httpx.HTTPStatusError("error", request=response.request, response=response)

    def test__auth_errors(self) -> None:
        assert describe_http_error(self.status_error(Response(401))) == "Invalid or expired token"
        assert describe_http_error(self.status_error(Response(403))) == "Access denied"

    def test__detail_string(self) -> None:
        error = self.status_error(Response(404, json={"detail": "Bookmark not found"}))
        assert describe_http_error(error) == "Bookmark not found (HTTP 404)"

    def test__no_detail(self) -> None:
        error = self.status_error(Response(502, text="<html>bad gateway</html>"))
        assert describe_http_error(error) == "HTTP 502 from /bookmarks/"

    def test__timeout(self) -> None:
        assert describe_http_error(httpx.ReadTimeout("slow")) == "Request timed out"
