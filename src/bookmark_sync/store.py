"""Remote bookmark store: the boundary between the reconciler and the Bookmarks API."""
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from types import TracebackType
from typing import Protocol, Self
from uuid import UUID

import httpx
from pydantic import ValidationError

from bookmark_sync.config import ClientSettings
from bookmark_sync.errors import (
    FetchError,
    SubscriptionError,
    WriteError,
    describe_http_error,
)
from schemas.bookmark import BookmarkListResponse, BookmarkResponse as Bookmark
from schemas.change import BOOKMARKS_TABLE, BookmarkChange

logger = logging.getLogger(__name__)

CHANGES_PATH = "/changes/bookmarks"
SUBSCRIBED_EVENT = "subscribed"
CHANGE_EVENT = "change"


class Subscription(Protocol):
    """
    A live change-feed subscription.

    Iterating yields changes until the subscription is closed. A feed that
    fails or ends while still open raises SubscriptionError. ``close()`` must
    be called exactly once by the owner of the subscription.
    """

    def __aiter__(self) -> AsyncIterator[BookmarkChange]: ...

    async def close(self) -> None: ...


class BookmarkStore(Protocol):
    """
    Authenticated, owner-scoped bookmark storage with a change feed.

    Implementations raise FetchError for reads, WriteError for writes and
    SubscriptionError for the feed.
    """

    async def current_owner_id(self) -> UUID | None: ...

    async def fetch_all(self, owner_id: UUID) -> list[Bookmark]: ...

    async def insert(self, owner_id: UUID, url: str, title: str) -> Bookmark: ...

    async def delete(self, bookmark_id: UUID, owner_id: UUID) -> None: ...

    async def subscribe_changes(
        self, owner_id: UUID, table: str = BOOKMARKS_TABLE,
    ) -> Subscription: ...


@dataclass
class ServerSentEvent:
    """One dispatched Server-Sent Events frame."""

    event: str
    data: str


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """
    Parse Server-Sent Events from a stream of lines.

    Comment lines (``:``) are skipped, multi-line ``data`` is joined with
    newlines, and a frame without an ``event`` field is a ``message``.
    """
    event = ""
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                yield ServerSentEvent(event=event or "message", data="\n".join(data))
            event = ""
            data = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)


class ApiSubscription:
    """Change feed read from the API's Server-Sent Events stream."""

    def __init__(self, response: httpx.Response, events: AsyncIterator[ServerSentEvent]) -> None:
        self._response = response
        self._events = events
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether close() has been called."""
        return self._closed

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> BookmarkChange:
        while True:
            try:
                sse = await anext(self._events)
            except StopAsyncIteration:
                if self._closed:
                    raise
                raise SubscriptionError("Change feed ended by the server") from None
            except httpx.StreamError as e:
                if self._closed:
                    raise StopAsyncIteration from e
                raise SubscriptionError(f"Change feed stream error: {e}") from e
            except httpx.HTTPError as e:
                if self._closed:
                    raise StopAsyncIteration from e
                raise SubscriptionError(
                    f"Change feed dropped: {describe_http_error(e)}",
                ) from e

            if sse.event != CHANGE_EVENT:
                continue
            try:
                return BookmarkChange.model_validate_json(sse.data)
            except ValidationError as e:
                raise SubscriptionError(f"Malformed change event: {e}") from e

    async def close(self) -> None:
        """Close the underlying HTTP stream."""
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class ApiBookmarkStore:
    """
    BookmarkStore backed by the Bookmarks API over HTTP.

    The API identifies the owner from the bearer token; every call checks
    that the owner asked for is the authenticated user, so a caller can never
    act on another owner's rows even by mistake.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str | None = None,
        *,
        owns_client: bool = False,
    ) -> None:
        self._client = client
        self._token = token
        self._owns_client = owns_client
        self._owner_id: UUID | None = None

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "ApiBookmarkStore":
        """Create a store with its own HTTP client, closed by aclose()."""
        client = httpx.AsyncClient(base_url=settings.api_url, timeout=settings.api_timeout)
        return cls(client, settings.api_token, owns_client=True)

    async def aclose(self) -> None:
        """Close the HTTP client if this store created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def _get_headers(self) -> dict[str, str]:
        """Get common headers for API requests."""
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def current_owner_id(self) -> UUID | None:
        """
        Return the id of the authenticated user, or None when not signed in.

        Raises:
            FetchError: If the API cannot be reached or returns an unexpected error.
        """
        try:
            response = await self._client.get("/users/me", headers=self._get_headers())
            if response.status_code == 401:
                self._owner_id = None
                return None
            response.raise_for_status()
            self._owner_id = UUID(response.json()["id"])
        except httpx.HTTPError as e:
            raise FetchError(f"Could not load the current user: {describe_http_error(e)}") from e
        except (KeyError, ValueError) as e:
            raise FetchError(f"Unexpected user response: {e}") from e
        return self._owner_id

    async def _is_authenticated_owner(self, owner_id: UUID) -> bool:
        if self._owner_id is None:
            await self.current_owner_id()
        return self._owner_id == owner_id

    async def fetch_all(self, owner_id: UUID) -> list[Bookmark]:
        """
        Fetch all of the owner's bookmarks, newest first.

        Raises:
            FetchError: If the request fails or the response cannot be decoded.
        """
        if not await self._is_authenticated_owner(owner_id):
            raise FetchError(f"Not signed in as owner {owner_id}")
        try:
            response = await self._client.get("/bookmarks/", headers=self._get_headers())
            response.raise_for_status()
            listing = BookmarkListResponse.model_validate(response.json())
        except httpx.HTTPError as e:
            raise FetchError(f"Could not load bookmarks: {describe_http_error(e)}") from e
        except (ValidationError, ValueError) as e:
            raise FetchError(f"Unexpected bookmark list response: {e}") from e
        # Explicit owner filter on top of the server-side scoping
        return [b for b in listing.items if b.user_id == owner_id]

    async def insert(self, owner_id: UUID, url: str, title: str) -> Bookmark:
        """
        Create a bookmark. The server assigns its id and created_at.

        Raises:
            WriteError: If the API rejects the bookmark.
        """
        if not await self._is_authenticated_owner(owner_id):
            raise WriteError(f"Not signed in as owner {owner_id}")
        try:
            response = await self._client.post(
                "/bookmarks/",
                json={"url": url, "title": title},
                headers=self._get_headers(),
            )
            response.raise_for_status()
            return Bookmark.model_validate(response.json())
        except httpx.HTTPError as e:
            raise WriteError(f"Failed to add bookmark: {describe_http_error(e)}") from e
        except (ValidationError, ValueError) as e:
            raise WriteError(f"Unexpected response to bookmark creation: {e}") from e

    async def delete(self, bookmark_id: UUID, owner_id: UUID) -> None:
        """
        Delete one of the owner's bookmarks.

        Deleting a bookmark that is already gone (e.g. removed from another
        tab) succeeds without doing anything.

        Raises:
            WriteError: If the API rejects the deletion.
        """
        if not await self._is_authenticated_owner(owner_id):
            raise WriteError(f"Not signed in as owner {owner_id}")
        try:
            response = await self._client.delete(
                f"/bookmarks/{bookmark_id}",
                headers=self._get_headers(),
            )
            if response.status_code == 404:
                logger.debug("Bookmark %s already deleted", bookmark_id)
                return
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise WriteError(f"Failed to delete bookmark: {describe_http_error(e)}") from e

    async def subscribe_changes(
        self, owner_id: UUID, table: str = BOOKMARKS_TABLE,
    ) -> ApiSubscription:
        """
        Open the owner's change feed.

        Returns once the server has confirmed the subscription, so any change
        committed afterwards is delivered.

        Raises:
            SubscriptionError: If the feed cannot be established.
        """
        if table != BOOKMARKS_TABLE:
            raise SubscriptionError(f"Unsupported table: {table}")
        try:
            authenticated = await self._is_authenticated_owner(owner_id)
        except FetchError as e:
            raise SubscriptionError(str(e)) from e
        if not authenticated:
            raise SubscriptionError(f"Not signed in as owner {owner_id}")

        request = self._client.build_request(
            "GET",
            CHANGES_PATH,
            headers={**self._get_headers(), "Accept": "text/event-stream"},
            # The feed is unbounded: only connecting may time out
            timeout=httpx.Timeout(self._client.timeout.connect, read=None),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise SubscriptionError(
                f"Could not open change feed: {describe_http_error(e)}",
            ) from e

        try:
            response.raise_for_status()
            events = iter_sse(response.aiter_lines())
            first = await anext(events)
        except httpx.HTTPStatusError as e:
            await response.aread()
            await response.aclose()
            raise SubscriptionError(
                f"Could not open change feed: {describe_http_error(e)}",
            ) from e
        except (httpx.HTTPError, StopAsyncIteration) as e:
            await response.aclose()
            raise SubscriptionError("Change feed closed before it was confirmed") from e

        if first.event != SUBSCRIBED_EVENT:
            await response.aclose()
            raise SubscriptionError(f"Unexpected first change feed event: {first.event}")

        logger.info("Change feed subscribed for owner %s", owner_id)
        return ApiSubscription(response, events)
