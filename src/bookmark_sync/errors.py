"""Errors surfaced by the sync client. None of them is retried automatically."""
import httpx


class BookmarkSyncError(Exception):
    """Base class for sync client errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class FetchError(BookmarkSyncError):
    """The initial load of the bookmark list failed; the list stays empty."""


class WriteError(BookmarkSyncError):
    """An insert or delete request was rejected; no local state changed."""


class SubscriptionError(BookmarkSyncError):
    """The change feed could not be established, dropped, or delivered a malformed event."""


def describe_http_error(e: httpx.HTTPError) -> str:
    """
    Turn an httpx error into a short human-readable message.

    Uses the API's ``detail`` field when the server returned one.
    """
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        if status == 401:
            return "Invalid or expired token"
        if status == 403:
            return "Access denied"
        try:
            detail = e.response.json().get("detail")
        except ValueError:
            detail = None
        if isinstance(detail, str) and detail:
            return f"{detail} (HTTP {status})"
        if isinstance(detail, list) and detail:
            # FastAPI validation errors: report the first message
            first = detail[0]
            if isinstance(first, dict) and first.get("msg"):
                return f"{first['msg']} (HTTP {status})"
        return f"HTTP {status} from {e.request.url.path}"
    if isinstance(e, httpx.TimeoutException):
        return "Request timed out"
    return str(e) or e.__class__.__name__
