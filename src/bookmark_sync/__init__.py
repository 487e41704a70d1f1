"""Client-side bookmark state kept in sync with the Bookmarks API change feed."""
from bookmark_sync.config import ClientSettings
from bookmark_sync.errors import BookmarkSyncError, FetchError, SubscriptionError, WriteError
from bookmark_sync.reconciler import BookmarkReconciler
from bookmark_sync.session import AuthStateBinding
from bookmark_sync.store import ApiBookmarkStore, BookmarkStore, Subscription

__all__ = [
    "ApiBookmarkStore",
    "AuthStateBinding",
    "BookmarkReconciler",
    "BookmarkStore",
    "BookmarkSyncError",
    "ClientSettings",
    "FetchError",
    "Subscription",
    "SubscriptionError",
    "WriteError",
]
