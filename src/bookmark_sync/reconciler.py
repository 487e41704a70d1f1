"""
Tab-synchronized bookmark state.

The reconciler holds one owner's bookmark list and keeps it consistent with
the remote store. The list changes only in reaction to the store: the initial
snapshot and change-feed events. Inserts and deletes are sent to the store and
come back through the feed exactly like writes made in any other tab, so every
open client converges on the same list.
"""
import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Self
from uuid import UUID

from bookmark_sync.errors import FetchError, SubscriptionError, WriteError
from bookmark_sync.store import BookmarkStore, Subscription
from schemas.bookmark import BookmarkResponse as Bookmark
from schemas.change import BOOKMARKS_TABLE, BookmarkChange, ChangeType

logger = logging.getLogger(__name__)

ChangeListener = Callable[[list[Bookmark]], None]
SubscriptionErrorHandler = Callable[[SubscriptionError], None]
Confirm = Callable[[], bool | Awaitable[bool]]


def insert_by_created_at(records: list[Bookmark], row: Bookmark) -> None:
    """
    Insert ``row`` into a newest-first list at the position its created_at dictates.

    A row goes before existing rows with the same timestamp, so for the usual
    case of a brand-new row this is a prepend.
    """
    for index, existing in enumerate(records):
        if existing.created_at <= row.created_at:
            records.insert(index, row)
            return
    records.append(row)


class _PendingChanges:
    """
    Changes that arrived while a snapshot fetch was in flight.

    The snapshot may have been taken before or after any of them, so they are
    merged into it by id instead of being lost or duplicated.
    """

    def __init__(self) -> None:
        # id -> latest row, or None once deleted
        self.rows: dict[UUID, Bookmark | None] = {}
        # Inserted ids in arrival order
        self.inserted: dict[UUID, None] = {}

    def record(self, event: BookmarkChange) -> None:
        row = event.row
        if event.type == ChangeType.DELETE:
            self.rows[row.id] = None
            return
        if event.type == ChangeType.INSERT:
            self.inserted[row.id] = None
        current = self.rows.get(row.id)
        if current is None and row.id in self.rows:
            return  # already deleted, a late copy must not resurrect it
        if current is None or row.updated_at >= current.updated_at:
            self.rows[row.id] = row

    def merge(self, snapshot: list[Bookmark]) -> list[Bookmark]:
        merged: list[Bookmark] = []
        seen: set[UUID] = set()
        for row in snapshot:
            if row.id in seen:
                continue
            seen.add(row.id)
            if row.id in self.rows:
                pending = self.rows[row.id]
                if pending is None:
                    continue
                if pending.updated_at >= row.updated_at:
                    row = pending
            merged.append(row)
        # Snapshot order is kept for equal timestamps
        merged.sort(key=lambda b: b.created_at, reverse=True)
        for row_id in self.inserted:
            if row_id in seen:
                continue
            row = self.rows.get(row_id)
            if row is not None:
                insert_by_created_at(merged, row)
        return merged


class BookmarkReconciler:
    """
    Keeps one owner's bookmark list in step with a BookmarkStore.

    Invariants:
    - no two records share an id
    - every record belongs to the current owner
    - records are ordered by created_at, newest first

    At most one change-feed subscription is live at any time and every
    subscription that is opened is closed exactly once. All methods must run
    on the event loop that owns the reconciler; events are applied one at a
    time in arrival order.
    """

    def __init__(
        self,
        store: BookmarkStore,
        on_change: ChangeListener | None = None,
        on_subscription_error: SubscriptionErrorHandler | None = None,
    ) -> None:
        self._store = store
        self._on_change = on_change
        self._on_subscription_error = on_subscription_error
        self._records: list[Bookmark] = []
        self._owner_id: UUID | None = None
        self._subscription: Subscription | None = None
        self._subscribed_owner: UUID | None = None
        self._consumer: asyncio.Task | None = None
        self._pending: _PendingChanges | None = None
        self._fetch_generation = 0
        self._lifecycle_lock = asyncio.Lock()

    @property
    def records(self) -> list[Bookmark]:
        """Current bookmarks, newest first."""
        return list(self._records)

    @property
    def owner_id(self) -> UUID | None:
        """Owner whose bookmarks are tracked, or None when signed out."""
        return self._owner_id

    @property
    def is_subscribed(self) -> bool:
        """Whether a change-feed subscription is live."""
        return self._subscription is not None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.teardown()

    async def start(self, owner_id: UUID) -> None:
        """
        Subscribe to the owner's changes, then load the snapshot.

        Subscribing first means no change made between the snapshot and the
        subscription can be missed; changes that race the snapshot are merged.

        Raises:
            SubscriptionError: If the change feed cannot be established.
            FetchError: If the snapshot cannot be loaded.
        """
        await self.subscribe(owner_id)
        await self.initialize(owner_id)

    async def initialize(self, owner_id: UUID) -> None:
        """
        Replace the list with the store's snapshot of the owner's bookmarks.

        Raises:
            FetchError: If the store query fails. The list is left empty and the
                fetch is not retried.
        """
        if self._owner_id != owner_id:
            await self._switch_owner(owner_id)

        self._fetch_generation += 1
        generation = self._fetch_generation
        pending = _PendingChanges()
        self._pending = pending
        try:
            snapshot = await self._store.fetch_all(owner_id)
        except FetchError:
            if generation == self._fetch_generation:
                self._pending = None
                self._set_records([])
            logger.warning("Initial bookmark load failed for owner %s", owner_id)
            raise

        if generation != self._fetch_generation or self._owner_id != owner_id:
            # Superseded while the fetch was in flight
            logger.debug("Discarding stale snapshot for owner %s", owner_id)
            return

        self._pending = None
        owned = [row for row in snapshot if row.user_id == owner_id]
        if len(owned) != len(snapshot):
            logger.warning(
                "Ignoring %d bookmark(s) not owned by %s", len(snapshot) - len(owned), owner_id,
            )
        self._set_records(pending.merge(owned))
        logger.info("Loaded %d bookmark(s) for owner %s", len(self._records), owner_id)

    async def subscribe(self, owner_id: UUID) -> None:
        """
        Open the owner's change-feed subscription.

        A no-op while a subscription for the same owner is live. A subscription
        for another owner is closed before the new one is opened.

        Raises:
            SubscriptionError: If the feed cannot be established.
        """
        async with self._lifecycle_lock:
            if self._subscription is not None:
                if self._subscribed_owner == owner_id:
                    return
                await self._close_subscription()
            if self._owner_id != owner_id:
                await self._switch_owner(owner_id)

            subscription = await self._store.subscribe_changes(owner_id, BOOKMARKS_TABLE)
            self._subscription = subscription
            self._subscribed_owner = owner_id
            self._consumer = asyncio.create_task(
                self._consume(subscription),
                name=f"bookmark-changes-{owner_id}",
            )

    def apply_event(self, event: BookmarkChange) -> bool:
        """
        Apply one change-feed event to the list.

        - INSERT adds the row unless its id is already tracked
        - UPDATE replaces a tracked row in place, untracked ids are ignored
        - DELETE removes a tracked row, untracked ids are ignored

        Applying the same event again leaves the list unchanged.

        Returns:
            True if the list changed.
        """
        row = event.row
        if self._owner_id is None or row.user_id != self._owner_id:
            logger.debug("Ignoring %s for bookmark %s of another owner", event.type, row.id)
            return False

        if self._pending is not None:
            self._pending.record(event)

        index = self._index_of(row.id)
        if event.type == ChangeType.INSERT:
            if index is not None:
                return False
            insert_by_created_at(self._records, row)
        elif event.type == ChangeType.UPDATE:
            if index is None or self._records[index] == event.new:
                return False
            self._records[index] = event.row
        else:
            if index is None:
                return False
            del self._records[index]

        self._notify()
        return True

    async def request_insert(self, url: str, title: str) -> Bookmark:
        """
        Ask the store to create a bookmark for the current owner.

        The list is not touched: the new row arrives through the change feed.

        Returns:
            The row as confirmed by the store.

        Raises:
            ValueError: If url or title is empty.
            WriteError: If nobody is signed in or the store rejects the insert.
        """
        url = url.strip()
        title = title.strip()
        if not url or not title:
            raise ValueError("Both url and title are required")
        owner_id = self._owner_id
        if owner_id is None:
            raise WriteError("Cannot add a bookmark while signed out")
        return await self._store.insert(owner_id, url, title)

    async def request_delete(self, bookmark_id: UUID, confirm: Confirm) -> bool:
        """
        Ask the store to delete one of the current owner's bookmarks.

        ``confirm`` is asked first; nothing is sent when it declines. The list is
        not touched: the removal arrives through the change feed.

        Returns:
            True if the delete request was sent.

        Raises:
            WriteError: If nobody is signed in or the store rejects the delete.
        """
        owner_id = self._owner_id
        if owner_id is None:
            raise WriteError("Cannot delete a bookmark while signed out")

        decision = confirm()
        if inspect.isawaitable(decision):
            decision = await decision
        if not decision:
            logger.debug("Delete of bookmark %s not confirmed", bookmark_id)
            return False

        await self._store.delete(bookmark_id, owner_id)
        return True

    async def teardown(self) -> None:
        """Close the subscription, forget the owner and clear the list. Safe to repeat."""
        async with self._lifecycle_lock:
            await self._close_subscription()
            self._fetch_generation += 1
            self._pending = None
            if self._owner_id is not None:
                logger.info("Tearing down bookmark state for owner %s", self._owner_id)
                self._owner_id = None
                self._set_records([])

    async def _switch_owner(self, owner_id: UUID) -> None:
        if self._subscribed_owner is not None and self._subscribed_owner != owner_id:
            await self._close_subscription()
        self._owner_id = owner_id
        self._fetch_generation += 1
        self._pending = None
        self._set_records([])

    async def _close_subscription(self) -> None:
        subscription, consumer = self._subscription, self._consumer
        self._subscription = None
        self._subscribed_owner = None
        self._consumer = None
        try:
            if consumer is not None and consumer is not asyncio.current_task():
                consumer.cancel()
                try:
                    await consumer
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("Change feed consumer failed")
        finally:
            if subscription is not None:
                await subscription.close()

    async def _consume(self, subscription: Subscription) -> None:
        """Apply feed events until the subscription is closed or fails."""
        error: SubscriptionError | None = None
        try:
            async for event in subscription:
                self.apply_event(event)
        except SubscriptionError as e:
            error = e
        except Exception as e:
            logger.exception("Applying a change feed event failed")
            error = SubscriptionError(f"Change feed stopped: {e}")

        if self._subscription is not subscription:
            return  # released by teardown or an owner change
        if error is None:
            error = SubscriptionError("Change feed ended unexpectedly")

        logger.warning("Change feed for owner %s dropped: %s", self._subscribed_owner, error)
        self._subscription = None
        self._subscribed_owner = None
        self._consumer = None
        await subscription.close()
        if self._on_subscription_error is not None:
            self._on_subscription_error(error)

    def _index_of(self, bookmark_id: UUID) -> int | None:
        for index, record in enumerate(self._records):
            if record.id == bookmark_id:
                return index
        return None

    def _set_records(self, records: list[Bookmark]) -> None:
        self._records = records
        self._notify()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.records)
        except Exception:
            # Listener failures never stop the feed
            logger.exception("Bookmark change listener failed")
