"""Binds a reconciler's lifecycle to the user's sign-in state."""
import logging
from collections.abc import AsyncIterable
from uuid import UUID

from bookmark_sync.errors import BookmarkSyncError
from bookmark_sync.reconciler import BookmarkReconciler
from bookmark_sync.store import BookmarkStore

logger = logging.getLogger(__name__)


class AuthStateBinding:
    """
    Starts and tears down a reconciler as the signed-in owner changes.

    Sign-in starts the reconciler for the new owner, sign-out tears it down,
    and switching accounts does both, so a subscription never outlives the
    session it was opened for.
    """

    def __init__(self, reconciler: BookmarkReconciler) -> None:
        self._reconciler = reconciler

    @property
    def reconciler(self) -> BookmarkReconciler:
        return self._reconciler

    async def on_auth_state_changed(self, owner_id: UUID | None) -> None:
        """
        React to a sign-in, sign-out, or account switch.

        Raises:
            SubscriptionError: If the new owner's change feed cannot be opened.
            FetchError: If the new owner's bookmarks cannot be loaded.

        The reconciler is left torn down when either error is raised.
        """
        current = self._reconciler.owner_id
        if owner_id is None:
            if current is not None:
                logger.info("Signed out; releasing bookmark state for %s", current)
            await self._reconciler.teardown()
            return

        if owner_id == current and self._reconciler.is_subscribed:
            return

        if current is not None and current != owner_id:
            logger.info("Owner changed from %s to %s", current, owner_id)
        await self._reconciler.teardown()
        try:
            await self._reconciler.start(owner_id)
        except BookmarkSyncError:
            # Leave nothing half-started; the next notification starts over
            await self._reconciler.teardown()
            raise

    async def refresh(self, store: BookmarkStore) -> None:
        """Ask the store who is signed in and react to it."""
        await self.on_auth_state_changed(await store.current_owner_id())

    async def follow(self, auth_states: AsyncIterable[UUID | None]) -> None:
        """
        Apply every auth-state change from ``auth_states``.

        The reconciler is torn down when the stream ends or this coroutine is
        cancelled.
        """
        try:
            async for owner_id in auth_states:
                await self.on_auth_state_changed(owner_id)
        finally:
            await self._reconciler.teardown()
