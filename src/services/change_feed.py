"""
Per-owner bookmark change feed.

Services record changes on the database session while a request runs; the
session dependency publishes them once the unit of work has committed, so a
rolled-back write never reaches a subscriber.

Delivery fans out in-process to every subscriber of the owner. When Redis is
connected, events go through Redis pub/sub instead so that every API process
serving the same owner sees them.
"""
import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from pydantic import ValidationError
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from core.redis import RedisClient
from schemas.change import BOOKMARKS_TABLE, BookmarkChange

logger = logging.getLogger(__name__)

PENDING_CHANGES_KEY = "pending_bookmark_changes"

_CLOSED = object()


def channel_name(user_id: UUID) -> str:
    """Redis channel carrying one owner's bookmark changes."""
    return f"changes:{BOOKMARKS_TABLE}:{user_id}"


class FeedSubscription:
    """
    One listener's view of an owner's change feed.

    Events are buffered in a bounded queue. A listener that falls behind by more
    than the queue size is dropped: its queue is cleared and the subscription
    ends, which the client observes as a dropped feed.
    """

    def __init__(self, user_id: UUID, queue_size: int) -> None:
        self.user_id = user_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether the subscription has ended."""
        return self._closed

    def push(self, event: BookmarkChange) -> None:
        """Queue an event, dropping the subscription if the listener fell behind."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Change feed subscriber for user %s fell behind; dropping subscription",
                self.user_id,
            )
            self.close()

    def close(self) -> None:
        """End the subscription; pending events are discarded."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def next_event(self, timeout: float | None = None) -> BookmarkChange | None:
        """
        Wait for the next event.

        Returns None once the subscription has ended.

        Raises:
            TimeoutError: If no event arrives within ``timeout`` seconds.
        """
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Keep the sentinel so later calls also see the end of the feed
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> "FeedSubscription":
        return self

    async def __anext__(self) -> BookmarkChange:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event


class ChangeFeed:
    """Publishes committed bookmark changes to the subscribers of each owner."""

    def __init__(self, redis_client: RedisClient | None = None, queue_size: int = 256) -> None:
        self._redis = redis_client
        self._queue_size = queue_size
        self._subscribers: dict[UUID, set[FeedSubscription]] = defaultdict(set)
        # Subscriptions fed from a Redis channel instead of by local fan-out
        self._relayed: set[FeedSubscription] = set()

    @property
    def uses_redis(self) -> bool:
        """Whether events are distributed through Redis pub/sub."""
        return self._redis is not None and self._redis.is_connected

    def subscriber_count(self, user_id: UUID) -> int:
        """Number of subscribers in this process listening to an owner's feed."""
        return len(self._subscribers.get(user_id, ()))

    async def publish(self, event: BookmarkChange) -> None:
        """
        Deliver an event to every subscriber of the row's owner.

        If the Redis PUBLISH fails, the event is handed directly to every
        subscriber in this process, including the ones normally fed by Redis.
        """
        redis_client = self._redis
        if redis_client is not None and redis_client.is_connected:
            if await redis_client.publish(channel_name(event.user_id), event.model_dump_json()):
                self._fan_out(event, include_relayed=False)
                return
            logger.warning("Falling back to in-process change delivery for user %s", event.user_id)
        self._fan_out(event, include_relayed=True)

    def _fan_out(self, event: BookmarkChange, include_relayed: bool) -> None:
        for subscription in list(self._subscribers.get(event.user_id, ())):
            if include_relayed or subscription not in self._relayed:
                subscription.push(event)

    @asynccontextmanager
    async def subscribe(self, user_id: UUID) -> AsyncIterator[FeedSubscription]:
        """
        Subscribe to an owner's changes for the duration of the context.

        The subscription is always released on exit, including when the
        consumer is cancelled.
        """
        subscription = FeedSubscription(user_id, self._queue_size)
        pubsub: PubSub | None = None
        pump: asyncio.Task | None = None
        redis_client = self._redis
        if redis_client is not None and redis_client.is_connected:
            pubsub = await redis_client.subscribe(channel_name(user_id))
        if pubsub is not None:
            pump = asyncio.create_task(self._pump(pubsub, subscription))
            self._relayed.add(subscription)
        self._subscribers[user_id].add(subscription)
        logger.info("Change feed subscription opened for user %s", user_id)
        try:
            yield subscription
        finally:
            subscription.close()
            self._remove(subscription)
            if pump is not None:
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass
            logger.info("Change feed subscription closed for user %s", user_id)

    def _remove(self, subscription: FeedSubscription) -> None:
        self._relayed.discard(subscription)
        subscribers = self._subscribers.get(subscription.user_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.user_id]

    async def _pump(self, pubsub: PubSub, subscription: FeedSubscription) -> None:
        """Move events from a Redis channel into a local subscription."""
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = BookmarkChange.model_validate_json(message["data"])
                except ValidationError as e:
                    logger.warning("Discarding malformed change feed message: %s", e)
                    continue
                subscription.push(event)
                if subscription.closed:
                    break
        except RedisError as e:
            logger.warning("Change feed pub/sub for user %s failed: %s", subscription.user_id, e)
            subscription.close()
        finally:
            try:
                await pubsub.unsubscribe()
            except RedisError as e:
                logger.warning("Redis UNSUBSCRIBE failed: %s", e)
            await pubsub.aclose()


def record_change(db: AsyncSession, event: BookmarkChange) -> None:
    """Stage a change to be published after the session commits."""
    db.info.setdefault(PENDING_CHANGES_KEY, []).append(event)


def discard_pending_changes(db: AsyncSession) -> None:
    """Drop staged changes, e.g. after a rollback."""
    db.info.pop(PENDING_CHANGES_KEY, None)


async def publish_pending_changes(db: AsyncSession) -> None:
    """Publish and clear the changes staged on a committed session."""
    events: list[BookmarkChange] = db.info.pop(PENDING_CHANGES_KEY, [])
    if not events:
        return
    feed = get_change_feed()
    if feed is None:
        logger.debug("No change feed configured; dropping %d change(s)", len(events))
        return
    for event in events:
        await feed.publish(event)


# Global change feed state using a container to avoid global statement
class _ChangeFeedState:
    """Container for global change feed state."""

    feed: ChangeFeed | None = None


_state = _ChangeFeedState()


def get_change_feed() -> ChangeFeed | None:
    """Get the global change feed instance."""
    return _state.feed


def set_change_feed(feed: ChangeFeed | None) -> None:
    """Set the global change feed instance."""
    _state.feed = feed
