"""Server-Sent Events stream of the current user's bookmark changes."""
import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_async_session, get_current_user, get_settings
from core.config import Settings
from models.user import User
from schemas.change import BOOKMARKS_TABLE
from services.change_feed import ChangeFeed, get_change_feed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/changes", tags=["changes"])

SUBSCRIBED_EVENT = "subscribed"
CHANGE_EVENT = "change"
KEEP_ALIVE_FRAME = ": keep-alive\n\n"


def format_sse(event: str, data: str) -> str:
    """Format one Server-Sent Events frame."""
    return f"event: {event}\ndata: {data}\n\n"


async def stream_changes(
    request: Request,
    feed: ChangeFeed,
    user: User,
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for one user's change feed until the client goes away.

    The first frame confirms the subscription; it is sent only after the feed
    subscription is registered, so no change committed after a client sees it
    can be missed. Idle periods are filled with keep-alive comments.
    """
    async with feed.subscribe(user.id) as subscription:
        yield format_sse(
            SUBSCRIBED_EVENT,
            json.dumps({"table": BOOKMARKS_TABLE, "user_id": str(user.id)}),
        )
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await subscription.next_event(timeout=heartbeat_seconds)
            except TimeoutError:
                yield KEEP_ALIVE_FRAME
                continue
            if event is None:
                logger.info("Change feed for user %s ended by server", user.id)
                break
            yield format_sse(CHANGE_EVENT, event.model_dump_json())


@router.get("/bookmarks")
async def bookmark_changes(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """
    Subscribe to INSERT, UPDATE and DELETE changes of the current user's bookmarks.

    Frames:
    - ``event: subscribed``: the subscription is live
    - ``event: change``: one committed change, ``data`` is the JSON change record
    - ``: keep-alive``: comment sent while idle
    """
    feed = get_change_feed()
    if feed is None:
        raise HTTPException(status_code=503, detail="Change feed unavailable")

    # Commit the authentication work now so the stream does not hold a connection
    await db.commit()

    return StreamingResponse(
        stream_changes(request, feed, current_user, settings.change_feed_heartbeat_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
