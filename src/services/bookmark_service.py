"""Service layer for bookmark CRUD operations."""
import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.bookmark import Bookmark
from schemas.bookmark import BookmarkCreate, BookmarkResponse, BookmarkUpdate
from schemas.change import BookmarkChange, ChangeType
from services.change_feed import record_change

logger = logging.getLogger(__name__)


async def create_bookmark(
    db: AsyncSession,
    user_id: UUID,
    data: BookmarkCreate,
) -> Bookmark:
    """
    Create a new bookmark for a user.

    The id and created_at are assigned here, never by the client. An INSERT
    change is staged for the owner's change feed.

    Note: Does not commit. Caller (session generator) handles commit at request end.
    """
    bookmark = Bookmark(user_id=user_id, url=data.url, title=data.title)
    db.add(bookmark)
    await db.flush()
    await db.refresh(bookmark)

    record_change(
        db,
        BookmarkChange(type=ChangeType.INSERT, new=BookmarkResponse.model_validate(bookmark)),
    )
    logger.info("Created bookmark %s for user %s", bookmark.id, user_id)
    return bookmark


async def get_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
) -> Bookmark | None:
    """Get a bookmark by ID, scoped to user. Returns None if not found or wrong user."""
    result = await db.execute(
        select(Bookmark).where(
            Bookmark.id == bookmark_id,
            Bookmark.user_id == user_id,
        ),
    )
    return result.scalar_one_or_none()


async def get_bookmarks(
    db: AsyncSession,
    user_id: UUID,
) -> tuple[list[Bookmark], int]:
    """
    Get all bookmarks for a user, newest first.

    Returns:
        Tuple of (bookmarks, total count).
    """
    result = await db.execute(
        select(Bookmark)
        .where(Bookmark.user_id == user_id)
        .order_by(Bookmark.created_at.desc(), Bookmark.id.desc()),
    )
    bookmarks = list(result.scalars().all())

    count_result = await db.execute(
        select(func.count()).select_from(Bookmark).where(Bookmark.user_id == user_id),
    )
    return bookmarks, count_result.scalar_one()


async def update_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
    data: BookmarkUpdate,
) -> Bookmark | None:
    """
    Update a bookmark. Returns None if not found or wrong user.

    An UPDATE change carrying both the previous and the new row is staged
    only when a field actually changed.

    Note: Does not commit. Caller (session generator) handles commit at request end.
    """
    bookmark = await get_bookmark(db, user_id, bookmark_id)
    if bookmark is None:
        return None

    previous = BookmarkResponse.model_validate(bookmark)
    update_data = data.model_dump(exclude_unset=True)
    changed = {
        field: value for field, value in update_data.items()
        if getattr(bookmark, field) != value
    }
    if not changed:
        return bookmark

    for field, value in changed.items():
        setattr(bookmark, field, value)

    await db.flush()
    await db.refresh(bookmark)

    record_change(
        db,
        BookmarkChange(
            type=ChangeType.UPDATE,
            new=BookmarkResponse.model_validate(bookmark),
            old=previous,
        ),
    )
    return bookmark


async def delete_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
) -> bool:
    """
    Delete a bookmark. Returns True if deleted, False if not found or wrong user.

    The lookup is constrained by both id and owner, so a guessed id of another
    user's bookmark is indistinguishable from a missing one.

    Note: Does not commit. Caller (session generator) handles commit at request end.
    """
    bookmark = await get_bookmark(db, user_id, bookmark_id)
    if bookmark is None:
        return False

    old = BookmarkResponse.model_validate(bookmark)
    await db.delete(bookmark)
    await db.flush()

    record_change(db, BookmarkChange(type=ChangeType.DELETE, old=old))
    logger.info("Deleted bookmark %s for user %s", bookmark_id, user_id)
    return True
