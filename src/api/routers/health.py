"""Health check endpoints."""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from core.redis import get_redis_client
from db.session import get_async_session
from services.change_feed import get_change_feed


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    change_feed: str
    redis: str


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """Check application and database health, and report how changes are distributed."""
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        db_status = "unhealthy"

    redis_client = get_redis_client()
    if redis_client is None or not redis_client.enabled:
        redis_status = "disabled"
    elif not redis_client.is_connected:
        redis_status = "unhealthy"
    else:
        redis_status = "healthy" if await redis_client.ping() else "unhealthy"

    feed = get_change_feed()
    if feed is None:
        feed_status = "unavailable"
    else:
        feed_status = "redis" if feed.uses_redis else "local"

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        database=db_status,
        change_feed=feed_status,
        redis=redis_status,
    )
