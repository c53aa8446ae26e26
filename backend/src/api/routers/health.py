"""Health check endpoints."""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_async_session, get_change_feed
from core.redis import get_redis_client
from services.change_feed import ChangeFeed


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    change_feed: str


async def _change_feed_status(feed: ChangeFeed) -> str:
    if feed.backend != "redis":
        # In-process delivery cannot fail, but does not reach other workers
        return "local"
    redis_client = get_redis_client()
    if redis_client is not None and await redis_client.ping():
        return "healthy"
    return "unhealthy"


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_async_session),
    feed: ChangeFeed = Depends(get_change_feed),
) -> HealthResponse:
    """Check application, database and change feed health."""
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        db_status = "unhealthy"

    feed_status = await _change_feed_status(feed)

    healthy = db_status == "healthy" and feed_status != "unhealthy"
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        database=db_status,
        change_feed=feed_status,
    )
