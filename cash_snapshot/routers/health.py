import logging

from fastapi import APIRouter, Depends, Response
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.config import Settings
from cash_snapshot.core.database import get_db
from cash_snapshot.core.deps import get_feed_client, get_settings
from cash_snapshot.core.redis import get_redis
from cash_snapshot.services.plaid_client import PlaidFeedClient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "connected"}


@router.get("/health/ready")
async def health_ready(
    response: Response,
    db: AsyncSession = Depends(get_db),
    feed: PlaidFeedClient = Depends(get_feed_client),
    s: Settings = Depends(get_settings),
):
    """Readiness: database reachable, Plaid credentials present, lock store reachable when shared."""
    checks: dict[str, str] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as exc:
        logger.warning("Readiness: database check failed: %s", exc)
        checks["database"] = "unavailable"

    checks["plaid"] = "configured" if feed.config.configured else "not_configured"

    if s.sync_lock_backend == "redis":
        try:
            await get_redis().ping()
            checks["sync_locks"] = "redis"
        except RedisError as exc:
            logger.warning("Readiness: redis check failed: %s", exc)
            checks["sync_locks"] = "unavailable"
    else:
        checks["sync_locks"] = "memory"

    ready = "unavailable" not in checks.values() and feed.config.configured
    if not ready:
        response.status_code = 503
    return {"status": "ok" if ready else "degraded", **checks}
