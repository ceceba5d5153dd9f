from __future__ import annotations
from fastapi import APIRouter, Depends
import sqlalchemy
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from linksync.auth import require_api_key
from linksync.cache import KEY_PREFIX, get_cache_stats, invalidate_pattern, ping_redis
from linksync.config import settings
from linksync.database import engine, get_session_factory
from linksync.repositories.sync_runs import SyncRunRepository
from linksync.schemas import HealthResponse, MetricsResponse
from linksync.services.scheduler import scheduler_running

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health():
    """Unauthenticated for load balancer probes. Redis is optional, so it never degrades status."""
    redis_ok = await ping_redis()
    try:
        async with engine.connect() as conn:
            await conn.execute(sqlalchemy.text("SELECT 1"))
        db_status = "ok"
    except (SQLAlchemyError, OSError):
        db_status = "error"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        database=db_status,
        redis="ok" if redis_ok else "unavailable",
        scheduler="running" if scheduler_running() else "stopped",
        version=settings.APP_VERSION,
    )


@router.get("/metrics", response_model=MetricsResponse, dependencies=[Depends(require_api_key)])
async def metrics(session_factory: async_sessionmaker = Depends(get_session_factory)):
    stats = await get_cache_stats()
    async with session_factory() as db:
        repo = SyncRunRepository(db)
        running = await repo.current()
        last = await repo.latest_finished()
    return MetricsResponse(
        cache_hits=stats["hits"],
        cache_misses=stats["misses"],
        hit_rate=stats["hit_rate"],
        total_requests=stats["total_requests"],
        running_sync=running.id if running else None,
        last_run_status=last.status if last else None,
    )


@router.delete("/cache", status_code=204, dependencies=[Depends(require_api_key)])
async def bust_cache():
    await invalidate_pattern(f"{KEY_PREFIX}:*")
