from __future__ import annotations

import asyncio
import hashlib
import json
from typing import Any, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

import structlog
from linksync.config import settings
from linksync.exceptions import CacheError

log = structlog.get_logger(__name__)

KEY_PREFIX = "links:v1"

_pool: Optional[ConnectionPool] = None


# ── Pool lifecycle ────────────────────────────────────────────────────────────

async def init_redis_pool() -> None:
    global _pool
    _pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), retries=3),
        retry_on_error=[RedisError],
    )
    log.info("redis.pool.initialized", pool_size=settings.REDIS_POOL_SIZE)


async def close_redis_pool() -> None:
    global _pool
    if _pool:
        await _pool.aclose()
        _pool = None
        log.info("redis.pool.closed")


def get_redis() -> Redis:
    if _pool is None:
        raise CacheError("Redis pool not initialized")
    return Redis(connection_pool=_pool)


def cache_enabled() -> bool:
    return _pool is not None


async def ping_redis() -> bool:
    try:
        return await get_redis().ping()
    except (CacheError, RedisError, OSError):
        return False


# ── Keys ──────────────────────────────────────────────────────────────────────

def build_key(*parts: Any) -> str:
    raw = ":".join(str(p) for p in parts)
    digest = hashlib.sha256(raw.encode()).hexdigest()[:12]
    slug = raw[:60].replace(" ", "_")
    return f"{KEY_PREFIX}:{digest}:{slug}"


# ── Read-through primitives ───────────────────────────────────────────────────
#
# Without an initialized pool every call is a no-op miss; Redis failures
# are logged and treated as misses so reads fall through to the database.

async def cache_get(key: str) -> Optional[Any]:
    if not cache_enabled():
        return None
    try:
        raw = await get_redis().get(key)
        return json.loads(raw) if raw is not None else None
    except RedisError as e:
        log.warning("cache.get.error", key=key, error=str(e))
        return None


async def cache_set(key: str, value: Any, ttl: int) -> None:
    if not cache_enabled():
        return
    try:
        await get_redis().setex(key, ttl, json.dumps(value, default=str))
    except RedisError as e:
        log.warning("cache.set.error", key=key, error=str(e))


async def invalidate_pattern(pattern: str) -> int:
    """SCAN-based delete; every link mutation and finished sync run calls this."""
    if not cache_enabled():
        return 0
    try:
        r = get_redis()
        deleted = 0
        async for key in r.scan_iter(match=pattern, count=100):
            await r.delete(key)
            deleted += 1
        if deleted:
            log.info("cache.invalidated", pattern=pattern, count=deleted)
        return deleted
    except RedisError as e:
        log.warning("cache.invalidate.error", pattern=pattern, error=str(e))
        return 0


# ── Stats ─────────────────────────────────────────────────────────────────────

_stats_lock = asyncio.Lock()
_stats = {"hits": 0, "misses": 0}


async def record_hit() -> None:
    async with _stats_lock:
        _stats["hits"] += 1


async def record_miss() -> None:
    async with _stats_lock:
        _stats["misses"] += 1


async def get_cache_stats() -> dict:
    async with _stats_lock:
        total = _stats["hits"] + _stats["misses"]
        hit_rate = round(_stats["hits"] / total, 4) if total else 0.0
        return {**_stats, "total_requests": total, "hit_rate": hit_rate}
