"""
Redis read-through cache for station snapshots.

Snapshot reads hit Redis first and fall back to PostgreSQL; a stored
ingestion invalidates the station's key. Every cache operation is
best-effort: Redis failures are logged and the caller carries on as if
the cache missed.

CHANGELOG:
- 2026-10-05: Initial creation (STORY-103)

TODO:
- None
"""

import json
import logging
from typing import Any

import redis.asyncio as redis

from chargewatch.config import get_settings

logger = logging.getLogger(__name__)


def snapshot_key(station_id: int) -> str:
    """Cache key of a station's latest snapshot."""
    return f"snapshot:{station_id}"


async def get_redis() -> redis.Redis:
    """Create an async Redis client from application settings.

    Returns:
        redis.Redis: Async Redis client.
    """
    settings = get_settings()
    return redis.from_url(settings.REDIS_URL)


async def get_cached_snapshot(station_id: int) -> dict[str, Any] | None:
    """Read a cached snapshot; None on miss or Redis failure."""
    try:
        client = await get_redis()
        try:
            raw = await client.get(snapshot_key(station_id))
            if raw is not None:
                return json.loads(raw)
        finally:
            await client.aclose()
    except Exception:
        logger.warning(
            "Redis cache read failed for station %s", station_id, exc_info=True,
        )
    return None


async def cache_snapshot(station_id: int, data: dict[str, Any]) -> None:
    """Write a snapshot to the cache with the configured TTL."""
    try:
        settings = get_settings()
        client = await get_redis()
        try:
            await client.set(
                snapshot_key(station_id), json.dumps(data), ex=settings.CACHE_TTL_S,
            )
        finally:
            await client.aclose()
    except Exception:
        logger.warning(
            "Redis cache write failed for station %s", station_id, exc_info=True,
        )


async def invalidate_station_cache(station_id: int) -> None:
    """Drop the cached snapshot of *station_id* after a stored ingestion."""
    try:
        client = await get_redis()
        try:
            await client.delete(snapshot_key(station_id))
        finally:
            await client.aclose()
    except Exception:
        logger.warning(
            "Failed to invalidate cache for station %s", station_id, exc_info=True,
        )
