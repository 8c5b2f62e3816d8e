"""
Station read endpoints: cached latest snapshot and scraper freshness.

GET /v1/stations/{station_id}/snapshot reads through the Redis cache;
cache failures fall through to PostgreSQL. GET .../freshness reports how
old the station's data is against FRESHNESS_MAX_AGE_MINUTES.

CHANGELOG:
- 2026-10-05: Initial creation (STORY-103)
- 2026-10-12: Add freshness endpoint (STORY-110)

TODO:
- None
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from chargewatch.api.deps import AppSettings, DbSession
from chargewatch.cache.redis_client import cache_snapshot, get_cached_snapshot
from chargewatch.errors import NotFound, ok
from chargewatch.services.snapshots import check_freshness, get_snapshot, snapshot_to_dict

router = APIRouter(prefix="/v1", tags=["stations"])


@router.get("/stations/{station_id}/snapshot")
async def read_snapshot(station_id: int, db: DbSession) -> dict[str, Any]:
    """Return the latest snapshot of a station.

    Raises:
        NotFound: If the station has never been observed.
    """
    cached = await get_cached_snapshot(station_id)
    if cached is not None:
        return ok(cached)

    snapshot = await get_snapshot(db, station_id)
    if snapshot is None:
        raise NotFound(f"No snapshot for station {station_id}")

    data = snapshot_to_dict(snapshot)
    await cache_snapshot(station_id, data)
    return ok(data)


@router.get("/stations/{station_id}/freshness")
async def read_freshness(
    station_id: int, db: DbSession, settings: AppSettings,
) -> dict[str, Any]:
    """Report whether the scraper data for a station is fresh.

    Raises:
        NotFound: If the station has never been observed.
    """
    freshness = await check_freshness(
        db, station_id, datetime.now(tz=UTC), settings.FRESHNESS_MAX_AGE_MINUTES,
    )
    if freshness is None:
        raise NotFound(f"No snapshot for station {station_id}")
    return ok(
        {
            "station_id": freshness.station_id,
            "last_observed_at": freshness.last_observed_at.isoformat(),
            "age_minutes": freshness.age_minutes,
            "is_healthy": freshness.is_healthy,
        }
    )
