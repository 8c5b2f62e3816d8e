"""
Snapshot ingestion endpoint for upstream station-status reports.

Accepts one report via POST /v1/snapshots/ingest from an authenticated
service client, runs the throttled ingestion pipeline, and invalidates
the station's cached snapshot when a new one was stored. A throttled
report is not an error: the response simply says ``stored: false``.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)
- 2026-10-05: Invalidate the snapshot cache (STORY-103)

TODO:
- None
"""

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from chargewatch.api.deps import AppSettings, DbSession, ServiceClient
from chargewatch.cache.redis_client import invalidate_station_cache
from chargewatch.errors import ok
from chargewatch.services.ingestion import ingest_snapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["ingest"])


# ---------------------------------------------------------------------------
# Pydantic request schema
# ---------------------------------------------------------------------------


class SnapshotIngestRequest(BaseModel):
    """Schema for one station-status report.

    Attributes:
        station_id: Upstream charge point identifier.
        cupr_id: Upstream location identifier (optional reference data).
        source: Client flow producing the report.
        port_data: Raw port and station fields, plus optional metadata
            (name, latitude, longitude, address_full).
    """

    station_id: int
    cupr_id: int | None = None
    source: str
    port_data: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Route
# ---------------------------------------------------------------------------


@router.post("/snapshots/ingest")
async def ingest(
    request: SnapshotIngestRequest,
    client_id: ServiceClient,
    db: DbSession,
    settings: AppSettings,
) -> dict[str, Any]:
    """Ingest one station-status report.

    Args:
        request: Validated report.
        client_id: Authenticated service client.
        db: Async database session.
        settings: Application settings.

    Returns:
        dict: Envelope with ``stored`` and, when stored, the ports that
        became available and the number of dispatch jobs enqueued.
    """
    result = await ingest_snapshot(
        db,
        station_id=request.station_id,
        cupr_id=request.cupr_id,
        source=request.source,
        port_data=request.port_data,
        cooldown_minutes=settings.SNAPSHOT_COOLDOWN_MINUTES,
        reactive_dispatch=settings.REACTIVE_DISPATCH_ENABLED,
    )

    if not result.stored:
        return ok({"stored": False})

    await invalidate_station_cache(request.station_id)
    logger.debug("Snapshot for station %s ingested by %s", request.station_id, client_id)
    return ok(
        {
            "stored": True,
            "payload_hash": result.payload_hash,
            "available_ports": result.available_ports,
            "enqueued": result.enqueued,
        }
    )
