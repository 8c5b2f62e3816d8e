"""
Watch endpoints: start and stop a "notify me" watch on a station port.

CHANGELOG:
- 2026-10-08: Initial creation (STORY-106)

TODO:
- None
"""

from typing import Any

from fastapi import APIRouter

from chargewatch.api.deps import AppSettings, DbSession
from chargewatch.api.subscriptions import SubscribeRequest, UnsubscribeRequest
from chargewatch.errors import ok
from chargewatch.services.watch import start_watch, stop_watch

router = APIRouter(prefix="/v1/watch", tags=["watch"])


@router.post("/start")
async def start(request: SubscribeRequest, db: DbSession, settings: AppSettings) -> dict[str, Any]:
    """Subscribe, create the polling task and return the current snapshot."""
    started = await start_watch(
        db,
        settings,
        station_id=request.station_id,
        port=request.port,
        endpoint=request.endpoint,
        p256dh=request.keys.p256dh,
        auth=request.keys.auth,
        target_status=request.target_status,
    )
    return ok(started.to_dict())


@router.post("/stop")
async def stop(request: UnsubscribeRequest, db: DbSession) -> dict[str, Any]:
    """Stop a watch; its polling tasks are cancelled."""
    result = await stop_watch(
        db, station_id=request.station_id, port=request.port, endpoint=request.endpoint,
    )
    return ok(
        {
            "deactivated_count": result.deactivated_count,
            "tasks_cancelled": result.tasks_cancelled,
        }
    )
