"""
Subscription endpoints: subscribe, unsubscribe and check.

Request bodies carry the browser's push subscription (endpoint plus the
p256dh/auth keys) and the station port to watch; ``port`` null means
"any port".

CHANGELOG:
- 2026-10-04: Initial creation (STORY-103)

TODO:
- None
"""

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from chargewatch.api.deps import AppSettings, DbSession
from chargewatch.errors import ok
from chargewatch.services.subscriptions import check_subscribed, subscribe, unsubscribe

router = APIRouter(prefix="/v1/subscriptions", tags=["subscriptions"])


# ---------------------------------------------------------------------------
# Pydantic request schemas
# ---------------------------------------------------------------------------


class PushKeys(BaseModel):
    """Encryption keys of a browser push subscription."""

    p256dh: str
    auth: str


class SubscribeRequest(BaseModel):
    """Schema for a subscribe request.

    Attributes:
        station_id: Station to watch.
        port: Port to watch (1 or 2), or null for any port.
        endpoint: Browser push endpoint URL.
        keys: Push encryption keys.
        target_status: Status to wait for (default AVAILABLE).
    """

    station_id: int
    port: int | None = None
    endpoint: str
    keys: PushKeys
    target_status: str | None = None


class UnsubscribeRequest(BaseModel):
    """Schema for an unsubscribe request; null port matches every port."""

    station_id: int
    port: int | None = None
    endpoint: str


class CheckRequest(BaseModel):
    """Schema for a subscription check."""

    station_id: int
    endpoint: str


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/subscribe")
async def subscribe_route(
    request: SubscribeRequest, db: DbSession, settings: AppSettings,
) -> dict[str, Any]:
    """Create or refresh the active watch for (station, port, endpoint)."""
    result = await subscribe(
        db,
        station_id=request.station_id,
        port=request.port,
        endpoint=request.endpoint,
        p256dh=request.keys.p256dh,
        auth=request.keys.auth,
        target_status=request.target_status,
        policy=settings.SUBSCRIPTION_POLICY,
    )
    return ok({"subscription_id": str(result.subscription_id), "replaced": result.replaced})


@router.post("/unsubscribe")
async def unsubscribe_route(request: UnsubscribeRequest, db: DbSession) -> dict[str, Any]:
    """Deactivate matching subscriptions and cancel their polling tasks."""
    result = await unsubscribe(
        db, station_id=request.station_id, port=request.port, endpoint=request.endpoint,
    )
    return ok(
        {
            "deactivated_count": result.deactivated_count,
            "tasks_cancelled": result.tasks_cancelled,
        }
    )


@router.post("/check")
async def check_route(request: CheckRequest, db: DbSession) -> dict[str, Any]:
    """Return the ports the endpoint actively watches at the station.

    Numbered ports come first in ascending order; an "any port" watch is
    reported as null.
    """
    ports = await check_subscribed(db, station_id=request.station_id, endpoint=request.endpoint)
    ordered = sorted(p for p in ports if p is not None)
    if None in ports:
        ordered.append(None)
    return ok({"ports": ordered})
