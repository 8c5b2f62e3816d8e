"""
Dispatch endpoints: direct dispatch for a station port and outbox drain.

Both are service-only. A direct dispatch returns the tagged dispatch
result (``sent``, ``cooldown`` or ``no_subscriptions``) in the envelope.

CHANGELOG:
- 2026-10-07: Initial creation (STORY-105)
- 2026-10-11: Add outbox drain (STORY-109)
- 2026-10-16: Optional status for direct dispatch (STORY-115)

TODO:
- None
"""

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from chargewatch.api.deps import AppSettings, DbSession, Sender, ServiceClient
from chargewatch.errors import ok
from chargewatch.services.dispatcher import dispatch, result_to_dict
from chargewatch.services.outbox import drain_outbox
from chargewatch.services.subscriptions import validate_port, validate_target_status

router = APIRouter(prefix="/v1", tags=["dispatch"])


class DispatchRequest(BaseModel):
    """Schema for a direct dispatch: the port and the status it reached."""

    station_id: int
    port: int
    status: str | None = None


@router.post("/dispatch")
async def dispatch_route(
    request: DispatchRequest,
    client_id: ServiceClient,
    db: DbSession,
    settings: AppSettings,
    sender: Sender,
) -> dict[str, Any]:
    """Notify every eligible subscription for a station port."""
    validate_port(request.port)
    status = validate_target_status(request.status)
    result = await dispatch(
        db,
        sender,
        station_id=request.station_id,
        port=request.port,
        status=status,
        dedup_window_s=settings.NOTIFY_DEDUP_WINDOW_S,
        failure_policy=settings.PUSH_FAILURE_POLICY,
        subscription_policy=settings.SUBSCRIPTION_POLICY,
        max_delivery_failures=settings.PUSH_MAX_DELIVERY_FAILURES,
    )
    return ok(result_to_dict(result))


@router.post("/outbox/drain")
async def drain_route(
    client_id: ServiceClient,
    db: DbSession,
    settings: AppSettings,
    sender: Sender,
) -> dict[str, Any]:
    """Run the dispatcher for every due reactive dispatch job."""
    drained = await drain_outbox(db, sender, settings)
    return ok(drained.to_dict())
