"""
Start/stop watch: the user-facing "notify me when this port frees up".

``start_watch`` subscribes the endpoint, creates the polling task that
owns the subscription (replacing any live task a repeated watch left
behind), and returns the station's current snapshot with
the number of seconds until a fresh report would be admitted, so the
client can show state immediately. ``stop_watch`` is an unsubscribe; the
task cascade happens there.

CHANGELOG:
- 2026-10-08: Initial creation (STORY-106)
- 2026-10-16: A repeated watch replaces the previous task (STORY-115)

TODO:
- None
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from chargewatch.config import Settings
from chargewatch.services.polling import cancel_tasks_for_subscriptions, create_task
from chargewatch.services.snapshots import get_snapshot, snapshot_to_dict
from chargewatch.services.subscriptions import (
    UnsubscribeResult,
    subscribe,
    unsubscribe,
    validate_target_status,
)
from chargewatch.services.throttle import get_throttle_record, seconds_until_refresh


@dataclass(frozen=True)
class WatchStarted:
    """Outcome of :func:`start_watch`."""

    subscription_id: uuid.UUID
    task_id: uuid.UUID
    expires_at: datetime
    snapshot: dict[str, Any] | None
    next_refresh_in_s: int

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON responses."""
        return {
            "subscription_id": str(self.subscription_id),
            "task_id": str(self.task_id),
            "expires_at": self.expires_at.isoformat(),
            "snapshot": self.snapshot,
            "next_refresh_in_s": self.next_refresh_in_s,
        }


async def start_watch(
    session: AsyncSession,
    settings: Settings,
    *,
    station_id: int,
    port: int | None,
    endpoint: str,
    p256dh: str,
    auth: str,
    target_status: str | None = None,
    now: datetime | None = None,
) -> WatchStarted:
    """Subscribe *endpoint* to a station port and start polling for it.

    Raises:
        ValidationFailed: On an invalid port, status or missing push keys.
    """
    now = now or datetime.now(tz=UTC)
    subscribed = await subscribe(
        session,
        station_id=station_id,
        port=port,
        endpoint=endpoint,
        p256dh=p256dh,
        auth=auth,
        target_status=target_status,
        policy=settings.SUBSCRIPTION_POLICY,
    )
    # One live task per subscription; committed together with the new task.
    await cancel_tasks_for_subscriptions(session, [subscribed.subscription_id])
    task = await create_task(
        session,
        subscription_id=subscribed.subscription_id,
        station_id=station_id,
        target_port=port,
        target_status=validate_target_status(target_status),
        ttl_hours=settings.TASK_TTL_HOURS,
        max_polls=settings.TASK_MAX_POLLS,
        now=now,
    )

    snapshot = await get_snapshot(session, station_id)
    record = await get_throttle_record(session, station_id)
    return WatchStarted(
        subscription_id=subscribed.subscription_id,
        task_id=task.id,
        expires_at=task.expires_at,
        snapshot=snapshot_to_dict(snapshot) if snapshot is not None else None,
        next_refresh_in_s=seconds_until_refresh(
            record, now, settings.SNAPSHOT_COOLDOWN_MINUTES,
        ),
    )


async def stop_watch(
    session: AsyncSession,
    *,
    station_id: int,
    port: int | None,
    endpoint: str,
) -> UnsubscribeResult:
    """Stop watching: deactivate the subscription and cancel its tasks."""
    return await unsubscribe(session, station_id=station_id, port=port, endpoint=endpoint)
