"""
Notification dispatcher: cooldown-gated push delivery for a station port.

Both the polling sweep and the reactive outbox reach this single entry
point, so cooldown state is shared. The dispatcher never touches polling
tasks; it returns a :data:`DispatchResult` that the caller interprets.

Subscriptions are claimed before sending with one conditional UPDATE
(deactivate + stamp ``last_notified_at`` only where still active and
outside the dedup window). Two concurrent dispatches for the same port
therefore never both claim a subscription, so a subscription is stamped
at most once per window.

CHANGELOG:
- 2026-10-07: Initial creation (STORY-105)
- 2026-10-09: retry_transient failure policy (STORY-107)
- 2026-10-16: Match subscriptions on target status; guarded reactivation (STORY-115)

TODO:
- None
"""

import asyncio
import logging
import math
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from sqlalchemy import exists, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from chargewatch.db.models import PollingTask, PortStatus, Subscription, TaskStatus
from chargewatch.services.push import PushOutcome, PushSender, PushTarget
from chargewatch.services.snapshots import get_station_metadata
from chargewatch.services.subscriptions import list_ready

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW_S = 300

_TERMINAL_TASK_STATUSES = (
    TaskStatus.COMPLETED.value,
    TaskStatus.CANCELLED.value,
    TaskStatus.EXPIRED.value,
)


@dataclass(frozen=True)
class Sent:
    """Pushes were attempted for every eligible subscription."""

    sent: int
    failed: int
    deactivated: int
    retained: int = 0
    status: Literal["sent"] = "sent"


@dataclass(frozen=True)
class Cooldown:
    """Every matching subscription was notified inside the dedup window."""

    retry_after_seconds: int
    status: Literal["cooldown"] = "cooldown"


@dataclass(frozen=True)
class NoSubscriptions:
    """Nothing left to notify for this station port."""

    status: Literal["no_subscriptions"] = "no_subscriptions"


@dataclass(frozen=True)
class DispatchFailed:
    """Dispatch could not run (store or sender failure)."""

    reason: str
    status: Literal["failed"] = "failed"


DispatchResult = Sent | Cooldown | NoSubscriptions | DispatchFailed


def result_to_dict(result: DispatchResult) -> dict[str, Any]:
    """Serialize a dispatch result for JSON responses and logs."""
    return asdict(result)


def partition_by_cooldown(
    subscriptions: Sequence[Subscription],
    now: datetime,
    window_s: int = DEFAULT_DEDUP_WINDOW_S,
) -> tuple[list[Subscription], int | None]:
    """Split subscriptions into eligible ones and a retry delay.

    A subscription is eligible when it was never notified or was last
    notified at least *window_s* seconds ago.

    Args:
        subscriptions: Active subscriptions for one station port.
        now: Current time (timezone-aware).
        window_s: Dedup window in seconds.

    Returns:
        Tuple of (eligible subscriptions, retry_after_seconds). The retry
        delay is only set when nothing is eligible: the smallest remaining
        cooldown, rounded up to whole seconds and at least 1.
    """
    window = timedelta(seconds=window_s)
    eligible: list[Subscription] = []
    remaining: list[float] = []
    for sub in subscriptions:
        if sub.last_notified_at is None or now - sub.last_notified_at >= window:
            eligible.append(sub)
        else:
            remaining.append((sub.last_notified_at + window - now).total_seconds())

    if eligible or not remaining:
        return eligible, None
    return eligible, max(1, math.ceil(min(remaining)))


def build_payload(
    station_id: int,
    port: int,
    location: str | None,
    status: str = PortStatus.AVAILABLE.value,
) -> dict[str, Any]:
    """Build the push message for a port that reached *status*."""
    where = location or f"station {station_id}"
    return {
        "title": f"Charger {status.capitalize()}!",
        "body": f"Port {port} at {where} is now {status.lower()}",
        "url": f"/?station={station_id}",
        "stationId": station_id,
        "portNumber": port,
    }


async def _claim(
    session: AsyncSession,
    ids: Sequence[Any],
    now: datetime,
    window_s: int,
) -> list[Subscription]:
    """Deactivate and stamp *ids* if still active and out of cooldown."""
    cutoff = now - timedelta(seconds=window_s)
    result = await session.execute(
        update(Subscription)
        .where(
            Subscription.id.in_(ids),
            Subscription.is_active.is_(True),
            or_(
                Subscription.last_notified_at.is_(None),
                Subscription.last_notified_at <= cutoff,
            ),
        )
        .values(is_active=False, last_notified_at=now)
        .returning(Subscription)
        .execution_options(synchronize_session=False)
    )
    claimed = list(result.scalars().all())
    await session.commit()
    return claimed


def _retain_statement(sub: Subscription, policy: str):
    """Reactivate *sub* unless something superseded it since the claim.

    The row must still be the inactive claimed row, and none of its
    polling tasks may be terminal. Under ``single_watch`` the endpoint
    must also have no other active subscription.
    """
    conditions = [
        Subscription.id == sub.id,
        Subscription.is_active.is_(False),
        ~exists().where(
            PollingTask.subscription_id == sub.id,
            PollingTask.status.in_(_TERMINAL_TASK_STATUSES),
        ),
    ]
    if policy == "single_watch":
        other = aliased(Subscription)
        conditions.append(
            ~exists().where(
                other.endpoint == sub.endpoint,
                other.id != sub.id,
                other.is_active.is_(True),
            )
        )
    return (
        update(Subscription)
        .where(*conditions)
        .values(is_active=True, delivery_failures=Subscription.delivery_failures + 1)
        .returning(Subscription.id)
        .execution_options(synchronize_session=False)
    )


async def _retain(session: AsyncSession, sub: Subscription, policy: str) -> bool:
    """Reactivate *sub* after a transient failure; False if superseded."""
    try:
        result = await session.execute(_retain_statement(sub, policy))
        retained = result.scalar_one_or_none() is not None
        await session.commit()
    except IntegrityError:
        # The endpoint re-subscribed to the same port in the meantime.
        await session.rollback()
        return False
    if not retained:
        logger.info("Subscription %s superseded; not retained", sub.id)
    return retained


async def dispatch(
    session: AsyncSession,
    sender: PushSender,
    *,
    station_id: int,
    port: int,
    status: str = PortStatus.AVAILABLE.value,
    dedup_window_s: int = DEFAULT_DEDUP_WINDOW_S,
    failure_policy: str = "one_shot",
    subscription_policy: str = "single_watch",
    max_delivery_failures: int = 3,
    now: datetime | None = None,
) -> DispatchResult:
    """Notify every eligible subscription waiting for *port* to reach *status*.

    Algorithm:
        1. Load active subscriptions targeting *status*; none -> ``NoSubscriptions``.
        2. Partition by cooldown; none eligible -> ``Cooldown``.
        3. Claim the eligible ones (deactivate + stamp) atomically.
        4. Send one push per claimed subscription, concurrently; a failed
           send never affects another.
        5. Under ``retry_transient``, reactivate subscriptions whose send
           failed transiently and that are below the failure budget.

    Args:
        session: Async SQLAlchemy session.
        sender: Push delivery collaborator.
        station_id: Station whose port changed.
        port: Port number that changed.
        status: Status the port reached; only subscriptions targeting it
            are notified.
        dedup_window_s: Per-subscription notification cooldown.
        failure_policy: ``one_shot`` or ``retry_transient``.
        subscription_policy: ``single_watch`` or ``multi_watch``; guards
            reactivation under ``retry_transient``.
        max_delivery_failures: Transient failure budget per subscription.
        now: Override for the current time (tests).

    Returns:
        DispatchResult: ``Sent``, ``Cooldown`` or ``NoSubscriptions``.
    """
    now = now or datetime.now(tz=UTC)

    active = await list_ready(session, station_id, port, status)
    if not active:
        return NoSubscriptions()

    eligible, retry_after = partition_by_cooldown(active, now, dedup_window_s)
    if not eligible:
        logger.info(
            "Dispatch for station %s port %s in cooldown (retry after %ss)",
            station_id,
            port,
            retry_after,
        )
        return Cooldown(retry_after_seconds=retry_after or 1)

    claimed = await _claim(session, [sub.id for sub in eligible], now, dedup_window_s)
    if not claimed:
        # A concurrent dispatch notified these subscriptions first.
        return NoSubscriptions()

    metadata = await get_station_metadata(session, station_id)
    payload = build_payload(
        station_id, port, metadata.address_full if metadata else None, status,
    )

    outcomes: list[PushOutcome] = await asyncio.gather(
        *(
            sender.send(PushTarget(sub.endpoint, sub.p256dh, sub.auth), payload)
            for sub in claimed
        )
    )

    retained = 0
    if failure_policy == "retry_transient":
        for sub, outcome in zip(claimed, outcomes, strict=True):
            if outcome.ok or outcome.permanent:
                continue
            if sub.delivery_failures + 1 >= max_delivery_failures:
                continue
            if await _retain(session, sub, subscription_policy):
                retained += 1

    sent = sum(1 for outcome in outcomes if outcome.ok)
    failed = len(outcomes) - sent
    logger.info(
        "Notifications for station %s port %s: sent=%d failed=%d deactivated=%d",
        station_id,
        port,
        sent,
        failed,
        len(claimed) - retained,
        extra={"station_id": station_id, "operation": "dispatch"},
    )
    return Sent(
        sent=sent,
        failed=failed,
        deactivated=len(claimed) - retained,
        retained=retained,
    )
