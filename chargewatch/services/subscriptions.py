"""
Subscription registry: push endpoints watching station ports.

Subscribing is a deactivate-then-upsert sequence that is safe to repeat:
the partial unique index on (station_id, port_number, endpoint) WHERE
is_active turns a repeated subscribe into an update of the same row, so
a rapid double-click never yields duplicate active rows. Unsubscribing
cascades to the owning polling tasks.

CHANGELOG:
- 2026-10-04: Initial creation (STORY-103)
- 2026-10-09: Configurable single-watch / multi-watch policy (STORY-107)
- 2026-10-16: list_ready filters on target status (STORY-115)

TODO:
- None
"""

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import and_, not_, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chargewatch.db.models import PortStatus, Subscription
from chargewatch.errors import ValidationFailed
from chargewatch.services.hashing import normalize_status
from chargewatch.services.polling import cancel_tasks_for_subscriptions

logger = logging.getLogger(__name__)

VALID_PORTS = (1, 2)


@dataclass(frozen=True)
class SubscribeResult:
    """Outcome of :func:`subscribe`."""

    subscription_id: uuid.UUID
    replaced: int


@dataclass(frozen=True)
class UnsubscribeResult:
    """Outcome of :func:`unsubscribe`."""

    deactivated_count: int
    tasks_cancelled: int


def validate_port(port: int | None) -> None:
    """Reject port numbers other than 1, 2, or None (any port)."""
    if port is not None and port not in VALID_PORTS:
        raise ValidationFailed(f"port must be 1, 2 or null, got {port!r}")


def validate_target_status(target_status: str | None) -> str:
    """Normalize a target status, defaulting to AVAILABLE."""
    status = normalize_status(target_status) or PortStatus.AVAILABLE.value
    if status not in {s.value for s in PortStatus}:
        raise ValidationFailed(f"target_status has unknown value {status!r}")
    return status


def _same_port(port: int | None):
    """SQL predicate matching ``port_number`` including the NULL case."""
    if port is None:
        return Subscription.port_number.is_(None)
    return Subscription.port_number == port


async def subscribe(
    session: AsyncSession,
    *,
    station_id: int,
    port: int | None,
    endpoint: str,
    p256dh: str,
    auth: str,
    target_status: str | None = None,
    policy: str = "single_watch",
) -> SubscribeResult:
    """Create or refresh the active watch for (station, port, endpoint).

    Under the ``single_watch`` policy every other active subscription of
    the endpoint (any station, any port) is deactivated first and its
    polling tasks are cancelled.

    Args:
        session: Async SQLAlchemy session.
        station_id: Station to watch.
        port: Port to watch, or None for any port.
        endpoint: Browser push endpoint URL.
        p256dh: Push encryption public key.
        auth: Push authentication secret.
        target_status: Status to wait for (default AVAILABLE).
        policy: ``single_watch`` or ``multi_watch``.

    Returns:
        SubscribeResult: Id of the active subscription and how many other
        watches were replaced.
    """
    if not endpoint or not p256dh or not auth:
        raise ValidationFailed("endpoint and both push keys are required")
    validate_port(port)
    status = validate_target_status(target_status)

    replaced_ids: Sequence[uuid.UUID] = []
    if policy == "single_watch":
        result = await session.execute(
            update(Subscription)
            .where(
                Subscription.endpoint == endpoint,
                Subscription.is_active.is_(True),
                not_(and_(Subscription.station_id == station_id, _same_port(port))),
            )
            .values(is_active=False)
            .returning(Subscription.id)
        )
        replaced_ids = result.scalars().all()
        if replaced_ids:
            await cancel_tasks_for_subscriptions(session, replaced_ids)

    stmt = insert(Subscription).values(
        id=uuid.uuid4(),
        station_id=station_id,
        port_number=port,
        endpoint=endpoint,
        p256dh=p256dh,
        auth=auth,
        target_status=status,
        is_active=True,
        delivery_failures=0,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[
            Subscription.station_id,
            Subscription.port_number,
            Subscription.endpoint,
        ],
        index_where=text("is_active"),
        set_={
            "p256dh": stmt.excluded.p256dh,
            "auth": stmt.excluded.auth,
            "target_status": stmt.excluded.target_status,
            "is_active": True,
            "delivery_failures": 0,
        },
    ).returning(Subscription.id)
    result = await session.execute(stmt)
    subscription_id = result.scalar_one()
    await session.commit()

    logger.info(
        "Subscription %s active for station %s port %s (replaced %d)",
        subscription_id,
        station_id,
        port,
        len(replaced_ids),
    )
    return SubscribeResult(subscription_id=subscription_id, replaced=len(replaced_ids))


async def unsubscribe(
    session: AsyncSession,
    *,
    station_id: int,
    port: int | None,
    endpoint: str,
) -> UnsubscribeResult:
    """Deactivate matching active subscriptions and cancel their tasks.

    A ``port`` of None matches every port of the station for the endpoint.
    """
    if not endpoint:
        raise ValidationFailed("endpoint is required")
    validate_port(port)

    conditions = [
        Subscription.station_id == station_id,
        Subscription.endpoint == endpoint,
        Subscription.is_active.is_(True),
    ]
    if port is not None:
        conditions.append(Subscription.port_number == port)

    result = await session.execute(
        update(Subscription)
        .where(*conditions)
        .values(is_active=False)
        .returning(Subscription.id)
    )
    ids = result.scalars().all()
    cancelled = await cancel_tasks_for_subscriptions(session, ids) if ids else 0
    await session.commit()

    logger.info(
        "Unsubscribed %d subscription(s), cancelled %d task(s) for station %s port %s",
        len(ids),
        cancelled,
        station_id,
        port,
    )
    return UnsubscribeResult(deactivated_count=len(ids), tasks_cancelled=cancelled)


async def check_subscribed(
    session: AsyncSession, *, station_id: int, endpoint: str,
) -> set[int | None]:
    """Return the ports the endpoint actively watches at *station_id*.

    An "any port" watch is reported as None.
    """
    result = await session.execute(
        select(Subscription.port_number).where(
            Subscription.station_id == station_id,
            Subscription.endpoint == endpoint,
            Subscription.is_active.is_(True),
        )
    )
    return set(result.scalars().all())


async def list_ready(
    session: AsyncSession,
    station_id: int,
    port: int,
    status: str = PortStatus.AVAILABLE.value,
) -> list[Subscription]:
    """Return active subscriptions for *station_id* that cover *port*.

    Includes subscriptions for exactly *port* and "any port" subscriptions,
    restricted to those waiting for *status*.
    """
    result = await session.execute(
        select(Subscription)
        .where(
            Subscription.station_id == station_id,
            Subscription.is_active.is_(True),
            or_(Subscription.port_number == port, Subscription.port_number.is_(None)),
            Subscription.target_status == status,
        )
        .order_by(Subscription.created_at)
    )
    return list(result.scalars().all())
