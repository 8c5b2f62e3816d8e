"""
Dispatch outbox for reactive notifications.

When a stored snapshot flips a port from occupied to available, the
ingestion transaction enqueues a job here instead of sending pushes
inline. A drain claims due jobs, runs the shared dispatcher for each and
marks them done. A job whose dispatch raises is rescheduled with capped
exponential backoff (``min(2**attempts, max_backoff)`` seconds) and is
marked failed once it runs out of attempts.

Claiming pushes ``available_at`` forward by a lease inside the same
``FOR UPDATE SKIP LOCKED`` statement, so concurrent drains never pick up
the same job and a crashed drain's jobs become due again after the lease.

CHANGELOG:
- 2026-10-11: Initial creation (STORY-109)
- 2026-10-16: Backlog query for /health (STORY-115)

TODO:
- None
"""

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chargewatch.config import Settings
from chargewatch.db.models import DispatchOutbox, OutboxStatus
from chargewatch.services.dispatcher import dispatch
from chargewatch.services.push import PushSender

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_MAX_BACKOFF_S = 300
DEFAULT_LEASE_S = 600


@dataclass
class DrainResult:
    """Counts produced by :func:`drain_outbox`."""

    claimed: int = 0
    done: int = 0
    retried: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        """Serialize for JSON responses."""
        return asdict(self)


@dataclass(frozen=True)
class Backlog:
    """Pending jobs that are already due.

    Attributes:
        due: Number of due pending jobs.
        oldest_due_s: Seconds the oldest due job has been waiting, or None.
    """

    due: int
    oldest_due_s: int | None


def backoff_seconds(attempts: int, max_backoff_s: int = DEFAULT_MAX_BACKOFF_S) -> int:
    """Retry delay after *attempts* failed attempts: ``min(2**attempts, cap)``."""
    return min(2**attempts, max_backoff_s)


async def enqueue_dispatch(
    session: AsyncSession, station_id: int, port: int, now: datetime,
) -> DispatchOutbox:
    """Add a pending dispatch job for *station_id* / *port*.

    Does not commit: the job is written in the caller's transaction.
    """
    job = DispatchOutbox(
        station_id=station_id,
        port_number=port,
        status=OutboxStatus.PENDING.value,
        attempts=0,
        available_at=now,
    )
    session.add(job)
    return job


async def outbox_backlog(session: AsyncSession, now: datetime) -> Backlog:
    """Count pending jobs due at *now* and how long the oldest has waited."""
    result = await session.execute(
        select(func.count(DispatchOutbox.id), func.min(DispatchOutbox.available_at)).where(
            DispatchOutbox.status == OutboxStatus.PENDING.value,
            DispatchOutbox.available_at <= now,
        )
    )
    due, oldest = result.one()
    if oldest is None:
        return Backlog(due=due, oldest_due_s=None)
    return Backlog(due=due, oldest_due_s=int((now - oldest).total_seconds()))


async def claim_jobs(
    session: AsyncSession,
    *,
    now: datetime,
    batch_size: int = DEFAULT_BATCH_SIZE,
    lease_s: int = DEFAULT_LEASE_S,
) -> list[DispatchOutbox]:
    """Claim up to *batch_size* due jobs and commit the claim.

    Each claimed job has its attempt counter incremented and is hidden
    from other drains for *lease_s* seconds.
    """
    due = (
        select(DispatchOutbox.id)
        .where(
            DispatchOutbox.status == OutboxStatus.PENDING.value,
            DispatchOutbox.available_at <= now,
        )
        .order_by(DispatchOutbox.available_at)
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    result = await session.execute(
        update(DispatchOutbox)
        .where(DispatchOutbox.id.in_(due.scalar_subquery()))
        .values(
            attempts=DispatchOutbox.attempts + 1,
            available_at=now + timedelta(seconds=lease_s),
        )
        .returning(DispatchOutbox)
        .execution_options(synchronize_session=False)
    )
    jobs = list(result.scalars().all())
    await session.commit()
    return jobs


async def mark_done(session: AsyncSession, job: DispatchOutbox, result: str) -> None:
    """Record a completed dispatch for *job*."""
    await session.execute(
        update(DispatchOutbox)
        .where(DispatchOutbox.id == job.id)
        .values(status=OutboxStatus.DONE.value, result=result, last_error=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def mark_retry(
    session: AsyncSession,
    job: DispatchOutbox,
    error: str,
    *,
    now: datetime,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    max_backoff_s: int = DEFAULT_MAX_BACKOFF_S,
) -> bool:
    """Reschedule *job* after a failed attempt, or fail it for good.

    Returns:
        bool: True if the job will be retried, False if it was marked failed.
    """
    if job.attempts >= max_attempts:
        values = {"status": OutboxStatus.FAILED.value, "last_error": error}
        retry = False
    else:
        delay = backoff_seconds(job.attempts, max_backoff_s)
        values = {
            "available_at": now + timedelta(seconds=delay),
            "last_error": error,
        }
        retry = True
    await session.execute(
        update(DispatchOutbox)
        .where(DispatchOutbox.id == job.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return retry


async def drain_outbox(
    session: AsyncSession,
    sender: PushSender,
    settings: Settings,
    now: datetime | None = None,
) -> DrainResult:
    """Run the dispatcher for every due outbox job.

    Args:
        session: Async SQLAlchemy session.
        sender: Push delivery collaborator.
        settings: Batch size, attempt budget, backoff cap and dispatcher
            windows.
        now: Override for the current time (tests).

    Returns:
        DrainResult: How many jobs were claimed, finished, retried, failed.
    """
    now = now or datetime.now(tz=UTC)
    jobs = await claim_jobs(
        session,
        now=now,
        batch_size=settings.OUTBOX_BATCH_SIZE,
        lease_s=settings.DISPATCH_STALE_S,
    )
    drained = DrainResult(claimed=len(jobs))

    for job in jobs:
        try:
            result = await dispatch(
                session,
                sender,
                station_id=job.station_id,
                port=job.port_number,
                dedup_window_s=settings.NOTIFY_DEDUP_WINDOW_S,
                failure_policy=settings.PUSH_FAILURE_POLICY,
                subscription_policy=settings.SUBSCRIPTION_POLICY,
                max_delivery_failures=settings.PUSH_MAX_DELIVERY_FAILURES,
                now=now,
            )
        except Exception as exc:
            await session.rollback()
            logger.warning(
                "Outbox dispatch failed for station %s port %s (attempt %d)",
                job.station_id,
                job.port_number,
                job.attempts,
                exc_info=True,
                extra={"station_id": job.station_id, "operation": "drain_outbox"},
            )
            retried = await mark_retry(
                session,
                job,
                str(exc) or type(exc).__name__,
                now=now,
                max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
                max_backoff_s=settings.OUTBOX_MAX_BACKOFF_S,
            )
            if retried:
                drained.retried += 1
            else:
                drained.failed += 1
            continue

        await mark_done(session, job, result.status)
        drained.done += 1

    if jobs:
        logger.info(
            "Outbox drain: claimed=%d done=%d retried=%d failed=%d",
            drained.claimed,
            drained.done,
            drained.retried,
            drained.failed,
        )
    return drained
