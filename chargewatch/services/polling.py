"""
Polling task engine: "watch this station port until it reaches a status".

Task states::

    pending -> running -> dispatching -> completed
                  ^           |
                  +-----------+  (cooldown / failed dispatch)
    pending | running | dispatching -> cancelled | expired

A sweep claims non-terminal tasks with ``SELECT ... FOR UPDATE SKIP
LOCKED`` so overlapping sweeps (on any machine) never claim the same
task; the slower sweep's rows are simply skipped by the next one.
Debounce is observation-based: a reading only counts when the port's
upstream update date is newer than the last one the task has seen.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-104)
- 2026-10-08: Reclaim stale dispatching tasks (STORY-106)
- 2026-10-16: Ready tasks carry their target status (STORY-115)

TODO:
- None
"""

import logging
import uuid
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chargewatch.db.models import (
    ACTIVE_TASK_STATUSES,
    NON_TERMINAL_TASK_STATUSES,
    PollingTask,
    StationSnapshot,
    Subscription,
    TaskStatus,
)
from chargewatch.services.snapshots import PORTS, get_snapshots

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_THRESHOLD = 2
DEFAULT_BATCH_SIZE = 200
DEFAULT_STALE_S = 600


@dataclass(frozen=True)
class Evaluation:
    """What one sweep observed for one task.

    Attributes:
        port: Port the observation refers to.
        status: Observed port status.
        observed_at: Upstream update time of the observation.
        is_new: Observation is newer than the last one the task saw.
        consecutive: Updated consecutive-match counter.
        ready: Counter reached the debounce threshold.
    """

    port: int
    status: str | None
    observed_at: datetime | None
    is_new: bool
    consecutive: int
    ready: bool


@dataclass(frozen=True)
class ReadyTask:
    """A task promoted to ``dispatching`` during a sweep."""

    task_id: uuid.UUID
    subscription_id: uuid.UUID
    station_id: int
    port: int
    target_status: str
    consecutive_available: int


@dataclass
class SweepResult:
    """Classification produced by :func:`process_polling_tasks`."""

    processed: int = 0
    expired: int = 0
    cancelled: int = 0
    ready: list[ReadyTask] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict:
        """Serialize for JSON responses."""
        data = asdict(self)
        data["ready"] = [
            {**item, "task_id": str(item["task_id"]), "subscription_id": str(item["subscription_id"])}
            for item in data["ready"]
        ]
        return data


def _matches(status: str | None, target: str) -> bool:
    return status is not None and status.upper() == target.upper()


def select_port(task: PollingTask, snapshot: StationSnapshot) -> int:
    """Pick the port a task should look at in *snapshot*.

    A task bound to a port always looks at that port. An "any port" task
    looks at the first port currently in the target status, else port 1.
    """
    if task.target_port is not None:
        return task.target_port
    for port in PORTS:
        if _matches(snapshot.port_status(port), task.target_status):
            return port
    return PORTS[0]


def evaluate_task(
    task: PollingTask,
    snapshot: StationSnapshot,
    threshold: int = DEFAULT_DEBOUNCE_THRESHOLD,
) -> Evaluation:
    """Advance a task's debounce counter against the latest snapshot.

    Counter rules:
        - new observation in the target status: counter + 1
        - new observation in another status: counter reset to 0
        - no new observation: counter unchanged

    The port's upstream update date identifies an observation; when the
    upstream does not report one, the snapshot's ``observed_at`` is used.

    Args:
        task: Task being evaluated (not modified).
        snapshot: Latest snapshot of the task's station.
        threshold: Consecutive matches required for dispatch.

    Returns:
        Evaluation: Observation details and the updated counter.
    """
    port = select_port(task, snapshot)
    status = snapshot.port_status(port)
    observed_at = snapshot.port_update_date(port) or snapshot.observed_at
    is_new = observed_at is not None and (
        task.last_seen_port_update_at is None
        or observed_at > task.last_seen_port_update_at
    )

    consecutive = task.consecutive_available
    if is_new:
        consecutive = consecutive + 1 if _matches(status, task.target_status) else 0

    return Evaluation(
        port=port,
        status=status,
        observed_at=observed_at,
        is_new=is_new,
        consecutive=consecutive,
        ready=consecutive >= threshold,
    )


def is_expired(task: PollingTask, now: datetime) -> bool:
    """A task expires past its deadline or once its poll budget is spent."""
    return task.expires_at <= now or task.poll_count >= task.max_polls


async def create_task(
    session: AsyncSession,
    *,
    subscription_id: uuid.UUID,
    station_id: int,
    target_port: int | None,
    target_status: str,
    ttl_hours: int,
    max_polls: int,
    now: datetime | None = None,
) -> PollingTask:
    """Create a pending polling task for a subscription and commit it."""
    now = now or datetime.now(tz=UTC)
    task = PollingTask(
        id=uuid.uuid4(),
        subscription_id=subscription_id,
        station_id=station_id,
        target_port=target_port,
        target_status=target_status,
        status=TaskStatus.PENDING.value,
        poll_count=0,
        max_polls=max_polls,
        consecutive_available=0,
        expires_at=now + timedelta(hours=ttl_hours),
    )
    session.add(task)
    await session.commit()
    logger.info(
        "Created polling task %s for station %s port %s (expires %s)",
        task.id,
        station_id,
        target_port,
        task.expires_at.isoformat(),
    )
    return task


async def cancel_tasks_for_subscriptions(
    session: AsyncSession, subscription_ids: Sequence[uuid.UUID],
) -> int:
    """Cancel the non-terminal tasks owned by *subscription_ids*.

    Does not commit: callers cascade this inside their own transaction.

    Returns:
        int: Number of tasks cancelled.
    """
    if not subscription_ids:
        return 0
    result = await session.execute(
        update(PollingTask)
        .where(
            PollingTask.subscription_id.in_(subscription_ids),
            PollingTask.status.in_([s.value for s in NON_TERMINAL_TASK_STATUSES]),
        )
        .values(status=TaskStatus.CANCELLED.value, completed_at=datetime.now(tz=UTC))
        .returning(PollingTask.id)
        .execution_options(synchronize_session=False)
    )
    return len(result.scalars().all())


def _claim_statement(now: datetime, batch_size: int, stale_s: int, dry_run: bool):
    stale_cutoff = now - timedelta(seconds=stale_s)
    stmt = (
        select(PollingTask, Subscription.is_active)
        .join(Subscription, Subscription.id == PollingTask.subscription_id)
        .where(
            or_(
                PollingTask.status.in_([s.value for s in ACTIVE_TASK_STATUSES]),
                and_(
                    PollingTask.status == TaskStatus.DISPATCHING.value,
                    PollingTask.claimed_at < stale_cutoff,
                ),
            )
        )
        .order_by(PollingTask.created_at)
        .limit(batch_size)
    )
    if not dry_run:
        stmt = stmt.with_for_update(of=PollingTask, skip_locked=True)
    return stmt


async def process_polling_tasks(
    session: AsyncSession,
    *,
    dry_run: bool = False,
    debounce_threshold: int = DEFAULT_DEBOUNCE_THRESHOLD,
    batch_size: int = DEFAULT_BATCH_SIZE,
    stale_s: int = DEFAULT_STALE_S,
    now: datetime | None = None,
) -> SweepResult:
    """Run one sweep over the non-terminal polling tasks.

    For each claimed task (at most *batch_size*):
        - past ``expires_at`` or out of polls: ``expired`` and its
          subscription deactivated;
        - owning subscription no longer active: ``cancelled``;
        - otherwise evaluated against the latest snapshot: ``running``,
          or ``dispatching`` once the debounce threshold is reached.

    With ``dry_run=True`` the same classification is computed without
    locking or mutating anything.

    Args:
        session: Async SQLAlchemy session.
        dry_run: Compute the classification only.
        debounce_threshold: Consecutive matches required for dispatch.
        batch_size: Maximum number of tasks claimed by this sweep.
        stale_s: Age after which a ``dispatching`` task is reclaimed.
        now: Override for the current time (tests).

    Returns:
        SweepResult: Counts and the tasks that just became ready.
    """
    now = now or datetime.now(tz=UTC)
    result = SweepResult(dry_run=dry_run)

    rows = (await session.execute(_claim_statement(now, batch_size, stale_s, dry_run))).all()
    if not rows:
        return result

    snapshots = await get_snapshots(session, (task.station_id for task, _ in rows))
    expired_subscriptions: list[uuid.UUID] = []

    for task, subscription_active in rows:
        if is_expired(task, now):
            result.expired += 1
            if not dry_run:
                task.status = TaskStatus.EXPIRED.value
                task.completed_at = now
                expired_subscriptions.append(task.subscription_id)
            continue

        if not subscription_active:
            result.cancelled += 1
            if not dry_run:
                task.status = TaskStatus.CANCELLED.value
                task.completed_at = now
            continue

        snapshot = snapshots.get(task.station_id)
        if snapshot is None:
            if not dry_run and task.status == TaskStatus.DISPATCHING.value:
                task.status = TaskStatus.RUNNING.value
                task.claimed_at = None
            continue

        evaluation = evaluate_task(task, snapshot, debounce_threshold)
        result.processed += 1
        if evaluation.ready:
            result.ready.append(
                ReadyTask(
                    task_id=task.id,
                    subscription_id=task.subscription_id,
                    station_id=task.station_id,
                    port=evaluation.port,
                    target_status=task.target_status,
                    consecutive_available=evaluation.consecutive,
                )
            )

        if dry_run:
            continue
        task.consecutive_available = evaluation.consecutive
        task.last_checked_at = now
        task.poll_count = task.poll_count + 1
        if evaluation.is_new:
            task.last_seen_port_update_at = evaluation.observed_at
            task.last_seen_status = evaluation.status
        if evaluation.ready:
            task.status = TaskStatus.DISPATCHING.value
            task.claimed_at = now
        else:
            task.status = TaskStatus.RUNNING.value
            task.claimed_at = None

    if not dry_run:
        if expired_subscriptions:
            await session.execute(
                update(Subscription)
                .where(
                    Subscription.id.in_(expired_subscriptions),
                    Subscription.is_active.is_(True),
                )
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
        await session.commit()

    logger.info(
        "Sweep%s: processed=%d expired=%d cancelled=%d ready=%d",
        " (dry run)" if dry_run else "",
        result.processed,
        result.expired,
        result.cancelled,
        len(result.ready),
    )
    return result


async def set_task_status(
    session: AsyncSession,
    task_id: uuid.UUID,
    status: TaskStatus,
    now: datetime | None = None,
) -> bool:
    """Move a ``dispatching`` task to *status* and commit.

    Returns:
        bool: False if the task was no longer dispatching (for example it
        was cancelled by an unsubscribe while the dispatch was in flight).
    """
    now = now or datetime.now(tz=UTC)
    terminal = status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.EXPIRED)
    result = await session.execute(
        update(PollingTask)
        .where(
            PollingTask.id == task_id,
            PollingTask.status == TaskStatus.DISPATCHING.value,
        )
        .values(
            status=status.value,
            claimed_at=None,
            completed_at=now if terminal else None,
        )
        .returning(PollingTask.id)
        .execution_options(synchronize_session=False)
    )
    changed = result.scalar_one_or_none() is not None
    await session.commit()
    return changed
