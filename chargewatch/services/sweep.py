"""
Sweep orchestration: classify polling tasks, dispatch the ready ones and
fold each dispatch result back into its task.

The dispatcher never writes polling tasks; this module is the only place
that interprets a :data:`DispatchResult` for a task:

    ===============================  ===========
    Result                           Task status
    ===============================  ===========
    Sent (something delivered)       completed
    Sent (all retained for retry)    running
    Sent (nothing retained)          completed
    NoSubscriptions                  completed
    Cooldown                         running
    DispatchFailed                   running
    ===============================  ===========

CHANGELOG:
- 2026-10-07: Initial creation (STORY-105)
- 2026-10-09: Tagged dispatch results (STORY-107)
- 2026-10-16: Dispatch with the task target status and subscription policy (STORY-115)

TODO:
- None
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, assert_never

from sqlalchemy.ext.asyncio import AsyncSession

from chargewatch.config import Settings
from chargewatch.db.models import TaskStatus
from chargewatch.services.dispatcher import (
    Cooldown,
    DispatchFailed,
    DispatchResult,
    NoSubscriptions,
    Sent,
    dispatch,
    result_to_dict,
)
from chargewatch.services.polling import (
    ReadyTask,
    SweepResult,
    process_polling_tasks,
    set_task_status,
)
from chargewatch.services.push import PushSender

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """A sweep plus the dispatch outcome of every ready task."""

    sweep: SweepResult
    outcomes: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON responses."""
        data = self.sweep.to_dict()
        data["outcomes"] = self.outcomes
        return data


def next_task_status(result: DispatchResult) -> TaskStatus:
    """Map a dispatch result onto the task's next status."""
    if isinstance(result, Sent):
        if result.sent == 0 and result.retained > 0:
            return TaskStatus.RUNNING
        return TaskStatus.COMPLETED
    if isinstance(result, NoSubscriptions):
        return TaskStatus.COMPLETED
    if isinstance(result, Cooldown):
        return TaskStatus.RUNNING
    if isinstance(result, DispatchFailed):
        return TaskStatus.RUNNING
    assert_never(result)


async def apply_dispatch_outcome(
    session: AsyncSession,
    task: ReadyTask,
    result: DispatchResult,
    now: datetime | None = None,
) -> TaskStatus:
    """Move a dispatching task to the status implied by *result*."""
    status = next_task_status(result)
    changed = await set_task_status(session, task.task_id, status, now)
    if not changed:
        logger.info("Task %s left dispatching before its outcome was applied", task.task_id)
    return status


async def dispatch_ready_task(
    session: AsyncSession,
    sender: PushSender,
    task: ReadyTask,
    settings: Settings,
) -> DispatchResult:
    """Dispatch one ready task; any failure becomes :class:`DispatchFailed`."""
    try:
        return await dispatch(
            session,
            sender,
            station_id=task.station_id,
            port=task.port,
            status=task.target_status,
            dedup_window_s=settings.NOTIFY_DEDUP_WINDOW_S,
            failure_policy=settings.PUSH_FAILURE_POLICY,
            subscription_policy=settings.SUBSCRIPTION_POLICY,
            max_delivery_failures=settings.PUSH_MAX_DELIVERY_FAILURES,
        )
    except Exception as exc:
        await session.rollback()
        logger.exception(
            "Dispatch failed for task %s (station %s port %s)",
            task.task_id,
            task.station_id,
            task.port,
            extra={"station_id": task.station_id, "operation": "sweep_dispatch"},
        )
        return DispatchFailed(reason=str(exc) or type(exc).__name__)


async def run_sweep(
    session: AsyncSession,
    sender: PushSender | None,
    settings: Settings,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
) -> SweepReport:
    """Sweep the polling tasks and, unless dry-run, dispatch the ready ones.

    Args:
        session: Async SQLAlchemy session.
        sender: Push delivery collaborator (unused in dry-run).
        settings: Sweep batch size, debounce threshold and dispatcher windows.
        dry_run: Classify only; nothing is locked, written or sent.
        now: Override for the current time (tests).

    Returns:
        SweepReport: Sweep counts and one outcome entry per ready task.
    """
    now = now or datetime.now(tz=UTC)
    sweep = await process_polling_tasks(
        session,
        dry_run=dry_run,
        debounce_threshold=settings.DEBOUNCE_THRESHOLD,
        batch_size=settings.SWEEP_BATCH_SIZE,
        stale_s=settings.DISPATCH_STALE_S,
        now=now,
    )
    report = SweepReport(sweep=sweep)
    if dry_run or not sweep.ready:
        return report
    if sender is None:
        raise ValueError("A push sender is required to dispatch ready tasks")

    for task in sweep.ready:
        result = await dispatch_ready_task(session, sender, task, settings)
        status = await apply_dispatch_outcome(session, task, result)
        report.outcomes.append(
            {
                "task_id": str(task.task_id),
                "station_id": task.station_id,
                "port": task.port,
                "task_status": status.value,
                **result_to_dict(result),
            }
        )
    return report
