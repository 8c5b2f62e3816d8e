"""
Tests for sweep orchestration (STORY-105, STORY-107).

CHANGELOG:
- 2026-10-07: Initial creation (STORY-105)
- 2026-10-09: Result-to-status table (STORY-107)
- 2026-10-16: Target status forwarding; termination over repeated sweeps (STORY-115)

TODO:
- None
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chargewatch.db.models import TaskStatus
from chargewatch.services.dispatcher import Cooldown, DispatchFailed, NoSubscriptions, Sent
from chargewatch.services.polling import ReadyTask, SweepResult
from chargewatch.services.sweep import next_task_status, run_sweep
from tests.factories import NOW, make_snapshot, make_task

MODULE = "chargewatch.services.sweep"


def _ready(port: int = 1, target_status: str = "AVAILABLE") -> ReadyTask:
    return ReadyTask(
        task_id=uuid.uuid4(),
        subscription_id=uuid.uuid4(),
        station_id=147988,
        port=port,
        target_status=target_status,
        consecutive_available=2,
    )


class TestNextTaskStatus:
    """Dispatch result -> task status."""

    @pytest.mark.parametrize(
        ("result", "expected"),
        [
            (Sent(sent=1, failed=0, deactivated=1), TaskStatus.COMPLETED),
            (Sent(sent=0, failed=2, deactivated=2), TaskStatus.COMPLETED),
            (Sent(sent=0, failed=1, deactivated=0, retained=1), TaskStatus.RUNNING),
            (Sent(sent=1, failed=1, deactivated=1, retained=1), TaskStatus.COMPLETED),
            (NoSubscriptions(), TaskStatus.COMPLETED),
            (Cooldown(retry_after_seconds=30), TaskStatus.RUNNING),
            (DispatchFailed(reason="boom"), TaskStatus.RUNNING),
        ],
    )
    def test_mapping(self, result, expected: TaskStatus) -> None:
        """Each result variant maps to exactly one status."""
        assert next_task_status(result) == expected


class TestRunSweep:
    """run_sweep wires the sweep, the dispatcher and status updates."""

    @pytest.mark.asyncio()
    async def test_dry_run_never_dispatches(self, mock_db_session, settings) -> None:
        """Dry-run reports ready tasks without sending anything."""
        sweep = SweepResult(processed=1, ready=[_ready()], dry_run=True)
        with (
            patch(f"{MODULE}.process_polling_tasks", new_callable=AsyncMock, return_value=sweep),
            patch(f"{MODULE}.dispatch", new_callable=AsyncMock) as dispatch,
        ):
            report = await run_sweep(mock_db_session, None, settings, dry_run=True, now=NOW)

        dispatch.assert_not_awaited()
        assert report.outcomes == []
        assert len(report.to_dict()["ready"]) == 1

    @pytest.mark.asyncio()
    async def test_ready_tasks_dispatched(self, mock_db_session, settings) -> None:
        """Every ready task is dispatched and moved to its next status."""
        first, second = _ready(1), _ready(2)
        sweep = SweepResult(processed=2, ready=[first, second])
        with (
            patch(f"{MODULE}.process_polling_tasks", new_callable=AsyncMock, return_value=sweep),
            patch(
                f"{MODULE}.dispatch",
                new_callable=AsyncMock,
                side_effect=[Sent(sent=1, failed=0, deactivated=1), Cooldown(retry_after_seconds=60)],
            ),
            patch(f"{MODULE}.set_task_status", new_callable=AsyncMock, return_value=True) as set_status,
        ):
            report = await run_sweep(mock_db_session, AsyncMock(), settings, now=NOW)

        statuses = [c.args[2] for c in set_status.await_args_list]
        assert statuses == [TaskStatus.COMPLETED, TaskStatus.RUNNING]
        assert [o["task_status"] for o in report.outcomes] == ["completed", "running"]
        assert report.outcomes[0]["task_id"] == str(first.task_id)
        assert report.outcomes[1]["retry_after_seconds"] == 60

    @pytest.mark.asyncio()
    async def test_dispatch_exception_keeps_task_running(self, mock_db_session, settings) -> None:
        """A raising dispatch becomes DispatchFailed; the task goes back to running."""
        sweep = SweepResult(processed=1, ready=[_ready()])
        with (
            patch(f"{MODULE}.process_polling_tasks", new_callable=AsyncMock, return_value=sweep),
            patch(f"{MODULE}.dispatch", new_callable=AsyncMock, side_effect=RuntimeError("db down")),
            patch(f"{MODULE}.set_task_status", new_callable=AsyncMock, return_value=True) as set_status,
        ):
            report = await run_sweep(mock_db_session, AsyncMock(), settings, now=NOW)

        mock_db_session.rollback.assert_awaited_once()
        assert set_status.await_args.args[2] == TaskStatus.RUNNING
        assert report.outcomes[0]["status"] == "failed"
        assert report.outcomes[0]["reason"] == "db down"

    @pytest.mark.asyncio()
    async def test_sender_required_when_ready(self, mock_db_session, settings) -> None:
        """Dispatching without a sender is a programming error."""
        sweep = SweepResult(processed=1, ready=[_ready()])
        with (
            patch(f"{MODULE}.process_polling_tasks", new_callable=AsyncMock, return_value=sweep),
            pytest.raises(ValueError),
        ):
            await run_sweep(mock_db_session, None, settings, now=NOW)

    @pytest.mark.asyncio()
    async def test_nothing_ready(self, mock_db_session, settings) -> None:
        """No ready tasks means no sender is needed."""
        with patch(
            f"{MODULE}.process_polling_tasks",
            new_callable=AsyncMock,
            return_value=SweepResult(processed=3),
        ):
            report = await run_sweep(mock_db_session, None, settings, now=NOW)

        assert report.to_dict()["processed"] == 3
        assert report.to_dict()["outcomes"] == []

    @pytest.mark.asyncio()
    async def test_target_status_forwarded(self, mock_db_session, settings) -> None:
        """The dispatcher only matches subscriptions waiting for the task's status."""
        sweep = SweepResult(processed=1, ready=[_ready(target_status="OCCUPIED")])
        with (
            patch(f"{MODULE}.process_polling_tasks", new_callable=AsyncMock, return_value=sweep),
            patch(
                f"{MODULE}.dispatch", new_callable=AsyncMock, return_value=NoSubscriptions(),
            ) as dispatch,
            patch(f"{MODULE}.set_task_status", new_callable=AsyncMock, return_value=True),
        ):
            await run_sweep(mock_db_session, AsyncMock(), settings, now=NOW)

        assert dispatch.await_args.kwargs["status"] == "OCCUPIED"
        assert dispatch.await_args.kwargs["subscription_policy"] == "single_watch"


# ----------------------------------------------------------------------------
# Repeated sweeps over one task
# ----------------------------------------------------------------------------

TERMINAL = {"completed", "cancelled", "expired"}


class _Store:
    """Stands in for the task table across successive sweeps."""

    def __init__(self, task) -> None:
        self.task = task

    def execute(self, *args, **kwargs) -> MagicMock:
        result = MagicMock()
        result.all.return_value = [] if self.task.status in TERMINAL else [(self.task, True)]
        return result

    def set_status(self, session, task_id, status, now=None) -> bool:
        if self.task.status != TaskStatus.DISPATCHING.value:
            return False
        self.task.status = status.value
        self.task.claimed_at = None
        return True


class TestSweepTermination:
    """A task reaches a terminal status however often the dispatcher defers it."""

    async def _sweep(self, session, settings, store, dispatch_result, now):
        snapshot = make_snapshot(port1_update_date=NOW - timedelta(minutes=1))
        with (
            patch(
                "chargewatch.services.polling.get_snapshots",
                new_callable=AsyncMock,
                return_value={147988: snapshot},
            ),
            patch(
                f"{MODULE}.dispatch", new_callable=AsyncMock, return_value=dispatch_result,
            ) as dispatch,
            patch(
                f"{MODULE}.set_task_status", new_callable=AsyncMock, side_effect=store.set_status,
            ),
        ):
            await run_sweep(session, AsyncMock(), settings, now=now)
        return dispatch.await_count

    @pytest.mark.asyncio()
    async def test_cooldown_task_ready_again_without_new_observation(
        self, mock_db_session, settings,
    ) -> None:
        """After Cooldown the task returns to running and is retried next sweep."""
        store = _Store(make_task(consecutive_available=1))
        mock_db_session.execute.side_effect = store.execute

        first = await self._sweep(
            mock_db_session, settings, store, Cooldown(retry_after_seconds=60), NOW,
        )
        assert first == 1
        assert store.task.status == "running"
        seen = store.task.last_seen_port_update_at

        # Same snapshot: no new observation, the counter stays at the threshold.
        second = await self._sweep(
            mock_db_session,
            settings,
            store,
            Cooldown(retry_after_seconds=1),
            NOW + timedelta(minutes=1),
        )
        assert second == 1
        assert store.task.last_seen_port_update_at == seen
        assert store.task.consecutive_available == 2

        third = await self._sweep(
            mock_db_session,
            settings,
            store,
            Sent(sent=1, failed=0, deactivated=1),
            NOW + timedelta(minutes=6),
        )
        assert third == 1
        assert store.task.status == "completed"

        after = await self._sweep(
            mock_db_session,
            settings,
            store,
            Sent(sent=1, failed=0, deactivated=1),
            NOW + timedelta(minutes=7),
        )
        assert after == 0

    @pytest.mark.asyncio()
    async def test_endless_cooldown_expires_on_poll_budget(self, mock_db_session, settings) -> None:
        """A task that is deferred forever expires once its polls are spent."""
        store = _Store(make_task(consecutive_available=1, max_polls=3))
        mock_db_session.execute.side_effect = store.execute

        sweeps = 0
        while store.task.status not in TERMINAL and sweeps < 10:
            await self._sweep(
                mock_db_session,
                settings,
                store,
                Cooldown(retry_after_seconds=60),
                NOW + timedelta(minutes=sweeps),
            )
            sweeps += 1

        assert store.task.status == "expired"
        assert sweeps == 4
        assert store.task.poll_count == 3
        assert store.task.completed_at is not None

    @pytest.mark.asyncio()
    async def test_repeated_failures_expire_at_deadline(self, mock_db_session, settings) -> None:
        """Dispatch failures keep the task running only until its deadline."""
        store = _Store(
            make_task(consecutive_available=1, expires_at=NOW + timedelta(minutes=30)),
        )
        mock_db_session.execute.side_effect = store.execute

        for minute in range(0, 30, 10):
            await self._sweep(
                mock_db_session,
                settings,
                store,
                DispatchFailed(reason="push service down"),
                NOW + timedelta(minutes=minute),
            )
            assert store.task.status == "running"

        dispatched = await self._sweep(
            mock_db_session,
            settings,
            store,
            DispatchFailed(reason="push service down"),
            NOW + timedelta(minutes=30),
        )
        assert dispatched == 0
        assert store.task.status == "expired"
