"""
Tests for the reactive dispatch outbox (STORY-109).

CHANGELOG:
- 2026-10-11: Initial creation (STORY-109)

TODO:
- None
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from chargewatch.db.models import DispatchOutbox, OutboxStatus
from chargewatch.services.dispatcher import Cooldown, Sent
from chargewatch.services.outbox import (
    backoff_seconds,
    drain_outbox,
    enqueue_dispatch,
    mark_retry,
)
from tests.factories import NOW

MODULE = "chargewatch.services.outbox"


def _job(attempts: int = 1) -> DispatchOutbox:
    return DispatchOutbox(
        id=uuid.uuid4(),
        station_id=147988,
        port_number=1,
        status=OutboxStatus.PENDING.value,
        attempts=attempts,
        available_at=NOW,
    )


class TestBackoff:
    """min(2**attempts, cap) seconds."""

    def test_doubles(self) -> None:
        """1 -> 2s, 2 -> 4s, 3 -> 8s."""
        assert [backoff_seconds(n) for n in (1, 2, 3)] == [2, 4, 8]

    def test_capped(self) -> None:
        """Large attempt counts are capped."""
        assert backoff_seconds(20, 300) == 300


class TestEnqueue:
    """Jobs join the ingestion transaction."""

    @pytest.mark.asyncio()
    async def test_adds_pending_job(self, mock_db_session) -> None:
        """A pending job due now is added without committing."""
        job = await enqueue_dispatch(mock_db_session, 147988, 2, NOW)

        assert job.status == OutboxStatus.PENDING
        assert job.port_number == 2
        assert job.available_at == NOW
        mock_db_session.add.assert_called_once_with(job)
        mock_db_session.commit.assert_not_awaited()


class TestMarkRetry:
    """Failed attempts are rescheduled or failed for good."""

    @pytest.mark.asyncio()
    async def test_rescheduled(self, mock_db_session) -> None:
        """Below the attempt budget the job is retried."""
        assert await mark_retry(mock_db_session, _job(2), "boom", now=NOW, max_attempts=5) is True
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_failed_after_budget(self, mock_db_session) -> None:
        """At the attempt budget the job is failed."""
        assert await mark_retry(mock_db_session, _job(5), "boom", now=NOW, max_attempts=5) is False


class TestDrain:
    """drain_outbox runs the shared dispatcher per job."""

    @pytest.mark.asyncio()
    async def test_nothing_due(self, mock_db_session, settings) -> None:
        """An empty claim does nothing."""
        with (
            patch(f"{MODULE}.claim_jobs", new_callable=AsyncMock, return_value=[]),
            patch(f"{MODULE}.dispatch", new_callable=AsyncMock) as dispatch,
        ):
            result = await drain_outbox(mock_db_session, AsyncMock(), settings, now=NOW)

        assert result.claimed == 0
        dispatch.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_done_with_result_status(self, mock_db_session, settings) -> None:
        """Any dispatch result (even cooldown) completes the job."""
        jobs = [_job(), _job()]
        with (
            patch(f"{MODULE}.claim_jobs", new_callable=AsyncMock, return_value=jobs),
            patch(
                f"{MODULE}.dispatch",
                new_callable=AsyncMock,
                side_effect=[Sent(sent=1, failed=0, deactivated=1), Cooldown(retry_after_seconds=9)],
            ),
            patch(f"{MODULE}.mark_done", new_callable=AsyncMock) as mark_done,
        ):
            result = await drain_outbox(mock_db_session, AsyncMock(), settings, now=NOW)

        assert result.done == 2
        assert [c.args[2] for c in mark_done.await_args_list] == ["sent", "cooldown"]

    @pytest.mark.asyncio()
    async def test_exception_reschedules(self, mock_db_session, settings) -> None:
        """A raising dispatch rolls back and reschedules the job."""
        job = _job()
        with (
            patch(f"{MODULE}.claim_jobs", new_callable=AsyncMock, return_value=[job]),
            patch(f"{MODULE}.dispatch", new_callable=AsyncMock, side_effect=RuntimeError("db")),
            patch(f"{MODULE}.mark_retry", new_callable=AsyncMock, return_value=True) as retry,
        ):
            result = await drain_outbox(mock_db_session, AsyncMock(), settings, now=NOW)

        assert result.retried == 1
        mock_db_session.rollback.assert_awaited_once()
        assert retry.await_args.args[2] == "db"

    @pytest.mark.asyncio()
    async def test_exhausted_job_counted_failed(self, mock_db_session, settings) -> None:
        """A job out of attempts is counted as failed."""
        with (
            patch(f"{MODULE}.claim_jobs", new_callable=AsyncMock, return_value=[_job(5)]),
            patch(f"{MODULE}.dispatch", new_callable=AsyncMock, side_effect=RuntimeError("db")),
            patch(f"{MODULE}.mark_retry", new_callable=AsyncMock, return_value=False),
        ):
            result = await drain_outbox(mock_db_session, AsyncMock(), settings, now=NOW)

        assert result.failed == 1

