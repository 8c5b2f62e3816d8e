"""
Tests for the health endpoints (STORY-101, STORY-115).

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)
- 2026-10-16: Scraper freshness and outbox backlog (STORY-115)

TODO:
- None
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from chargewatch.api.health import _check_redis, _check_store
from chargewatch.main import app
from chargewatch.services.outbox import Backlog, outbox_backlog
from tests.factories import NOW

MODULE = "chargewatch.api.health"

HEALTHY_STORE = {
    "db": "ok",
    "scraper": {"last_observed_at": NOW.isoformat(), "age_minutes": 2.0, "is_healthy": True},
    "outbox": {"due": 0, "oldest_due_s": None, "is_healthy": True},
}


def _store(**overrides) -> dict:
    return {**HEALTHY_STORE, **overrides}


def test_root_returns_ok() -> None:
    """GET / is a trivial liveness check."""
    response = TestClient(app).get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestHealthEndpoint:
    """GET /health combines infrastructure and pipeline signals."""

    @patch(f"{MODULE}._check_redis", new_callable=AsyncMock, return_value="ok")
    @patch(f"{MODULE}._check_store", new_callable=AsyncMock, return_value=_store())
    def test_all_ok(self, mock_store, mock_redis) -> None:
        """200 with every section reported."""
        response = TestClient(app).get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["redis"] == "ok"
        assert body["outbox"]["due"] == 0
        assert body["scraper"]["is_healthy"] is True

    @patch(f"{MODULE}._check_redis", new_callable=AsyncMock, return_value="ok")
    @patch(
        f"{MODULE}._check_store",
        new_callable=AsyncMock,
        return_value={"db": "error", "scraper": None, "outbox": None},
    )
    def test_db_down(self, mock_store, mock_redis) -> None:
        """503 with status=degraded when the store cannot be read."""
        response = TestClient(app).get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["db"] == "error"

    @patch(f"{MODULE}._check_redis", new_callable=AsyncMock, return_value="error")
    @patch(f"{MODULE}._check_store", new_callable=AsyncMock, return_value=_store())
    def test_redis_down(self, mock_store, mock_redis) -> None:
        """503 when Redis does not answer."""
        response = TestClient(app).get("/health")
        assert response.status_code == 503
        assert response.json()["redis"] == "error"

    @patch(f"{MODULE}._check_redis", new_callable=AsyncMock, return_value="ok")
    @patch(
        f"{MODULE}._check_store",
        new_callable=AsyncMock,
        return_value=_store(
            scraper={"last_observed_at": NOW.isoformat(), "age_minutes": 40.0, "is_healthy": False},
        ),
    )
    def test_stale_scraper(self, mock_store, mock_redis) -> None:
        """A scraper that stopped reporting degrades the service."""
        response = TestClient(app).get("/health")
        assert response.status_code == 503
        assert response.json()["scraper"]["age_minutes"] == 40.0

    @patch(f"{MODULE}._check_redis", new_callable=AsyncMock, return_value="ok")
    @patch(
        f"{MODULE}._check_store",
        new_callable=AsyncMock,
        return_value=_store(outbox={"due": 12, "oldest_due_s": 900, "is_healthy": False}),
    )
    def test_stalled_outbox(self, mock_store, mock_redis) -> None:
        """Due jobs nobody drains degrade the service."""
        response = TestClient(app).get("/health")
        assert response.status_code == 503
        assert response.json()["outbox"]["due"] == 12

    @patch(f"{MODULE}._check_redis", new_callable=AsyncMock, return_value="ok")
    @patch(f"{MODULE}._check_store", new_callable=AsyncMock, return_value=_store(scraper=None))
    def test_no_reports_yet(self, mock_store, mock_redis) -> None:
        """A fresh deployment without any report is healthy."""
        response = TestClient(app).get("/health")
        assert response.status_code == 200
        assert response.json()["scraper"] is None


class TestCheckStore:
    """Store section of the report."""

    @staticmethod
    def _scope(session):
        @asynccontextmanager
        async def fake_scope():
            yield session

        return fake_scope

    @pytest.mark.asyncio()
    async def test_fresh_and_drained(self, mock_db_session, settings) -> None:
        """A recent report and an empty backlog are healthy."""
        with (
            patch(f"{MODULE}.session_scope", self._scope(mock_db_session)),
            patch(
                f"{MODULE}.latest_observed_at",
                new_callable=AsyncMock,
                return_value=NOW - timedelta(minutes=3),
            ),
            patch(
                f"{MODULE}.outbox_backlog",
                new_callable=AsyncMock,
                return_value=Backlog(due=0, oldest_due_s=None),
            ),
        ):
            report = await _check_store(settings, NOW)

        assert report["db"] == "ok"
        assert report["scraper"]["age_minutes"] == 3.0
        assert report["scraper"]["is_healthy"] is True
        assert report["outbox"] == {"due": 0, "oldest_due_s": None, "is_healthy": True}

    @pytest.mark.asyncio()
    async def test_stale_and_stalled(self, mock_db_session, settings) -> None:
        """Old reports and a job due past the dispatch lease are unhealthy."""
        with (
            patch(f"{MODULE}.session_scope", self._scope(mock_db_session)),
            patch(
                f"{MODULE}.latest_observed_at",
                new_callable=AsyncMock,
                return_value=NOW - timedelta(minutes=settings.FRESHNESS_MAX_AGE_MINUTES),
            ),
            patch(
                f"{MODULE}.outbox_backlog",
                new_callable=AsyncMock,
                return_value=Backlog(due=3, oldest_due_s=settings.DISPATCH_STALE_S + 1),
            ),
        ):
            report = await _check_store(settings, NOW)

        assert report["scraper"]["is_healthy"] is False
        assert report["outbox"]["is_healthy"] is False

    @pytest.mark.asyncio()
    async def test_store_error(self, mock_db_session, settings) -> None:
        """A failing query is reported as a DB error without sections."""
        mock_db_session.execute.side_effect = OSError("connection refused")
        with patch(f"{MODULE}.session_scope", self._scope(mock_db_session)):
            report = await _check_store(settings, NOW)

        assert report == {"db": "error", "scraper": None, "outbox": None}


class TestBacklogQuery:
    """outbox_backlog turns the aggregate row into a Backlog."""

    @pytest.mark.asyncio()
    async def test_oldest_due_age(self, mock_db_session) -> None:
        """The oldest due job's wait is reported in whole seconds."""
        row = MagicMock()
        row.one.return_value = (2, NOW - timedelta(seconds=90, microseconds=500))
        mock_db_session.execute.return_value = row

        assert await outbox_backlog(mock_db_session, NOW) == Backlog(due=2, oldest_due_s=90)

    @pytest.mark.asyncio()
    async def test_empty(self, mock_db_session) -> None:
        """No due jobs means no age."""
        row = MagicMock()
        row.one.return_value = (0, None)
        mock_db_session.execute.return_value = row

        assert await outbox_backlog(mock_db_session, NOW) == Backlog(due=0, oldest_due_s=None)


class TestRedisCheck:
    """The Redis check turns exceptions into "error"."""

    @pytest.mark.asyncio()
    async def test_ok(self) -> None:
        """PING success is ok; the client is always closed."""
        client = AsyncMock()
        with patch(f"{MODULE}.get_redis", new_callable=AsyncMock, return_value=client):
            assert await _check_redis() == "ok"
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_error(self) -> None:
        """A failing PING is reported as error."""
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch(f"{MODULE}.get_redis", new_callable=AsyncMock, return_value=client):
            assert await _check_redis() == "error"
        client.aclose.assert_awaited_once()
