"""
Tests for the ingestion endpoint (STORY-102, STORY-103).

Validates POST /v1/snapshots/ingest: service-token auth, the error
envelope for malformed input, the throttled response and cache
invalidation after a stored snapshot.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)
- 2026-10-05: Cache invalidation (STORY-103)
- 2026-10-16: Non-string statuses are validation errors (STORY-115)

TODO:
- None
"""

from unittest.mock import AsyncMock, patch

from sqlalchemy.exc import OperationalError

from chargewatch.services.ingestion import IngestResult
from tests.factories import AUTH_HEADERS

URL = "/v1/snapshots/ingest"
BODY = {
    "station_id": 147988,
    "cupr_id": 144569,
    "source": "scraper",
    "port_data": {"port1_status": "AVAILABLE", "port2_status": "OCCUPIED"},
}


class TestIngestAuth:
    """Only service clients may ingest."""

    def test_missing_token(self, client) -> None:
        """No token -> 401 UNAUTHORIZED envelope."""
        response = client.post(URL, json=BODY)
        assert response.status_code == 401
        assert response.json()["ok"] is False
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_unknown_token(self, client) -> None:
        """An unknown token is rejected."""
        response = client.post(URL, json=BODY, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401


class TestIngestValidation:
    """Malformed reports never reach the store."""

    def test_missing_field(self, client, mock_db_session) -> None:
        """A body without source is a 400 VALIDATION_ERROR."""
        body = {k: v for k, v in BODY.items() if k != "source"}
        response = client.post(URL, json=body, headers=AUTH_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        mock_db_session.commit.assert_not_awaited()

    def test_unknown_status(self, client, mock_db_session) -> None:
        """An unknown port status is rejected by the pipeline."""
        body = {**BODY, "port_data": {"port1_status": "EXPLODED"}}
        response = client.post(URL, json=body, headers=AUTH_HEADERS)

        assert response.status_code == 400
        assert "port1_status" in response.json()["error"]["message"]
        mock_db_session.execute.assert_not_awaited()

    def test_numeric_status(self, client, mock_db_session) -> None:
        """A number where a status string belongs is a 400, not a 500."""
        body = {**BODY, "port_data": {"port1_status": 5}}
        response = client.post(URL, json=body, headers=AUTH_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        mock_db_session.execute.assert_not_awaited()
        mock_db_session.commit.assert_not_awaited()

    def test_non_boolean_emergency_stop(self, client, mock_db_session) -> None:
        """The emergency stop flag must be a boolean."""
        body = {**BODY, "port_data": {**BODY["port_data"], "emergency_stop_pressed": "maybe"}}
        response = client.post(URL, json=body, headers=AUTH_HEADERS)

        assert response.status_code == 400
        assert "emergency_stop_pressed" in response.json()["error"]["message"]
        mock_db_session.execute.assert_not_awaited()

    def test_unknown_source(self, client) -> None:
        """The source must be one of the known client flows."""
        response = client.post(URL, json={**BODY, "source": "rss"}, headers=AUTH_HEADERS)
        assert response.status_code == 400


class TestIngestOutcome:
    """Stored vs throttled responses."""

    @patch("chargewatch.api.ingest.invalidate_station_cache", new_callable=AsyncMock)
    @patch(
        "chargewatch.api.ingest.ingest_snapshot",
        new_callable=AsyncMock,
        return_value=IngestResult(stored=True, payload_hash="abc", available_ports=[1], enqueued=1),
    )
    def test_stored(self, mock_ingest, mock_invalidate, client) -> None:
        """A stored snapshot invalidates the cache and reports transitions."""
        response = client.post(URL, json=BODY, headers=AUTH_HEADERS)

        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "data": {"stored": True, "payload_hash": "abc", "available_ports": [1], "enqueued": 1},
        }
        mock_invalidate.assert_awaited_once_with(147988)
        assert mock_ingest.await_args.kwargs["cooldown_minutes"] == 5

    @patch("chargewatch.api.ingest.invalidate_station_cache", new_callable=AsyncMock)
    @patch(
        "chargewatch.api.ingest.ingest_snapshot",
        new_callable=AsyncMock,
        return_value=IngestResult(stored=False, payload_hash="abc"),
    )
    def test_throttled(self, mock_ingest, mock_invalidate, client) -> None:
        """A throttled report is a success with stored=false."""
        response = client.post(URL, json=BODY, headers=AUTH_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "data": {"stored": False}}
        mock_invalidate.assert_not_awaited()

    @patch(
        "chargewatch.api.ingest.ingest_snapshot",
        new_callable=AsyncMock,
        side_effect=OperationalError("INSERT", {}, Exception("connection lost")),
    )
    def test_store_failure(self, mock_ingest, client) -> None:
        """A store failure is a 500 RPC_ERROR envelope."""
        response = client.post(URL, json=BODY, headers=AUTH_HEADERS)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "RPC_ERROR"
