"""
Tests for the subscription and watch endpoints (STORY-103, STORY-106).

CHANGELOG:
- 2026-10-04: Initial creation (STORY-103)
- 2026-10-08: Watch start/stop (STORY-106)

TODO:
- None
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from chargewatch.services.subscriptions import SubscribeResult, UnsubscribeResult
from chargewatch.services.watch import WatchStarted
from tests.factories import NOW

ENDPOINT = "https://push.example.com/send/abc"
SUBSCRIBE_BODY = {
    "station_id": 147988,
    "port": 1,
    "endpoint": ENDPOINT,
    "keys": {"p256dh": "p256dh-key", "auth": "auth-secret"},
}


class TestSubscribe:
    """POST /v1/subscriptions/subscribe."""

    @patch(
        "chargewatch.api.subscriptions.subscribe",
        new_callable=AsyncMock,
        return_value=SubscribeResult(
            subscription_id=uuid.UUID("00000000-0000-0000-0000-000000000001"), replaced=2,
        ),
    )
    def test_subscribe(self, mock_subscribe, client) -> None:
        """The active subscription id and replaced count are returned."""
        response = client.post("/v1/subscriptions/subscribe", json=SUBSCRIBE_BODY)

        assert response.status_code == 200
        assert response.json()["data"] == {
            "subscription_id": "00000000-0000-0000-0000-000000000001",
            "replaced": 2,
        }
        kwargs = mock_subscribe.await_args.kwargs
        assert kwargs["p256dh"] == "p256dh-key"
        assert kwargs["policy"] == "single_watch"

    def test_invalid_port(self, client, mock_db_session) -> None:
        """Port 3 is a 400 VALIDATION_ERROR and nothing is written."""
        response = client.post(
            "/v1/subscriptions/subscribe", json={**SUBSCRIBE_BODY, "port": 3},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        mock_db_session.execute.assert_not_awaited()

    def test_missing_keys(self, client) -> None:
        """The push keys are required."""
        body = {k: v for k, v in SUBSCRIBE_BODY.items() if k != "keys"}
        assert client.post("/v1/subscriptions/subscribe", json=body).status_code == 400


class TestUnsubscribe:
    """POST /v1/subscriptions/unsubscribe."""

    @patch(
        "chargewatch.api.subscriptions.unsubscribe",
        new_callable=AsyncMock,
        return_value=UnsubscribeResult(deactivated_count=2, tasks_cancelled=1),
    )
    def test_unsubscribe_any_port(self, mock_unsubscribe, client) -> None:
        """A null port unsubscribes every port."""
        response = client.post(
            "/v1/subscriptions/unsubscribe",
            json={"station_id": 147988, "endpoint": ENDPOINT},
        )

        assert response.json()["data"] == {"deactivated_count": 2, "tasks_cancelled": 1}
        assert mock_unsubscribe.await_args.kwargs["port"] is None


class TestCheck:
    """POST /v1/subscriptions/check."""

    @patch(
        "chargewatch.api.subscriptions.check_subscribed",
        new_callable=AsyncMock,
        return_value={None, 2, 1},
    )
    def test_ports_ordered(self, mock_check, client) -> None:
        """Numbered ports ascend; an any-port watch comes last as null."""
        response = client.post(
            "/v1/subscriptions/check", json={"station_id": 147988, "endpoint": ENDPOINT},
        )

        assert response.json() == {"ok": True, "data": {"ports": [1, 2, None]}}

    def test_none_watched(self, client) -> None:
        """No active watch -> empty list."""
        response = client.post(
            "/v1/subscriptions/check", json={"station_id": 147988, "endpoint": ENDPOINT},
        )
        assert response.json()["data"] == {"ports": []}


class TestWatch:
    """POST /v1/watch/start and /v1/watch/stop."""

    def test_start(self, client) -> None:
        """The watch start result is wrapped in the envelope."""
        started = WatchStarted(
            subscription_id=uuid.uuid4(),
            task_id=uuid.uuid4(),
            expires_at=NOW + timedelta(hours=24),
            snapshot=None,
            next_refresh_in_s=42,
        )
        with patch(
            "chargewatch.api.watch.start_watch", new_callable=AsyncMock, return_value=started,
        ) as mock_start:
            response = client.post("/v1/watch/start", json={**SUBSCRIBE_BODY, "port": None})

        assert response.status_code == 200
        assert response.json()["data"] == started.to_dict()
        assert mock_start.await_args.kwargs["port"] is None

    def test_stop(self, client) -> None:
        """Stopping reports deactivated subscriptions and cancelled tasks."""
        with patch(
            "chargewatch.api.watch.stop_watch",
            new_callable=AsyncMock,
            return_value=UnsubscribeResult(deactivated_count=1, tasks_cancelled=1),
        ):
            response = client.post(
                "/v1/watch/stop", json={"station_id": 147988, "port": 1, "endpoint": ENDPOINT},
            )

        assert response.json()["data"] == {"deactivated_count": 1, "tasks_cancelled": 1}
