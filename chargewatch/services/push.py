"""
Web Push delivery via pywebpush.

``pywebpush.webpush`` is a blocking call built on ``requests``; it runs in
a worker thread so concurrent sends never block the event loop. Every
send is bounded by ``PUSH_TIMEOUT_S``. Failures are returned, not raised,
and classified as permanent (the endpoint is gone: 404/410) or transient.

CHANGELOG:
- 2026-10-07: Initial creation (STORY-105)
- 2026-10-09: Classify permanent vs transient failures (STORY-107)

TODO:
- None
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from pywebpush import WebPushException, webpush
from requests import RequestException

logger = logging.getLogger(__name__)

# Push service responses meaning the subscription no longer exists.
PERMANENT_FAILURE_CODES = frozenset({404, 410})


@dataclass(frozen=True)
class PushTarget:
    """Delivery credentials of one browser push subscription."""

    endpoint: str
    p256dh: str
    auth: str


@dataclass(frozen=True)
class PushOutcome:
    """Result of one push send.

    Attributes:
        ok: Whether the push service accepted the message.
        permanent: Failure means the endpoint is permanently gone.
        status_code: HTTP status from the push service, when known.
        error: Short error description for logs.
    """

    ok: bool
    permanent: bool = False
    status_code: int | None = None
    error: str | None = None


class PushSender(Protocol):
    """Anything that can deliver a JSON payload to a push target."""

    async def send(self, target: PushTarget, payload: dict[str, Any]) -> PushOutcome:
        """Deliver *payload* to *target*."""
        ...


class WebPushSender:
    """VAPID-signed Web Push sender.

    Args:
        vapid_private_key: VAPID private key (base64url or PEM path).
        vapid_subject: ``sub`` claim, a mailto: or https: URL.
        timeout: Per-send timeout in seconds.
    """

    def __init__(self, vapid_private_key: str, vapid_subject: str, timeout: float) -> None:
        if not vapid_private_key:
            raise ValueError("VAPID_PRIVATE_KEY must be set to send push notifications")
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._timeout = timeout

    async def send(self, target: PushTarget, payload: dict[str, Any]) -> PushOutcome:
        """Deliver *payload* without blocking the event loop."""
        return await asyncio.to_thread(self._send_blocking, target, json.dumps(payload))

    def _send_blocking(self, target: PushTarget, data: str) -> PushOutcome:
        try:
            webpush(
                subscription_info={
                    "endpoint": target.endpoint,
                    "keys": {"p256dh": target.p256dh, "auth": target.auth},
                },
                data=data,
                vapid_private_key=self._vapid_private_key,
                # pywebpush adds aud/exp to the claims dict, so pass a fresh one.
                vapid_claims={"sub": self._vapid_subject},
                timeout=self._timeout,
            )
        except WebPushException as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            permanent = status_code in PERMANENT_FAILURE_CODES
            logger.warning(
                "Push rejected (status %s, %s) for endpoint %s",
                status_code,
                "endpoint expired" if permanent else "transient",
                _short(target.endpoint),
            )
            return PushOutcome(
                ok=False, permanent=permanent, status_code=status_code, error=str(exc),
            )
        except RequestException as exc:
            logger.warning(
                "Push transport error for endpoint %s: %s", _short(target.endpoint), exc,
            )
            return PushOutcome(ok=False, error=str(exc))
        return PushOutcome(ok=True)


def _short(endpoint: str) -> str:
    """Trim an endpoint URL for logs (the tail is a bearer-like secret)."""
    return endpoint[:48] + "..." if len(endpoint) > 48 else endpoint
