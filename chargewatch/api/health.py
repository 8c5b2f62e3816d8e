"""
Pipeline health check for external monitoring.

Besides DB and Redis connectivity, reports the two signals that show
notifications are flowing: the age of the newest station report
(scraper freshness) and the reactive dispatch backlog (jobs due but not
drained). HTTP 503 when any of them is degraded, so a monitor alerts on
a stalled scraper or worker as well as on an outage.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)
- 2026-10-16: Scraper freshness and outbox backlog (STORY-115)

TODO:
- None
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from chargewatch.api.deps import AppSettings
from chargewatch.cache.redis_client import get_redis
from chargewatch.config import Settings
from chargewatch.db.session import session_scope
from chargewatch.services.outbox import outbox_backlog
from chargewatch.services.snapshots import latest_observed_at

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _scraper_section(
    last_observed_at: datetime | None, now: datetime, max_age_minutes: int,
) -> dict[str, Any] | None:
    if last_observed_at is None:
        return None
    age = now - last_observed_at
    return {
        "last_observed_at": last_observed_at.isoformat(),
        "age_minutes": round(age.total_seconds() / 60.0, 2),
        "is_healthy": age < timedelta(minutes=max_age_minutes),
    }


async def _check_store(settings: Settings, now: datetime) -> dict[str, Any]:
    """Read scraper freshness and outbox backlog in one session.

    Returns:
        dict: ``db`` ("ok" or "error"), ``scraper`` (None before the first
        report) and ``outbox``; both sections are None when the DB is down.
    """
    try:
        async with session_scope() as session:
            last_observed = await latest_observed_at(session)
            backlog = await outbox_backlog(session, now)
    except Exception:
        logger.warning("Health check: store query failed", exc_info=True)
        return {"db": "error", "scraper": None, "outbox": None}

    stalled = (
        backlog.oldest_due_s is not None and backlog.oldest_due_s > settings.DISPATCH_STALE_S
    )
    return {
        "db": "ok",
        "scraper": _scraper_section(last_observed, now, settings.FRESHNESS_MAX_AGE_MINUTES),
        "outbox": {
            "due": backlog.due,
            "oldest_due_s": backlog.oldest_due_s,
            "is_healthy": not stalled,
        },
    }


async def _check_redis() -> str:
    """PING the snapshot cache; "ok" or "error"."""
    try:
        client = await get_redis()
        try:
            await client.ping()
        finally:
            await client.aclose()
    except Exception:
        logger.warning("Health check: Redis ping failed", exc_info=True)
        return "error"
    return "ok"


def _is_degraded(report: dict[str, Any]) -> bool:
    if report["db"] != "ok" or report["redis"] != "ok":
        return True
    for section in ("scraper", "outbox"):
        if report[section] is not None and not report[section]["is_healthy"]:
            return True
    return False


@router.get("/health")
async def health_check(settings: AppSettings) -> JSONResponse:
    """Report infrastructure and pipeline health.

    Returns:
        JSONResponse: ``status``, ``db``, ``redis``, ``scraper`` and
        ``outbox``; 200 when healthy, 503 when degraded. A deployment
        that has not received any report yet is not degraded.
    """
    now = datetime.now(tz=UTC)
    report = await _check_store(settings, now)
    report["redis"] = await _check_redis()

    degraded = _is_degraded(report)
    return JSONResponse(
        status_code=503 if degraded else 200,
        content={"status": "degraded" if degraded else "ok", **report},
    )
