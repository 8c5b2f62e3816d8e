"""
Polling sweep endpoint, called by the cron scheduler.

POST /v1/polling/process runs one sweep, dispatches every task that
reached its debounce threshold and applies the dispatch outcome to the
task. ``{"dry_run": true}`` reports the classification without locking,
writing or sending anything.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-104)
- 2026-10-07: Dispatch ready tasks in the same call (STORY-105)

TODO:
- None
"""

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from chargewatch.api.deps import AppSettings, DbSession, ServiceClient, get_push_sender
from chargewatch.errors import ok
from chargewatch.services.sweep import run_sweep

router = APIRouter(prefix="/v1/polling", tags=["polling"])


class ProcessRequest(BaseModel):
    """Schema for a sweep request."""

    dry_run: bool = False


@router.post("/process")
async def process(
    client_id: ServiceClient,
    db: DbSession,
    settings: AppSettings,
    request: ProcessRequest | None = None,
) -> dict[str, Any]:
    """Run one polling sweep (and dispatch ready tasks unless dry-run)."""
    dry_run = request.dry_run if request is not None else False
    sender = None if dry_run else get_push_sender(settings)
    report = await run_sweep(db, sender, settings, dry_run=dry_run)
    return ok(report.to_dict())
