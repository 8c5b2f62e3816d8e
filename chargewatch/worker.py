"""
Background worker: polling sweep + dispatch and outbox drain on a timer.

For deployments without an external cron calling the service endpoints.
Each iteration runs one sweep (dispatching the tasks that became ready)
and then drains the reactive dispatch outbox, then sleeps for
``WORKER_INTERVAL_S``. A failed iteration is logged and the loop keeps
going. Overlapping workers on several machines are safe: tasks and
outbox jobs are claimed with ``SKIP LOCKED``.

Run with ``python -m chargewatch.worker``.

CHANGELOG:
- 2026-10-11: Initial creation (STORY-109)

TODO:
- None
"""

import asyncio
import logging

from chargewatch.config import Settings, get_settings
from chargewatch.db.session import dispose_engine, session_scope
from chargewatch.logging_config import setup_logging
from chargewatch.services.outbox import drain_outbox
from chargewatch.services.push import PushSender, WebPushSender
from chargewatch.services.sweep import run_sweep

logger = logging.getLogger(__name__)


async def run_once(settings: Settings, sender: PushSender) -> None:
    """Run one sweep with dispatch, then one outbox drain."""
    async with session_scope() as session:
        report = await run_sweep(session, sender, settings)
        logger.info(
            "Worker sweep: processed=%d expired=%d cancelled=%d dispatched=%d",
            report.sweep.processed,
            report.sweep.expired,
            report.sweep.cancelled,
            len(report.outcomes),
        )
    async with session_scope() as session:
        await drain_outbox(session, sender, settings)


async def run_forever(settings: Settings, sender: PushSender) -> None:
    """Call :func:`run_once` every ``WORKER_INTERVAL_S`` seconds."""
    while True:
        try:
            await run_once(settings, sender)
        except Exception:
            logger.exception("Unexpected error in worker iteration")
        await asyncio.sleep(settings.WORKER_INTERVAL_S)


async def _main(settings: Settings) -> None:
    sender = WebPushSender(
        settings.VAPID_PRIVATE_KEY, settings.VAPID_SUBJECT, settings.PUSH_TIMEOUT_S,
    )
    try:
        await run_forever(settings, sender)
    finally:
        await dispose_engine()


def main() -> None:
    """Worker entry point: load settings, configure logging, loop until Ctrl-C."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Worker starting, interval %ds", settings.WORKER_INTERVAL_S)
    try:
        asyncio.run(_main(settings))
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()
