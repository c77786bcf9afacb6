"""APScheduler integration for the verification reconciliation scan.

Uses AsyncIOScheduler with an IntervalTrigger to verify every pending
resolution whose window has elapsed. Due times live in the store, so a restart
only delays verification until the next scan. No-ops gracefully if the interval
is 0 or the store is not configured.
"""

import asyncio
import contextlib
import logging
import time

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from flakewatch.config import get_settings
from flakewatch.engine.models import ReconcileSummary
from flakewatch.engine.service import FlakinessEngine
from flakewatch.observability.metrics import RECONCILE_DURATION, RECONCILE_RUNS_TOTAL
from flakewatch.storage.sqlite import is_store_configured

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def run_reconciliation(engine: FlakinessEngine, trigger: str = "scheduled") -> ReconcileSummary:
    """Run one reconciliation scan off the event loop and record metrics."""
    start = time.monotonic()
    try:
        summary = await asyncio.to_thread(engine.reconcile)
    except Exception:
        RECONCILE_RUNS_TOTAL.labels(trigger=trigger, status="error").inc()
        RECONCILE_DURATION.observe(time.monotonic() - start)
        raise

    RECONCILE_RUNS_TOTAL.labels(trigger=trigger, status="success").inc()
    RECONCILE_DURATION.observe(time.monotonic() - start)
    return summary


async def _scheduled_reconcile_job(engine: FlakinessEngine) -> None:
    """Async job executed by the scheduler."""
    try:
        summary = await run_reconciliation(engine)
    except Exception:
        logger.exception("Scheduled reconciliation failed")
        return
    logger.debug("Scheduled reconciliation finished: %s", summary.model_dump())


def start_scheduler(engine: FlakinessEngine) -> None:
    """Start the APScheduler if an interval and a store are configured."""
    global _scheduler  # noqa: PLW0603

    settings = get_settings()
    if settings.reconcile_interval_minutes <= 0:
        logger.info("Reconciliation scheduler disabled (RECONCILE_INTERVAL_MINUTES is 0)")
        return
    if not is_store_configured():
        logger.info("Reconciliation scheduler disabled (DATABASE_PATH not set)")
        return

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _scheduled_reconcile_job,
        trigger=IntervalTrigger(minutes=settings.reconcile_interval_minutes),
        args=[engine],
        id="verification_reconcile",
        name="Resolution Verification Reconciliation",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info("Reconciliation scheduler started every %d minutes", settings.reconcile_interval_minutes)


def stop_scheduler() -> None:
    """Gracefully shut down the scheduler if it is running."""
    global _scheduler  # noqa: PLW0603

    if _scheduler is not None:
        with contextlib.suppress(Exception):
            _scheduler.shutdown(wait=False)
        logger.info("Reconciliation scheduler stopped")
        _scheduler = None
