"""Periodic re-drive of stuck content using APScheduler.

An item that is still ``unreviewed`` well after upload means its analysis
never finished (process restart, crash mid-flight). The sweep hands such
items back to the analysis runner; the queue upsert makes a duplicate
analysis harmless.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vibeguard.db.tables import ContentItemRow
from vibeguard.models.moderation import ModerationStatus
from vibeguard.services.analysis_tasks import AnalysisRunner

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 100

scheduler = AsyncIOScheduler()


async def sweep_unreviewed(
    runner: AnalysisRunner,
    session_factory: async_sessionmaker[AsyncSession],
    stale_after: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """Schedule analysis for stale unreviewed items. Returns how many were scheduled."""
    cutoff = (now or datetime.now(timezone.utc)) - stale_after
    async with session_factory() as session:
        result = await session.execute(
            select(ContentItemRow.id, ContentItemRow.image_url)
            .where(
                ContentItemRow.moderation_status == ModerationStatus.UNREVIEWED.value,
                ContentItemRow.created_at < cutoff,
            )
            .order_by(ContentItemRow.created_at.asc())
            .limit(SWEEP_BATCH_SIZE)
        )
        stale = result.all()

    in_flight = runner.in_flight
    scheduled = 0
    for item_id, image_url in stale:
        if item_id in in_flight:
            continue
        runner.schedule(item_id, image_url)
        scheduled += 1

    if scheduled:
        logger.warning("Sweep re-scheduled %d stuck unreviewed items", scheduled)
    return scheduled


async def _scheduled_sweep(runner, session_factory, stale_after):
    try:
        await sweep_unreviewed(runner, session_factory, stale_after)
    except Exception:
        logger.exception("Unreviewed sweep failed")


def start_scheduler(
    runner: AnalysisRunner,
    session_factory: async_sessionmaker[AsyncSession],
    interval_minutes: int = 10,
    stale_after_minutes: int = 15,
):
    """Start the background sweep. ``interval_minutes <= 0`` disables it."""
    if interval_minutes <= 0:
        logger.info("Unreviewed sweep disabled")
        return
    scheduler.add_job(
        _scheduled_sweep,
        trigger=IntervalTrigger(minutes=interval_minutes),
        args=[runner, session_factory, timedelta(minutes=stale_after_minutes)],
        id="unreviewed_sweep",
        name="Re-drive stuck unreviewed content",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started — sweeping unreviewed content every {interval_minutes}m")


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
