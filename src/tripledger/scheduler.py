from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tripledger.config import Settings
from tripledger.logging import get_logger
from tripledger.services.aggregation import AggregationEngine


def setup_scheduler(engine: AggregationEngine, settings: Settings) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=settings.tz)
    if settings.reconcile_interval_minutes > 0:
        scheduler.add_job(
            _reconcile_job,
            IntervalTrigger(minutes=settings.reconcile_interval_minutes),
            kwargs={"engine": engine},
            id="reconcile",
            max_instances=1,
            coalesce=True,
        )
    scheduler.start()
    return scheduler


async def _reconcile_job(engine: AggregationEngine) -> None:
    log = get_logger(__name__)
    log.info("reconcile.start")
    reports = await engine.reconcile_all()
    drifted = [report.trip_id for report in reports if report.drifted]
    log.info("reconcile.done", trips=len(reports), drifted=drifted)
