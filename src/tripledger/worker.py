from __future__ import annotations

import asyncio

from tripledger.config import get_settings
from tripledger.db.repo import Database, LedgerRepository
from tripledger.logging import configure_logging, get_logger
from tripledger.scheduler import setup_scheduler
from tripledger.services.aggregation import AggregationEngine


async def main() -> None:
    """Run the scheduled reconciliation pass.

    Expense change events are not consumed here: the host runtime that sees
    expense writes calls ``AggregationEngine.on_expense_created/updated/deleted``.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    db = Database(settings.asyncpg_dsn)
    await db.connect()
    repo = LedgerRepository(db)
    engine = AggregationEngine.from_settings(repo, settings)

    scheduler = setup_scheduler(engine, settings)

    log = get_logger(__name__)
    log.info("worker.start", reconcile_interval_minutes=settings.reconcile_interval_minutes)
    try:
        await engine.reconcile_all()
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await db.close()
        log.info("worker.stop")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
