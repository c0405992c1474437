import pytest

from tripledger.config import Settings
from tripledger.scheduler import _reconcile_job, setup_scheduler


class StubEngine:
    def __init__(self) -> None:
        self.calls = 0

    async def reconcile_all(self):
        self.calls += 1
        return []


@pytest.mark.asyncio
async def test_reconcile_job_registered():
    settings = Settings(_env_file=None, DATABASE_URL="postgresql://db/ledger", TZ="UTC", RECONCILE_INTERVAL_MINUTES=15)

    scheduler = setup_scheduler(StubEngine(), settings)  # type: ignore[arg-type]
    try:
        job = scheduler.get_job("reconcile")
        assert job is not None
        assert job.trigger.interval.total_seconds() == 15 * 60
    finally:
        scheduler.shutdown(wait=False)


@pytest.mark.asyncio
async def test_reconcile_job_disabled():
    settings = Settings(_env_file=None, DATABASE_URL="postgresql://db/ledger", TZ="UTC", RECONCILE_INTERVAL_MINUTES=0)

    scheduler = setup_scheduler(StubEngine(), settings)  # type: ignore[arg-type]
    try:
        assert scheduler.get_jobs() == []
    finally:
        scheduler.shutdown(wait=False)


@pytest.mark.asyncio
async def test_reconcile_job_runs_pass():
    engine = StubEngine()

    await _reconcile_job(engine)  # type: ignore[arg-type]

    assert engine.calls == 1
