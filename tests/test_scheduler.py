"""
Scheduler Tests
Job registration and sweep error isolation; the scheduler is never started here
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from jobs.scheduler import (
    CREDIT_SWEEP_JOB_ID,
    EXPIRY_STARTUP_JOB_ID,
    EXPIRY_SWEEP_JOB_ID,
    GiftScheduler,
)
from services.gift_service import GiftService


@pytest.fixture
def gift_service():
    return AsyncMock(spec=GiftService)


@pytest.fixture
def gift_scheduler(gift_service, config):
    return GiftScheduler(gift_service, config)


class TestJobRegistration:

    def test_jobs_registered_with_expected_triggers(self, gift_scheduler):
        gift_scheduler.setup_jobs()
        jobs = {job.id: job for job in gift_scheduler.scheduler.get_jobs()}

        assert set(jobs) == {EXPIRY_SWEEP_JOB_ID, EXPIRY_STARTUP_JOB_ID, CREDIT_SWEEP_JOB_ID}
        assert isinstance(jobs[EXPIRY_SWEEP_JOB_ID].trigger, IntervalTrigger)
        assert jobs[EXPIRY_SWEEP_JOB_ID].trigger.interval.total_seconds() == 12 * 3600
        assert isinstance(jobs[EXPIRY_STARTUP_JOB_ID].trigger, DateTrigger)
        assert isinstance(jobs[CREDIT_SWEEP_JOB_ID].trigger, CronTrigger)

    def test_startup_sweep_runs_shortly_after_now(self, gift_scheduler, config):
        gift_scheduler.setup_jobs()
        run_date = gift_scheduler.scheduler.get_job(EXPIRY_STARTUP_JOB_ID).trigger.run_date

        assert run_date.tzinfo is not None
        delay = run_date - datetime.now(timezone.utc)
        assert timedelta(0) < delay <= timedelta(seconds=config.REFUND_STARTUP_DELAY_SECONDS)

    def test_setup_is_repeatable(self, gift_scheduler):
        gift_scheduler.setup_jobs()
        gift_scheduler.setup_jobs()
        assert len(gift_scheduler.scheduler.get_jobs()) == 3

    def test_stop_before_start_is_harmless(self, gift_scheduler):
        gift_scheduler.stop()


class TestSweepJobs:

    @pytest.mark.asyncio
    async def test_expiry_sweep_returns_summary(self, gift_scheduler, gift_service):
        gift_service.run_expiry_sweep.return_value = {"success": 1, "failed": 0, "total": 1}
        assert await gift_scheduler.run_expiry_sweep() == {"success": 1, "failed": 0, "total": 1}

    @pytest.mark.asyncio
    async def test_sweep_errors_never_escape(self, gift_scheduler, gift_service):
        gift_service.run_expiry_sweep.side_effect = RuntimeError("database unavailable")
        gift_service.run_credit_sweep.side_effect = RuntimeError("database unavailable")

        assert await gift_scheduler.run_expiry_sweep() is None
        assert await gift_scheduler.run_credit_sweep() is None
