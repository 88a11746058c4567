"""Background job scheduler for gift expiry refunds and credit expiry"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.gift_service import GiftService

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_JOB_ID = "gift_expiry_sweep"
EXPIRY_STARTUP_JOB_ID = "gift_expiry_sweep_startup"
CREDIT_SWEEP_JOB_ID = "credit_expiry_sweep"


class GiftScheduler:
    """Runs the sweeps on a timer; the sweeps themselves live in the services"""

    def __init__(self, gift_service: GiftService, config: Config, scheduler: Optional[AsyncIOScheduler] = None):
        self.gift_service = gift_service
        self.config = config
        self.scheduler = scheduler or AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
            timezone="UTC",
        )

    def setup_jobs(self):
        """Register the expiry sweep (interval + one startup run) and the daily credit sweep"""
        for job_id in (EXPIRY_SWEEP_JOB_ID, EXPIRY_STARTUP_JOB_ID, CREDIT_SWEEP_JOB_ID):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"🧹 Removed existing {job_id} job before re-registering")

        self.scheduler.add_job(
            self.run_expiry_sweep,
            trigger=IntervalTrigger(hours=self.config.REFUND_SWEEP_INTERVAL_HOURS),
            id=EXPIRY_SWEEP_JOB_ID,
            name="Gift Expiry Refund Sweep",
            max_instances=1,
            coalesce=True,
        )

        # First pass shortly after startup so a restart never waits a full interval
        self.scheduler.add_job(
            self.run_expiry_sweep,
            trigger=DateTrigger(
                run_date=datetime.now(timezone.utc) + timedelta(seconds=self.config.REFUND_STARTUP_DELAY_SECONDS),
                timezone="UTC",
            ),
            id=EXPIRY_STARTUP_JOB_ID,
            name="Gift Expiry Refund Sweep (startup)",
            max_instances=1,
        )

        self.scheduler.add_job(
            self.run_credit_sweep,
            trigger=CronTrigger(hour=0, minute=0, timezone="UTC"),
            id=CREDIT_SWEEP_JOB_ID,
            name="Onramp Credit Expiry Sweep",
            max_instances=1,
            coalesce=True,
        )

    async def run_expiry_sweep(self):
        try:
            results = await self.gift_service.run_expiry_sweep()
            logger.info(f"📊 EXPIRY_SWEEP_RESULT: {results}")
            return results
        except Exception as e:
            # Next interval retries; attempt counters already bound the work per gift
            logger.error(f"❌ EXPIRY_SWEEP_ERROR: {e}", exc_info=True)
            return None

    async def run_credit_sweep(self):
        try:
            count = await self.gift_service.run_credit_sweep()
            logger.info(f"📊 CREDIT_SWEEP_RESULT: {count} deactivated")
            return count
        except Exception as e:
            logger.error(f"❌ CREDIT_SWEEP_ERROR: {e}", exc_info=True)
            return None

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"✅ Gift scheduler started with jobs: {[job.id for job in jobs]}")

    def stop(self):
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("Gift scheduler stopped")
