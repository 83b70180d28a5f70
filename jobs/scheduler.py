"""Background job scheduler for SkillSwap maintenance tasks"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.skill_request_expiry import skill_request_expiry_job

logger = logging.getLogger(__name__)

SKILL_REQUEST_EXPIRY_JOB_ID = "skill_request_expiry"


class SkillSwapScheduler:
    """Owns the APScheduler instance and the recurring maintenance jobs"""

    def __init__(self, interval_minutes: Optional[int] = None):
        self.interval_minutes = interval_minutes or Config.SKILL_REQUEST_EXPIRY_INTERVAL_MINUTES

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        # Hot reload can leave the previous registration behind
        if self.scheduler.get_job(SKILL_REQUEST_EXPIRY_JOB_ID):
            self.scheduler.remove_job(SKILL_REQUEST_EXPIRY_JOB_ID)
            logger.info(f"🧹 Hot-reload safety: Removed existing {SKILL_REQUEST_EXPIRY_JOB_ID} job")

        self.scheduler.add_job(
            skill_request_expiry_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=SKILL_REQUEST_EXPIRY_JOB_ID,
            name="⏰ Expire Stale Skill Requests",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"✅ Scheduled skill request expiry every {self.interval_minutes} minutes")

    def start(self):
        """Register jobs and start; must be called from a running event loop"""
        if self.scheduler.running:
            logger.warning("⚠️ Scheduler already running")
            return
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 SkillSwap scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 SkillSwap scheduler stopped")
