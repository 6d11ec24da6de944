"""Background job scheduler for the bounty engine"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.bounty_engine import BountyEngine

logger = logging.getLogger(__name__)


class BountyScheduler:
    """Runs the expiry sweep and the ledger audit on fixed intervals"""

    def __init__(self, engine: BountyEngine, scheduler: Optional[AsyncIOScheduler] = None):
        self.engine = engine
        self.scheduler = scheduler or AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,  # one catch-up run after a stall
                'max_instances': 1,
                'misfire_grace_time': 120,
            },
            timezone='UTC',
        )

    def setup_jobs(self):
        """Register jobs; safe to call again after a reload"""
        self.scheduler.add_job(
            self.expire_stale_bounties,
            trigger=IntervalTrigger(minutes=Config.BOUNTY_EXPIRY_CHECK_INTERVAL_MINUTES),
            id="bounty_expiry_check",
            name="Expire Stale Bounties",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.audit_ledger,
            trigger=IntervalTrigger(minutes=Config.LEDGER_AUDIT_INTERVAL_MINUTES),
            id="ledger_audit",
            name="Ledger Consistency Audit",
            replace_existing=True,
        )

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        jobs = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"✅ Bounty scheduler started: {jobs}")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Background job scheduler stopped")

    async def expire_stale_bounties(self):
        try:
            result = await self.engine.expire_stale_bounties()
        except Exception as e:
            logger.error(f"❌ EXPIRY_JOB_FAILED: {e}", exc_info=True)
            return None
        if result.failures:
            logger.warning(f"⚠️ EXPIRY_JOB: {len(result.failures)} bounty(ies) could not be expired")
        return result

    async def audit_ledger(self):
        try:
            result = await self.engine.audit_ledger()
        except Exception as e:
            logger.error(f"❌ LEDGER_AUDIT_JOB_FAILED: {e}", exc_info=True)
            return None
        if result.critical_issues:
            logger.critical(f"🚨 LEDGER_AUDIT: {result.critical_issues} critical inconsistency(ies)")
        return result
