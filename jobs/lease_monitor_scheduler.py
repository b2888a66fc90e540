"""Background job scheduler that drives the lease lifecycle monitor"""

import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from config import Config
from models import utc_now
from services.lease_lifecycle_monitor import LeaseLifecycleMonitor

logger = logging.getLogger(__name__)


class LeaseMonitorScheduler:
    """Interval jobs for SMS polling, boost polling and proxy expiry"""

    JOB_IDS = ("poll_sms_leases", "poll_boost_orders", "expire_proxy_grants")

    def __init__(self, monitor: Optional[LeaseLifecycleMonitor] = None):
        self.monitor = monitor or LeaseLifecycleMonitor()

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # a slow tick is never followed by a burst of catch-up runs
            'max_instances': 1,
            'misfire_grace_time': 30
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the monitor jobs, replacing any left over from a hot reload"""
        for job_id in self.JOB_IDS:
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"🧹 Removed existing {job_id} job")

        # SMS codes usually arrive within seconds; poll often
        self.scheduler.add_job(
            self.poll_sms_leases,
            trigger=IntervalTrigger(seconds=Config.LEASE_POLL_INTERVAL_SECONDS),
            id="poll_sms_leases",
            name="Poll SMS Number Leases",
        )

        # One batched status call per tick (staggered 15 seconds)
        self.scheduler.add_job(
            self.poll_boost_orders,
            trigger=IntervalTrigger(
                seconds=Config.BOOST_POLL_INTERVAL_SECONDS,
                start_date=utc_now().replace(second=15, microsecond=0),
            ),
            id="poll_boost_orders",
            name="Poll Social Boost Orders",
        )

        self.scheduler.add_job(
            self.expire_proxy_grants,
            trigger=IntervalTrigger(minutes=5),
            id="expire_proxy_grants",
            name="Expire Proxy Grants",
        )

    async def poll_sms_leases(self):
        try:
            await self.monitor.poll_sms_leases()
        except Exception as e:
            logger.exception(f"❌ SMS_POLL_JOB_FAILED: {e}")

    async def poll_boost_orders(self):
        try:
            await self.monitor.poll_boost_orders()
        except Exception as e:
            logger.exception(f"❌ BOOST_POLL_JOB_FAILED: {e}")

    async def expire_proxy_grants(self):
        try:
            self.monitor.expire_proxy_grants()
        except Exception as e:
            logger.exception(f"❌ PROXY_EXPIRY_JOB_FAILED: {e}")

    def start(self):
        """Start the scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"✅ Lease monitor scheduler started: {job_names}")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Lease monitor scheduler stopped")
