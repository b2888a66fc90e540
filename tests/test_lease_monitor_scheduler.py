"""
Lease Monitor Scheduler Tests
Job registration only; the scheduler is never started
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from jobs.lease_monitor_scheduler import LeaseMonitorScheduler


@pytest.fixture
def lease_scheduler():
    return LeaseMonitorScheduler(monitor=MagicMock())


class TestJobRegistration:

    def test_jobs_are_registered_once(self, lease_scheduler):
        lease_scheduler.setup_jobs()
        lease_scheduler.setup_jobs()

        job_ids = sorted(job.id for job in lease_scheduler.scheduler.get_jobs())
        assert job_ids == sorted(LeaseMonitorScheduler.JOB_IDS)

    def test_boost_polling_is_staggered_from_the_utc_clock(self, lease_scheduler, monkeypatch):
        monkeypatch.setattr(
            "jobs.lease_monitor_scheduler.utc_now", lambda: datetime(2030, 1, 1, 12, 30, 42, 123456)
        )

        lease_scheduler.setup_jobs()

        start = lease_scheduler.scheduler.get_job("poll_boost_orders").trigger.start_date
        assert (start.hour, start.minute, start.second, start.microsecond) == (12, 30, 15, 0)
