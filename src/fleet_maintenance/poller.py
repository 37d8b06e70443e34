# Module: src/fleet_maintenance/poller.py
# Description: Periodic change detection for store backends without push notifications

import logging
from datetime import datetime
from typing import Optional

import pytz
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .store import StoreBackend, StoreError

logger = logging.getLogger(__name__)


class StorePoller:
    """Calls `backend.poll()` on a fixed interval in a background thread."""

    def __init__(self, backend: StoreBackend, interval_seconds: float = 5.0):
        """
        Initialize store poller

        Args:
            backend: Backend whose subscribed keys should be re-read
            interval_seconds: Seconds between two polls
        """
        self.backend = backend
        self.interval_seconds = interval_seconds
        self._job_id = "store_poll_job"
        self.last_poll_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': ThreadPoolExecutor(max_workers=1)
        }
        job_defaults = {
            'coalesce': True,  # Combine multiple pending executions into one
            'max_instances': 1,  # Only one poll at a time
            'misfire_grace_time': 30
        }

        self.scheduler = BackgroundScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone=pytz.UTC
        )

    def start(self) -> bool:
        """Start polling"""
        try:
            if self.scheduler.running:
                logger.warning("Store poller is already running")
                return True
            self.scheduler.add_job(
                func=self.poll_now,
                trigger=IntervalTrigger(seconds=self.interval_seconds),
                id=self._job_id,
                name="Poll store for external changes",
                replace_existing=True
            )
            self.scheduler.start()
            logger.info(f"Store poller started (every {self.interval_seconds}s)")
            return True
        except Exception as e:
            logger.error(f"Failed to start store poller: {e}")
            return False

    def stop(self) -> bool:
        """Stop polling"""
        try:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=True)
                logger.info("Store poller stopped")
            return True
        except Exception as e:
            logger.error(f"Failed to stop store poller: {e}")
            return False

    def is_running(self) -> bool:
        return self.scheduler.running

    def poll_now(self) -> int:
        """Run one poll. Errors are logged and reported as zero changes."""
        self.last_poll_at = datetime.now()
        try:
            changes = self.backend.poll()
            self.last_error = None
        except StoreError as e:
            self.last_error = str(e)
            logger.error(f"Store poll failed: {e}")
            return 0
        if changes:
            logger.info(f"Store poll picked up {changes} external change(s)")
        return changes
