"""Process-wide APScheduler instance.

The retry scheduler arms one date job per waiting attempt on it, plus its
recovery sweep; this module adds the periodic metrics refresh and owns the
start/stop lifecycle.
"""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.db import AsyncSessionLocal
from formhook.services import metrics
from formhook.services.delivery_log_store import DeliveryLogStore
from formhook.services.retry_scheduler import RetryScheduler, retry_scheduler
from formhook.services.settings_service import SettingsService

logger = logging.getLogger(__name__)

METRICS_JOB_ID = "metrics_collection"


class SchedulerService:
    def __init__(self, retries: RetryScheduler = retry_scheduler) -> None:
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.retries = retries

    async def recover(self, db: AsyncSession) -> int:
        """Resolve delivery attempts left ``pending`` by the previous process."""
        stale_after = await SettingsService.get_int(db, "webhook_stale_pending_seconds", default=300)
        return await DeliveryLogStore.recover_interrupted(db, stale_after)

    async def start(self) -> None:
        """Re-arm persisted retries, register periodic jobs and start ticking.

        Raises:
            OperationalError: The database was unreachable while re-arming
        """
        scheduler = AsyncIOScheduler()
        self.retries.attach(scheduler)
        try:
            async with AsyncSessionLocal() as db:
                await self.retries.start(db)
        except OperationalError as e:
            logger.error(f"Could not load pending retries at startup: {e}")
            self.retries.attach(None)
            raise

        scheduler.add_job(
            self._refresh_metrics,
            "interval",
            minutes=1,
            id=METRICS_JOB_ID,
            name="Refresh webhook gauges",
            replace_existing=True,
            max_instances=1,
        )
        scheduler.start()
        self.scheduler = scheduler
        logger.info("Background scheduler started")

    async def stop(self) -> None:
        """Shut the scheduler down; unfinished retries stay persisted for the next start."""
        scheduler, self.scheduler = self.scheduler, None
        if scheduler is None:
            return
        self.retries.attach(None)
        try:
            scheduler.shutdown(wait=False)
            # Let the loop run the shutdown callbacks
            await asyncio.sleep(0)
        except RuntimeError as e:
            logger.error(f"Scheduler shutdown error: {e}")
        else:
            logger.info("Background scheduler stopped")

    async def _refresh_metrics(self) -> None:
        try:
            async with AsyncSessionLocal() as db:
                await metrics.collect_metrics(db)
        except OperationalError as e:
            logger.error(f"Metrics refresh skipped, database unavailable: {e}")


scheduler_service = SchedulerService()
