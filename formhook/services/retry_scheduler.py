"""Retry scheduling for failed webhook deliveries.

Each retry is an APScheduler ``date`` job keyed by the delivery log row it
resumes. The durable source of truth is the row itself (``status=retrying``
plus ``next_retry_at``), so a periodic sweep picks up anything whose timer was
lost to a restart. Timer and sweep race for a row through
``DeliveryLogStore.claim_retry``; only the winner sends.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.db import AsyncSessionLocal
from formhook.models.delivery_log import DeliveryLog
from formhook.models.webhook import DEFAULT_RETRY_POLICY, Webhook
from formhook.services import metrics
from formhook.services.delivery_log_store import DeliveryLogStore
from formhook.services.settings_service import SettingsService
from formhook.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "webhook_retry_sweep"


def retry_job_id(log_id: int) -> str:
    return f"webhook_retry_{log_id}"


class RetryScheduler:
    """Computes backoff and arms timers that resume retry chains."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None) -> None:
        """Initialize retry scheduler.

        Args:
            scheduler: APScheduler instance; without one, retries are only
                resumed by ``sweep``
        """
        self.scheduler = scheduler
        self.executor = None

    def attach(self, scheduler: Optional[AsyncIOScheduler]) -> None:
        self.scheduler = scheduler

    def bind(self, executor) -> None:
        """Set the executor that performs resumed attempts."""
        self.executor = executor

    @staticmethod
    def compute_backoff_delay_ms(retry_policy: Optional[Dict[str, Any]], attempt_number: int) -> int:
        """Delay before the attempt that follows ``attempt_number``.

        Linear: ``initial_delay_ms * N``. Exponential:
        ``initial_delay_ms * 2^(N-1)``.

        Args:
            retry_policy: Webhook retry policy
            attempt_number: The attempt that just failed (1-based)

        Returns:
            Delay in milliseconds
        """
        policy = {**DEFAULT_RETRY_POLICY, **(retry_policy or {})}
        initial = int(policy["initial_delay_ms"])
        n = max(attempt_number, 1)

        if policy["backoff_type"] == "linear":
            return initial * n
        return initial * (2 ** (n - 1))

    def schedule_retry(
        self,
        webhook: Webhook,
        log: DeliveryLog,
        attempt_number: int,
        base_delay_ms: Optional[int] = None,
    ) -> datetime:
        """Mark a log row as awaiting retry.

        The caller commits the row and then calls ``arm``.

        Args:
            webhook: Webhook whose policy drives the delay
            log: Row being completed as ``retrying``
            attempt_number: Attempt number of that row
            base_delay_ms: Fixed delay overriding the backoff (rate-limit deferral)

        Returns:
            When the retry becomes due
        """
        if base_delay_ms is None:
            delay_ms = self.compute_backoff_delay_ms(webhook.retry_policy, attempt_number)
            reason = "failure"
        else:
            delay_ms = base_delay_ms
            reason = "rate_limited"

        next_retry_at = utcnow() + timedelta(milliseconds=delay_ms)
        log.status = "retrying"
        log.will_retry = True
        log.next_retry_at = next_retry_at
        metrics.retries_scheduled_total.labels(reason=reason).inc()

        logger.info(
            f"Webhook {webhook.id} delivery {log.delivery_id}: retry in {delay_ms}ms "
            f"(after attempt {attempt_number}, reason: {reason})"
        )
        return next_retry_at

    def arm(self, log_id: int, run_at: datetime) -> None:
        """Register the in-process timer for a retrying row."""
        if self.scheduler is None:
            return

        self.scheduler.add_job(
            self.run_retry,
            "date",
            run_date=as_utc(run_at),
            args=[log_id],
            id=retry_job_id(log_id),
            name=f"Webhook retry for delivery log {log_id}",
            replace_existing=True,
            misfire_grace_time=None,  # Late is fine; the claim prevents doubles
        )

    def disarm(self, log_id: int) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.remove_job(retry_job_id(log_id))
        except JobLookupError:
            pass

    async def resume_delivery(self, db: AsyncSession, log_id: int) -> Optional[DeliveryLog]:
        """Perform the retry recorded on a ``retrying`` row.

        The webhook is re-read first; if it is no longer active and enabled
        the chain is cancelled without sending.

        Returns:
            The new attempt's row, the cancelled row, or None if the row was
            already handled elsewhere
        """
        if self.executor is None:
            raise RuntimeError("RetryScheduler has no executor bound")

        log = await DeliveryLogStore.get(db, log_id)
        if not log or log.status != "retrying":
            return None

        if not await DeliveryLogStore.claim_retry(db, log_id):
            logger.debug(f"Retry for delivery log {log_id} already claimed")
            return None

        try:
            return await self._resume_claimed(db, log)
        except Exception:
            # No follow-up row yet means nobody else will ever resume this chain
            await db.rollback()
            try:
                await DeliveryLogStore.release_claim(db, log_id)
            except OperationalError as e:
                logger.error(
                    f"Could not release retry claim on delivery log {log_id}; "
                    f"it will be released once stale: {e}"
                )
            raise

    async def _resume_claimed(self, db: AsyncSession, log: DeliveryLog) -> Optional[DeliveryLog]:
        await db.refresh(log)
        webhook = await db.get(Webhook, log.webhook_id)
        if webhook is None or not webhook.is_deliverable:
            state = "missing" if webhook is None else f"{webhook.status}, enabled={webhook.enabled}"
            reason = f"Retry cancelled: webhook is no longer active ({state})"
            await DeliveryLogStore.cancel_retry(db, log, reason)
            metrics.deliveries_total.labels(outcome="cancelled").inc()
            logger.info(f"Cancelled retry for delivery {log.delivery_id}: {reason}")
            return log

        # A throttled attempt never ran, so it is retried under the same number
        next_attempt = log.attempt_number if log.is_rate_limited else log.attempt_number + 1

        return await self.executor.attempt(
            db,
            webhook,
            payload=log.request_payload,
            delivery_id=log.delivery_id,
            event_kind=log.event_kind,
            session_id=log.session_id,
            attempt_number=next_attempt,
            throttle_count=log.throttle_count,
        )

    async def run_retry(self, log_id: int) -> None:
        """Timer entry point: resume one retry in its own session."""
        async with AsyncSessionLocal() as db:
            try:
                await self.resume_delivery(db, log_id)
            except OperationalError as e:
                logger.error(f"Database error resuming delivery log {log_id}: {e}")
            except (ValueError, KeyError, AttributeError) as e:
                logger.error(f"Invalid data resuming delivery log {log_id}: {e}", exc_info=True)

    async def sweep(self) -> int:
        """Resume every due, unclaimed retry, first releasing claims that went stale.

        Returns:
            Number of rows picked up
        """
        try:
            async with AsyncSessionLocal() as db:
                stale_after = await SettingsService.get_int(
                    db, "webhook_stale_pending_seconds", default=300
                )
                await DeliveryLogStore.release_stale_claims(db, stale_after)
                due = await DeliveryLogStore.due_retries(db)
        except OperationalError as e:
            logger.error(f"Database error in retry sweep: {e}")
            return 0

        if due:
            logger.info(f"Retry sweep resuming {len(due)} due delivery attempt(s)")
            await asyncio.gather(*(self.run_retry(log_id) for log_id in due))
        return len(due)

    async def start(self, db: AsyncSession) -> None:
        """Register the sweep job and re-arm timers for persisted retries.

        Args:
            db: Database session for settings and the retry backlog
        """
        if self.scheduler is None:
            raise RuntimeError("RetryScheduler.start requires an APScheduler instance")

        interval = await SettingsService.get_int(db, "webhook_retry_sweep_interval", default=60)
        self.scheduler.add_job(
            self.sweep,
            "interval",
            seconds=max(interval, 1),
            id=SWEEP_JOB_ID,
            name="Webhook Retry Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        now = utcnow()
        backlog = await DeliveryLogStore.scheduled_retries(db)
        for log_id, next_retry_at in backlog:
            self.arm(log_id, max(as_utc(next_retry_at) or now, now))

        logger.info(
            f"Webhook retry scheduler started (sweep every {interval}s, "
            f"{len(backlog)} retries re-armed)"
        )


retry_scheduler = RetryScheduler()
