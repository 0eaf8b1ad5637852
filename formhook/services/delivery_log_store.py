"""Durable record of every webhook delivery attempt."""

import logging
import math
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from formhook.models.delivery_log import DeliveryLog
from formhook.models.webhook import Webhook
from formhook.utils.clock import utcnow

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Delivery interrupted by application restart"


def _has_follow_up():
    """Correlated test: a later row of the same logical delivery exists."""
    later = aliased(DeliveryLog)
    return (
        select(later.id)
        .where(later.delivery_id == DeliveryLog.delivery_id, later.id > DeliveryLog.id)
        .exists()
    )


class DeliveryLogStore:
    """Append-only store of delivery attempts plus the retry bookkeeping on them."""

    @staticmethod
    async def create_pending(
        db: AsyncSession,
        webhook: Webhook,
        *,
        delivery_id: str,
        event_kind: str,
        session_id: Optional[str],
        attempt_number: int,
        throttle_count: int,
        request_payload: Dict[str, Any],
    ) -> DeliveryLog:
        """Persist a new ``pending`` row at the start of an attempt.

        Committed immediately so that an attempt interrupted by a crash is
        visible to startup recovery.
        """
        log = DeliveryLog(
            webhook_id=webhook.id,
            session_id=session_id,
            delivery_id=delivery_id,
            event_kind=event_kind,
            attempt_number=attempt_number,
            throttle_count=throttle_count,
            status="pending",
            request_payload=request_payload,
            request_headers={},
            response_headers={},
            started_at=utcnow(),
            will_retry=False,
        )
        db.add(log)
        await db.commit()
        await db.refresh(log)
        return log

    @staticmethod
    async def get(db: AsyncSession, log_id: int) -> Optional[DeliveryLog]:
        result = await db.execute(select(DeliveryLog).where(DeliveryLog.id == log_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_for_user(db: AsyncSession, user_id: str, log_id: int) -> Optional[DeliveryLog]:
        """Get a log row if it belongs to one of the user's webhooks."""
        result = await db.execute(
            select(DeliveryLog)
            .join(Webhook, Webhook.id == DeliveryLog.webhook_id)
            .where(DeliveryLog.id == log_id, Webhook.user_id == user_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_logs(
        db: AsyncSession,
        user_id: str,
        webhook_id: Optional[int] = None,
        session_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[DeliveryLog], int, int]:
        """List delivery logs for the user's webhooks, newest first.

        Returns:
            Tuple of (logs, total matching rows, total pages)
        """
        conditions = [Webhook.user_id == user_id]
        if webhook_id is not None:
            conditions.append(DeliveryLog.webhook_id == webhook_id)
        if session_id is not None:
            conditions.append(DeliveryLog.session_id == session_id)
        if status and status != "all":
            conditions.append(DeliveryLog.status == status)

        base = (
            select(DeliveryLog)
            .join(Webhook, Webhook.id == DeliveryLog.webhook_id)
            .where(*conditions)
        )

        total_result = await db.execute(select(func.count()).select_from(base.subquery()))
        total = total_result.scalar() or 0

        result = await db.execute(
            base.order_by(DeliveryLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        total_pages = math.ceil(total / page_size) if page_size else 0
        return list(result.scalars().all()), total, total_pages

    @staticmethod
    async def get_chain(db: AsyncSession, delivery_id: str) -> list[DeliveryLog]:
        """All rows of one logical delivery, in the order they were written."""
        result = await db.execute(
            select(DeliveryLog)
            .where(DeliveryLog.delivery_id == delivery_id)
            .order_by(DeliveryLog.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def latest_for_session(
        db: AsyncSession,
        session_id: str,
        webhook_id: Optional[int] = None,
        event_kind: Optional[str] = None,
    ) -> Optional[DeliveryLog]:
        """Most recent delivery row for a session (optionally per webhook / event kind)."""
        query = select(DeliveryLog).where(DeliveryLog.session_id == session_id)
        if webhook_id is not None:
            query = query.where(DeliveryLog.webhook_id == webhook_id)
        if event_kind is not None:
            query = query.where(DeliveryLog.event_kind == event_kind)
        result = await db.execute(query.order_by(DeliveryLog.id.desc()).limit(1))
        return result.scalar_one_or_none()

    @staticmethod
    async def session_webhook_ids(
        db: AsyncSession, user_id: str, session_id: str, event_kind: str
    ) -> list[int]:
        """Webhooks of the user that received a given event for a session."""
        result = await db.execute(
            select(DeliveryLog.webhook_id)
            .join(Webhook, Webhook.id == DeliveryLog.webhook_id)
            .where(
                DeliveryLog.session_id == session_id,
                DeliveryLog.event_kind == event_kind,
                Webhook.user_id == user_id,
            )
            .distinct()
            .order_by(DeliveryLog.webhook_id)
        )
        return [row[0] for row in result.fetchall()]

    @staticmethod
    async def claim_retry(db: AsyncSession, log_id: int) -> bool:
        """Atomically claim a ``retrying`` row so only one worker resumes it.

        Returns:
            True if this caller won the claim
        """
        result = await db.execute(
            update(DeliveryLog)
            .where(
                DeliveryLog.id == log_id,
                DeliveryLog.status == "retrying",
                DeliveryLog.retry_claimed_at.is_(None),
            )
            .values(retry_claimed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    @staticmethod
    async def _release_claims(db: AsyncSession, *conditions) -> int:
        """Clear the claim on retrying rows whose follow-up attempt was never written."""
        result = await db.execute(
            select(DeliveryLog.id).where(
                DeliveryLog.status == "retrying",
                DeliveryLog.retry_claimed_at.is_not(None),
                ~_has_follow_up(),
                *conditions,
            )
        )
        ids = [row[0] for row in result.fetchall()]
        if not ids:
            return 0

        await db.execute(
            update(DeliveryLog)
            .where(DeliveryLog.id.in_(ids))
            .values(retry_claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return len(ids)

    @staticmethod
    async def release_claim(db: AsyncSession, log_id: int) -> bool:
        """Give a claimed retry back after its attempt failed to start.

        A no-op once the next attempt's row exists; from then on that row
        carries the chain.
        """
        return await DeliveryLogStore._release_claims(db, DeliveryLog.id == log_id) == 1

    @staticmethod
    async def release_stale_claims(db: AsyncSession, stale_seconds: int) -> int:
        """Release claims older than ``stale_seconds`` that never produced a follow-up row.

        Covers workers that died between claiming a retry and writing the
        next attempt. Released rows are picked up again by the sweep.
        """
        cutoff = utcnow() - timedelta(seconds=stale_seconds)
        released = await DeliveryLogStore._release_claims(
            db, DeliveryLog.retry_claimed_at <= cutoff
        )
        if released:
            logger.warning(f"Released {released} stale webhook retry claim(s)")
        return released

    @staticmethod
    async def cancel_retry(db: AsyncSession, log: DeliveryLog, reason: str) -> DeliveryLog:
        """Stop a retry chain without sending anything."""
        log.status = "cancelled"
        log.will_retry = False
        log.next_retry_at = None
        log.error_message = reason
        await db.commit()
        await db.refresh(log)
        return log

    @staticmethod
    async def due_retries(db: AsyncSession, limit: int = 100) -> list[int]:
        """Ids of unclaimed retrying rows whose ``next_retry_at`` has passed."""
        result = await db.execute(
            select(DeliveryLog.id)
            .where(
                DeliveryLog.status == "retrying",
                DeliveryLog.retry_claimed_at.is_(None),
                DeliveryLog.next_retry_at <= utcnow(),
            )
            .order_by(DeliveryLog.next_retry_at)
            .limit(limit)
        )
        return [row[0] for row in result.fetchall()]

    @staticmethod
    async def scheduled_retries(db: AsyncSession) -> list[tuple[int, Any]]:
        """Unclaimed retrying rows with their ``next_retry_at`` (for re-arming timers)."""
        result = await db.execute(
            select(DeliveryLog.id, DeliveryLog.next_retry_at).where(
                DeliveryLog.status == "retrying",
                DeliveryLog.retry_claimed_at.is_(None),
            )
        )
        return [(row[0], row[1]) for row in result.fetchall()]

    @staticmethod
    async def count_by_status(db: AsyncSession, status: str) -> int:
        result = await db.execute(
            select(func.count()).select_from(DeliveryLog).where(DeliveryLog.status == status)
        )
        return result.scalar() or 0

    @staticmethod
    async def recover_interrupted(db: AsyncSession, stale_seconds: int) -> int:
        """Resolve attempts left behind by a crash.

        Stale ``pending`` rows are completed as network failures. If the
        webhook's retry budget allows another attempt the row becomes
        ``retrying`` and due immediately so the sweep resumes it; otherwise the
        chain is exhausted and the webhook's last delivery status says so.
        Stale retry claims without a follow-up attempt are released.

        Returns:
            Number of pending rows resolved plus claims released
        """
        cutoff = utcnow() - timedelta(seconds=stale_seconds)
        result = await db.execute(
            select(DeliveryLog, Webhook)
            .join(Webhook, Webhook.id == DeliveryLog.webhook_id)
            .where(DeliveryLog.status == "pending", DeliveryLog.started_at <= cutoff)
        )
        rows = result.all()

        now = utcnow()
        for log, webhook in rows:
            log.completed_at = now
            log.error_type = "network"
            log.error_message = INTERRUPTED_MESSAGE
            retryable = (
                log.session_id is not None
                and log.attempt_number < webhook.max_retries + 1
            )
            if retryable:
                log.status = "retrying"
                log.will_retry = True
                log.next_retry_at = now
                continue

            log.status = "failed"
            log.will_retry = False
            webhook.last_delivery_status = "failed"
            if log.attempt_number > 1:
                webhook.last_error = f"Gave up after {log.attempt_number} attempts: {INTERRUPTED_MESSAGE}"
            else:
                webhook.last_error = INTERRUPTED_MESSAGE

        if rows:
            await db.commit()
            logger.warning(f"Recovered {len(rows)} interrupted webhook delivery attempt(s)")

        released = await DeliveryLogStore.release_stale_claims(db, stale_seconds)
        return len(rows) + released
