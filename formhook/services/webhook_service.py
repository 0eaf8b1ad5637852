"""Entry points the rest of the application uses to drive webhook delivery."""

import asyncio
import logging
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from formhook.db import AsyncSessionLocal
from formhook.exceptions import DeliveryNotFoundError, WebhookInactiveError
from formhook.models.delivery_log import DeliveryLog
from formhook.models.webhook import Webhook
from formhook.schemas.event import DomainEvent
from formhook.schemas.webhook import WebhookTestResponse
from formhook.services.delivery_executor import delivery_executor
from formhook.services.delivery_log_store import DeliveryLogStore
from formhook.services.event_matcher import EventMatcher
from formhook.services.webhook_registry import WebhookRegistry
from formhook.utils.error_handling import log_and_continue
from formhook.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

RESEND_EVENT_KIND = "session_completed"


class WebhookService:
    """Event fan-out, manual resend and test deliveries."""

    @staticmethod
    async def match_event(db: AsyncSession, event: DomainEvent) -> list[Webhook]:
        return await EventMatcher.match(db, event)

    @staticmethod
    async def publish_event(db: AsyncSession, event: DomainEvent) -> list[int]:
        """Dispatch a domain event to every matching webhook.

        Waits for the first attempt of each delivery; retries continue in the
        background. Never raises for delivery failures.

        Args:
            db: Database session (used for matching only)
            event: Domain event

        Returns:
            Ids of the webhooks the event was dispatched to
        """
        webhooks = await WebhookService.match_event(db, event)
        webhook_ids = [w.id for w in webhooks]
        await WebhookService.dispatch_to(webhook_ids, event)
        return webhook_ids

    @staticmethod
    async def dispatch_to(
        webhook_ids: Iterable[int], event: DomainEvent
    ) -> list[Optional[DeliveryLog]]:
        """Dispatch an event to webhooks concurrently and independently."""
        return await asyncio.gather(
            *(WebhookService._dispatch_isolated(webhook_id, event) for webhook_id in webhook_ids)
        )

    @staticmethod
    async def _dispatch_isolated(webhook_id: int, event: DomainEvent) -> Optional[DeliveryLog]:
        """Run one webhook's delivery in its own session.

        Any failure is logged; it must not reach the event source or the
        other webhooks' deliveries.
        """
        async with AsyncSessionLocal() as db:
            try:
                webhook = await db.get(Webhook, webhook_id)
                if webhook is None or not webhook.is_deliverable:
                    logger.info(f"Skipping dispatch to webhook {webhook_id}: no longer deliverable")
                    return None
                return await delivery_executor.dispatch(db, webhook, event)
            except Exception as e:
                log_and_continue(
                    logger, e, f"Dispatch of {event.kind} to webhook {webhook_id} failed", "error"
                )
                return None

    @staticmethod
    async def resend(
        db: AsyncSession, user_id: str, session_id: str, webhook_id: Optional[int] = None
    ) -> list[DeliveryLog]:
        """Re-send a session's webhook delivery as fresh logical deliveries.

        With ``webhook_id``, re-sends that webhook's most recent delivery for
        the session (preferring the completion event). Without it, re-sends
        the completion event to every webhook that originally received it;
        webhooks that are no longer active are skipped.

        Raises:
            WebhookNotFoundError: If ``webhook_id`` is not visible to the user
            WebhookInactiveError: If the named webhook is paused or disabled
            DeliveryNotFoundError: If there is nothing to re-send
        """
        if webhook_id is not None:
            webhook = await WebhookRegistry.get_webhook(db, webhook_id, user_id=user_id)
            if not webhook.is_deliverable:
                raise WebhookInactiveError(webhook.id, webhook.status if webhook.enabled else "disabled")

            source = await DeliveryLogStore.latest_for_session(
                db, session_id, webhook_id=webhook.id, event_kind=RESEND_EVENT_KIND
            ) or await DeliveryLogStore.latest_for_session(db, session_id, webhook_id=webhook.id)
            if source is None:
                raise DeliveryNotFoundError(
                    f"No delivery for session {session_id} to webhook {webhook_id}"
                )
            return [await delivery_executor.redeliver(db, webhook, source)]

        target_ids = await DeliveryLogStore.session_webhook_ids(
            db, user_id, session_id, RESEND_EVENT_KIND
        )
        if not target_ids:
            raise DeliveryNotFoundError(f"No completion delivery found for session {session_id}")

        logs = []
        for target_id in target_ids:
            webhook = await db.get(Webhook, target_id)
            if webhook is None or not webhook.is_deliverable:
                logger.info(f"Resend for session {sanitize_log_message(session_id)} skips webhook {target_id}")
                continue
            source = await DeliveryLogStore.latest_for_session(
                db, session_id, webhook_id=target_id, event_kind=RESEND_EVENT_KIND
            )
            logs.append(await delivery_executor.redeliver(db, webhook, source))
        return logs

    @staticmethod
    async def test_delivery(db: AsyncSession, user_id: str, webhook_id: int) -> WebhookTestResponse:
        """Send a synthetic event through the full pipeline once.

        Paused or disabled webhooks can be tested; deleted ones cannot.

        Raises:
            WebhookNotFoundError: If the webhook is not visible to the user
        """
        webhook = await WebhookRegistry.get_webhook(db, webhook_id, user_id=user_id)
        log = await delivery_executor.send_test(db, webhook)

        success = log.status == "success"
        if success:
            message = f"Test successful (HTTP {log.response_code})"
        elif log.error_type == "rate_limited":
            message = "Test failed (rate limited)"
        elif log.response_code is not None:
            message = f"Test failed (HTTP {log.response_code})"
        else:
            message = f"Test failed ({log.error_type})"

        return WebhookTestResponse(
            success=success,
            status_code=log.response_code,
            response_time_ms=log.duration_ms,
            response_body=(log.response_body or "")[:200] or None,
            error=None if success else log.error_message,
            message=message,
            delivery_log_id=log.id,
        )
