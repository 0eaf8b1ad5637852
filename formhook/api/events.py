"""Domain event ingest and session resend endpoints."""

import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.db import get_db
from formhook.dependencies import get_user_id
from formhook.schemas.delivery_log import DeliveryLogSchema
from formhook.schemas.event import DomainEvent, EventAccepted, EventIngest, ResendRequest
from formhook.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/events", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    body: EventIngest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> EventAccepted:
    """Accept a domain event and fan it out to matching webhooks.

    Matching happens before the response; delivery runs after it, so a slow
    or failing endpoint never delays the caller.
    """
    event = DomainEvent(
        kind=body.kind,
        user_id=user_id,
        agent_id=body.agent_id,
        session_id=body.session_id,
        payload=body.payload,
    )
    webhooks = await WebhookService.match_event(db, event)
    webhook_ids = [w.id for w in webhooks]

    if webhook_ids:
        background_tasks.add_task(WebhookService.dispatch_to, webhook_ids, event)

    logger.info(f"Accepted {event.kind} event; dispatching to {len(webhook_ids)} webhook(s)")
    return EventAccepted(kind=event.kind, matched_webhook_ids=webhook_ids)


@router.post("/sessions/{session_id}/resend", response_model=List[DeliveryLogSchema])
async def resend_session(
    session_id: str,
    body: ResendRequest | None = None,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> List[DeliveryLogSchema]:
    """Re-send a session's webhook delivery.

    Raises:
        404: Webhook or prior delivery not found
        409: Webhook is paused or disabled
    """
    webhook_id = body.webhook_id if body else None
    logs = await WebhookService.resend(db, user_id, session_id, webhook_id=webhook_id)
    return [DeliveryLogSchema.model_validate(log) for log in logs]
