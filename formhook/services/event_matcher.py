"""Select the webhooks a domain event fans out to."""

import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.models.webhook import Webhook
from formhook.schemas.event import DomainEvent

logger = logging.getLogger(__name__)


class EventMatcher:
    """Match domain events to subscribed webhooks."""

    @staticmethod
    async def match(db: AsyncSession, event: DomainEvent) -> list[Webhook]:
        """Find every deliverable webhook subscribed to an event.

        A webhook matches when it belongs to the event's owner, is active and
        enabled, lists ``event.kind`` in its triggers, and is either global
        (``agent_id`` NULL) or scoped to ``event.agent_id``.

        Args:
            db: Database session
            event: Domain event

        Returns:
            Matching webhooks ordered by id
        """
        agent_scope = Webhook.agent_id.is_(None)
        if event.agent_id is not None:
            agent_scope = or_(agent_scope, Webhook.agent_id == event.agent_id)

        result = await db.execute(
            select(Webhook)
            .where(
                Webhook.user_id == event.user_id,
                Webhook.status == "active",
                Webhook.enabled.is_(True),
                agent_scope,
            )
            .order_by(Webhook.id)
        )

        # Trigger membership is checked here; triggers is a JSON column
        matched = [w for w in result.scalars().all() if event.kind in (w.triggers or [])]

        logger.debug(
            f"Event {event.kind} (agent={event.agent_id}) matched "
            f"{len(matched)} webhook(s): {[w.id for w in matched]}"
        )
        return matched
