"""Schemas for domain events pushed by the session subsystem."""

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from formhook.schemas.webhook import WebhookTrigger


class DomainEvent(BaseModel):
    """A session lifecycle transition that may fan out to webhooks."""

    kind: WebhookTrigger
    user_id: str
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EventIngest(BaseModel):
    """Event body accepted by the ingest endpoint (owner comes from the caller)."""

    kind: WebhookTrigger
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventAccepted(BaseModel):
    """Ingest acknowledgement."""

    kind: str
    matched_webhook_ids: List[int]


class ResendRequest(BaseModel):
    """Manual resend of a session's webhook delivery."""

    webhook_id: Optional[int] = None
