"""Webhook model for outbound event delivery targets."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, func
from formhook.db import Base


DEFAULT_RETRY_POLICY = {
    "max_retries": 3,
    "backoff_type": "exponential",
    "initial_delay_ms": 1000,
}


class Webhook(Base):
    """Webhook configuration for session lifecycle notifications.

    A webhook with ``agent_id`` NULL is global: it applies to every agent
    owned by ``user_id``. Deletion is soft (``status = "deleted"``) so that
    delivery logs keep pointing at a real row.
    """

    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    agent_id = Column(String, nullable=True, index=True)  # NULL = global
    name = Column(String, nullable=True)
    url = Column(String, nullable=False)
    method = Column(String, nullable=False, default="POST")  # POST, PUT, PATCH
    headers = Column(JSON, nullable=False, default=dict)  # Custom header name -> value

    # Auth material; auth_token is Fernet-encrypted at rest
    auth_type = Column(String, nullable=False, default="none")  # none, bearer, basic, hmac
    auth_token = Column(String, nullable=True)

    triggers = Column(JSON, nullable=False, default=list)  # Subscribed event kinds
    retry_policy = Column(JSON, nullable=False, default=lambda: dict(DEFAULT_RETRY_POLICY))
    rate_limit_per_minute = Column(Integer, nullable=False, default=60)

    enabled = Column(Boolean, nullable=False, default=True)
    status = Column(String, nullable=False, default="active", index=True)  # active, paused, deleted

    # Status tracking (terminal outcomes only)
    last_successful_delivery_at = Column(DateTime(timezone=True), nullable=True)
    last_delivery_status = Column(String, nullable=True)  # "success" or "failed"
    last_error = Column(String, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    @property
    def is_deliverable(self) -> bool:
        """Whether the webhook may receive dispatch right now."""
        return bool(self.enabled) and self.status == "active"

    @property
    def max_retries(self) -> int:
        return int((self.retry_policy or DEFAULT_RETRY_POLICY).get("max_retries", 0))

    def __repr__(self):
        return (
            f"<Webhook(id={self.id}, url='{self.url}', status='{self.status}', "
            f"enabled={self.enabled})>"
        )
