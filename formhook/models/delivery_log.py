"""Delivery log model: one row per webhook delivery attempt."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from formhook.db import Base


class DeliveryLog(Base):
    """Audit record of a single delivery attempt.

    Rows of one logical delivery (one event to one webhook) share a
    ``delivery_id`` and carry an increasing ``attempt_number``. Rate-limit
    deferrals reuse the attempt number they postpone and bump
    ``throttle_count`` instead.

    Status lifecycle per row: ``pending`` on creation, then exactly one
    transition to ``success``, ``failed`` or ``retrying``. A ``retrying`` row
    may later become ``cancelled`` if the webhook stops being active before
    the retry fires.
    """

    __tablename__ = "delivery_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Linkage
    webhook_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("webhooks.id"), nullable=False, index=True
    )
    session_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    delivery_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    event_kind: Mapped[str] = mapped_column(String, nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    throttle_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending", index=True
    )  # pending, success, failed, retrying, cancelled

    # Response snapshot (absent on timeout/network failure)
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_headers: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Failure details
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    error_type: Mapped[str | None] = mapped_column(
        String, nullable=True
    )  # network, timeout, non-2xx, auth, rate_limited

    # Request snapshot, captured at send time for audit and replay
    request_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    request_headers: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Timing
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Retry bookkeeping
    will_retry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    retry_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<DeliveryLog("
            f"id={self.id}, "
            f"webhook_id={self.webhook_id}, "
            f"attempt={self.attempt_number}, "
            f"status='{self.status}')>"
        )

    @property
    def is_rate_limited(self) -> bool:
        return self.error_type == "rate_limited"

    @property
    def is_terminal(self) -> bool:
        """Check if this row ends its logical delivery."""
        return self.status in ("success", "failed", "cancelled")
