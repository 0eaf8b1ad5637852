"""Schemas for delivery log queries."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict


DeliveryStatus = Literal["pending", "success", "failed", "retrying", "cancelled"]


class DeliveryLogSchema(BaseModel):
    """One delivery attempt as shown in the audit UI."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    webhook_id: int
    session_id: Optional[str] = None
    delivery_id: str
    event_kind: str
    attempt_number: int
    throttle_count: int
    status: str
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    response_headers: Dict[str, Any] = {}
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    request_payload: Dict[str, Any] = {}
    request_headers: Dict[str, Any] = {}
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    will_retry: bool
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class DeliveryLogListResponse(BaseModel):
    """Paginated delivery log list."""

    logs: List[DeliveryLogSchema]
    total: int
    page: int
    page_size: int
    total_pages: int
