"""Pydantic schemas for API validation."""

from formhook.schemas.setting import SettingSchema, SettingUpdate
from formhook.schemas.webhook import (
    RetryPolicy,
    WebhookCreate,
    WebhookUpdate,
    WebhookSchema,
    WebhookListResponse,
    WebhookTestResponse,
)
from formhook.schemas.delivery_log import DeliveryLogSchema, DeliveryLogListResponse
from formhook.schemas.event import DomainEvent, EventIngest, EventAccepted, ResendRequest

__all__ = [
    "SettingSchema",
    "SettingUpdate",
    "RetryPolicy",
    "WebhookCreate",
    "WebhookUpdate",
    "WebhookSchema",
    "WebhookListResponse",
    "WebhookTestResponse",
    "DeliveryLogSchema",
    "DeliveryLogListResponse",
    "DomainEvent",
    "EventIngest",
    "EventAccepted",
    "ResendRequest",
]
