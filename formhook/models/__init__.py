"""Database models for FormHook."""

from formhook.models.setting import Setting
from formhook.models.webhook import Webhook
from formhook.models.delivery_log import DeliveryLog

__all__ = [
    "Setting",
    "Webhook",
    "DeliveryLog",
]
