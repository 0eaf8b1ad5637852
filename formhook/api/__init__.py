"""API routers for FormHook."""

from fastapi import APIRouter
from formhook.api import webhooks, delivery_logs, events, settings

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(delivery_logs.router, prefix="/delivery-logs", tags=["delivery-logs"])
api_router.include_router(events.router, tags=["events"])
api_router.include_router(settings.router, prefix="/settings", tags=["settings"])

__all__ = ["api_router"]
