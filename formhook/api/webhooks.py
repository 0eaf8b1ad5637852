"""API endpoints for webhook management."""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.db import get_db
from formhook.dependencies import get_user_id
from formhook.schemas.webhook import (
    WebhookCreate,
    WebhookListResponse,
    WebhookSchema,
    WebhookTestResponse,
    WebhookUpdate,
)
from formhook.services.webhook_registry import WebhookRegistry
from formhook.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_schema(webhook) -> WebhookSchema:
    try:
        token = WebhookRegistry.get_auth_token(webhook)
    except ValueError:
        token = None
    return WebhookSchema.from_model(webhook, auth_token=token)


@router.get("", response_model=WebhookListResponse, status_code=status.HTTP_200_OK)
async def list_webhooks(
    agent_id: Optional[str] = Query(None),
    enabled: Optional[bool] = Query(None),
    webhook_status: Optional[Literal["active", "paused", "deleted", "all"]] = Query(
        None, alias="status"
    ),
    search: Optional[str] = Query(None, max_length=200),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> WebhookListResponse:
    """List the caller's webhooks, most recently updated first.

    Deleted webhooks are only included with ``status=deleted`` or ``status=all``.
    """
    webhooks, total, total_pages = await WebhookRegistry.list_webhooks(
        db,
        user_id,
        agent_id=agent_id,
        enabled=enabled,
        status=webhook_status,
        search=search,
        page=page,
        page_size=page_size,
    )
    return WebhookListResponse(
        webhooks=[_to_schema(w) for w in webhooks],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


@router.post("", response_model=WebhookSchema, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    webhook: WebhookCreate,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> WebhookSchema:
    """Create a new webhook.

    Raises:
        422: Invalid configuration (every violated field is listed)
    """
    created = await WebhookRegistry.create_webhook(db, user_id, webhook)
    return _to_schema(created)


@router.get("/{webhook_id}", response_model=WebhookSchema, status_code=status.HTTP_200_OK)
async def get_webhook(
    webhook_id: int,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> WebhookSchema:
    """Get webhook by ID.

    Raises:
        404: Webhook not found
    """
    webhook = await WebhookRegistry.get_webhook(db, webhook_id, user_id=user_id)
    return _to_schema(webhook)


@router.patch("/{webhook_id}", response_model=WebhookSchema, status_code=status.HTTP_200_OK)
@router.put("/{webhook_id}", response_model=WebhookSchema, status_code=status.HTTP_200_OK)
async def update_webhook(
    webhook_id: int,
    webhook: WebhookUpdate,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> WebhookSchema:
    """Update an existing webhook (fields not sent are left unchanged).

    Raises:
        404: Webhook not found
        422: Resulting configuration is invalid
    """
    updated = await WebhookRegistry.update_webhook(db, webhook_id, user_id, webhook)
    return _to_schema(updated)


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    webhook_id: int,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Soft-delete a webhook.

    Raises:
        404: Webhook not found
    """
    await WebhookRegistry.delete_webhook(db, webhook_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{webhook_id}/test", response_model=WebhookTestResponse, status_code=status.HTTP_200_OK)
async def test_webhook(
    webhook_id: int,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> WebhookTestResponse:
    """Send a test payload to a webhook.

    Raises:
        404: Webhook not found
    """
    return await WebhookService.test_delivery(db, user_id, webhook_id)
