"""Delivery log API endpoints."""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import OperationalError

from formhook.db import get_db
from formhook.dependencies import get_user_id
from formhook.schemas.delivery_log import DeliveryLogListResponse, DeliveryLogSchema
from formhook.services.delivery_log_store import DeliveryLogStore
from formhook.utils.error_handling import safe_error_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=DeliveryLogListResponse)
async def list_delivery_logs(
    webhook_id: Optional[int] = Query(None),
    session_id: Optional[str] = Query(None),
    log_status: Optional[
        Literal["pending", "success", "failed", "retrying", "cancelled", "all"]
    ] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> DeliveryLogListResponse:
    """List delivery attempts for the caller's webhooks, newest first."""
    try:
        logs, total, total_pages = await DeliveryLogStore.list_logs(
            db,
            user_id,
            webhook_id=webhook_id,
            session_id=session_id,
            status=log_status,
            page=page,
            page_size=page_size,
        )
    except OperationalError as e:
        safe_error_response(logger, e, "Failed to list delivery logs")

    return DeliveryLogListResponse(
        logs=[DeliveryLogSchema.model_validate(log) for log in logs],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


@router.get("/{log_id}", response_model=DeliveryLogSchema)
async def get_delivery_log(
    log_id: int,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> DeliveryLogSchema:
    """Get a single delivery attempt.

    Raises:
        404: Log not found or not owned by the caller
    """
    log = await DeliveryLogStore.get_for_user(db, user_id, log_id)
    if not log:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Delivery log with ID {log_id} not found",
        )
    return DeliveryLogSchema.model_validate(log)
