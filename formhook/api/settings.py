"""Settings API endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.db import get_db
from formhook.models.setting import Setting
from formhook.schemas.setting import SettingSchema, SettingUpdate
from formhook.services.settings_service import SettingsService
from formhook.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=List[SettingSchema])
async def list_settings(
    category: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> List[SettingSchema]:
    """List all settings, optionally filtered by category."""
    settings = await SettingsService.get_all(db, category=category)
    return [SettingSchema.model_validate(s) for s in settings]


@router.get("/{key}", response_model=SettingSchema)
async def get_setting(key: str, db: AsyncSession = Depends(get_db)) -> SettingSchema:
    """Get a single setting.

    Raises:
        404: Setting not found
    """
    result = await db.execute(select(Setting).where(Setting.key == key))
    setting = result.scalar_one_or_none()
    if not setting:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Setting '{key}' not found")
    return SettingSchema.model_validate(setting)


@router.put("/{key}", response_model=SettingSchema)
async def update_setting(
    key: str,
    update: SettingUpdate,
    db: AsyncSession = Depends(get_db),
) -> SettingSchema:
    """Update a setting value.

    Raises:
        404: Unknown setting key
        422: Value has the wrong type or is out of range
    """
    if not SettingsService.is_known(key):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Setting '{key}' not found")

    error = SettingsService.check_value(key, update.value)
    if error:
        raise HTTPException(status_code=422, detail=[error.to_dict()])

    setting = await SettingsService.set(db, key, update.value.strip())
    logger.info(f"Setting '{sanitize_log_message(key)}' set to {sanitize_log_message(setting.value)}")
    return SettingSchema.model_validate(setting)
