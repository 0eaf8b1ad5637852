"""Pydantic schemas for runtime settings."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SettingSchema(BaseModel):
    """Setting as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    key: str
    value: str
    category: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SettingUpdate(BaseModel):
    value: str
