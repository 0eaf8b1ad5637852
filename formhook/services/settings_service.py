"""Runtime delivery settings stored in the database.

Every key is registered in ``SettingsService.DEFAULTS`` with its type and,
for integers, an inclusive range. Rows are seeded at startup; until then
reads fall back to the registered default.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.exceptions import FieldError
from formhook.models import Setting
from formhook.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

TRUE_VALUES = ("true", "1", "yes", "on")
FALSE_VALUES = ("false", "0", "no", "off")


class SettingsService:
    """Typed access to the ``settings`` table."""

    DEFAULTS: Dict[str, Dict[str, Any]] = {
        # Delivery
        "webhook_request_timeout": {
            "value": "15",
            "type": "int",
            "range": (1, 120),
            "category": "delivery",
            "description": "Hard timeout in seconds for each outbound webhook request",
        },
        "webhook_max_response_body": {
            "value": "10000",
            "type": "int",
            "range": (0, 1_000_000),
            "category": "delivery",
            "description": "Maximum number of response body characters stored per delivery attempt",
        },
        "webhook_rate_limit_min_delay_ms": {
            "value": "1000",
            "type": "int",
            "range": (0, 600_000),
            "category": "delivery",
            "description": "Minimum delay in milliseconds before re-trying a rate-limited delivery",
        },
        # Retries
        "webhook_retry_client_errors": {
            "value": "true",
            "type": "bool",
            "category": "retries",
            "description": "Retry 4xx responses like any other failure (false: 4xx other than 408/429 fail immediately)",
        },
        "webhook_retry_sweep_interval": {
            "value": "60",
            "type": "int",
            "range": (1, 3600),
            "category": "retries",
            "description": "Seconds between sweeps that resume due retries missed by the in-process timer",
        },
        # Recovery
        "webhook_stale_pending_seconds": {
            "value": "300",
            "type": "int",
            "range": (1, 86_400),
            "category": "recovery",
            "description": "Age in seconds after which a pending delivery attempt is treated as interrupted at startup",
        },
    }

    @staticmethod
    def is_known(key: str) -> bool:
        return key in SettingsService.DEFAULTS

    @staticmethod
    def check_value(key: str, value: str) -> Optional[FieldError]:
        """Validate a raw value against the key's registered type.

        Returns:
            The violation, or None when the value is acceptable
        """
        entry = SettingsService.DEFAULTS.get(key, {})
        if entry.get("type") == "int":
            low, high = entry["range"]
            try:
                number = int(value)
            except ValueError:
                number = None
            if number is None or not low <= number <= high:
                return FieldError(key, f"Must be an integer between {low} and {high}")
        elif entry.get("type") == "bool" and value.lower() not in TRUE_VALUES + FALSE_VALUES:
            return FieldError(key, "Must be true or false")
        return None

    @staticmethod
    async def init_defaults(db: AsyncSession) -> None:
        """Insert any registered setting that has no row yet."""
        result = await db.execute(select(Setting.key))
        existing = {row[0] for row in result.fetchall()}

        missing = [key for key in SettingsService.DEFAULTS if key not in existing]
        for key in missing:
            entry = SettingsService.DEFAULTS[key]
            db.add(
                Setting(
                    key=key,
                    value=entry["value"],
                    category=entry["category"],
                    description=entry["description"],
                )
            )
        await db.commit()
        if missing:
            logger.info(f"Seeded {len(missing)} default setting(s)")

    @classmethod
    async def get(cls, db: AsyncSession, key: str, default: Optional[str] = None) -> Optional[str]:
        """Raw value of a setting.

        Falls back to ``default`` when given, then to the registered default.
        """
        result = await db.execute(select(Setting.value).where(Setting.key == key))
        value = result.scalar_one_or_none()
        if value is not None:
            return value
        if default is not None:
            return default
        return cls.DEFAULTS.get(key, {}).get("value")

    @staticmethod
    async def get_bool(db: AsyncSession, key: str, default: bool = False) -> bool:
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        return value.lower() in TRUE_VALUES

    @staticmethod
    async def get_int(db: AsyncSession, key: str, default: int = 0) -> int:
        """Integer value; a stored value that does not parse yields ``default``."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(
                f"Setting '{key}' has non-integer value {sanitize_log_message(value)!r}; "
                f"using {default}"
            )
            return default

    @classmethod
    async def set(cls, db: AsyncSession, key: str, value: str) -> Setting:
        """Store a value, creating the row if it was never seeded."""
        result = await db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()

        if setting:
            setting.value = value
        else:
            entry = cls.DEFAULTS.get(key, {})
            setting = Setting(
                key=key,
                value=value,
                category=entry.get("category", "general"),
                description=entry.get("description", ""),
            )
            db.add(setting)

        await db.commit()
        await db.refresh(setting)
        return setting

    @staticmethod
    async def get_all(db: AsyncSession, category: Optional[str] = None) -> List[Setting]:
        query = select(Setting)
        if category:
            query = query.where(Setting.category == category)
        result = await db.execute(query.order_by(Setting.category, Setting.key))
        return list(result.scalars().all())
