"""Registry of webhook definitions: CRUD plus configuration validation."""

import logging
import math
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.exceptions import (
    FieldError,
    SSRFProtectionError,
    WebhookNotFoundError,
    WebhookValidationError,
)
from formhook.models.webhook import DEFAULT_RETRY_POLICY, Webhook
from formhook.schemas.webhook import VALID_WEBHOOK_TRIGGERS, WebhookCreate, WebhookUpdate
from formhook.services.webhook_rate_limiter import webhook_rate_limiter
from formhook.utils.encryption import decrypt_value, encrypt_value
from formhook.utils.security import (
    is_valid_header_name,
    is_valid_header_value,
    sanitize_log_message,
)
from formhook.utils.url_validation import validate_webhook_url

logger = logging.getLogger(__name__)

VALID_METHODS = ("POST", "PUT", "PATCH")
VALID_AUTH_TYPES = ("none", "bearer", "basic", "hmac")
VALID_BACKOFF_TYPES = ("exponential", "linear")

MAX_RETRIES_LIMIT = 10
MAX_INITIAL_DELAY_MS = 60000
MAX_RATE_LIMIT_PER_MINUTE = 1000


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_webhook_config(config: Dict[str, Any]) -> List[FieldError]:
    """Check a complete webhook configuration.

    Every rule is evaluated; nothing short-circuits after the first failure.

    Args:
        config: Effective configuration (stored values with any patch applied)

    Returns:
        List of violated fields (empty when valid)
    """
    errors: List[FieldError] = []

    url = config.get("url")
    try:
        validate_webhook_url(url or "")
    except SSRFProtectionError as e:
        errors.append(FieldError("url", f"URL targets a private or internal address: {e}"))
    except ValueError as e:
        errors.append(FieldError("url", str(e)))

    if config.get("method") not in VALID_METHODS:
        errors.append(FieldError("method", f"Method must be one of {', '.join(VALID_METHODS)}"))

    headers = config.get("headers") or {}
    if not isinstance(headers, dict):
        errors.append(FieldError("headers", "Headers must be a mapping of name to value"))
    else:
        for name, value in headers.items():
            if not isinstance(name, str) or not is_valid_header_name(name):
                errors.append(FieldError("headers", f"Invalid header name: {name!r}"))
            elif not isinstance(value, str) or not is_valid_header_value(value):
                errors.append(FieldError("headers", f"Invalid value for header {name}"))

    auth_type = config.get("auth_type")
    auth_token = config.get("auth_token")
    if auth_type not in VALID_AUTH_TYPES:
        errors.append(
            FieldError("auth_type", f"Auth type must be one of {', '.join(VALID_AUTH_TYPES)}")
        )
    elif auth_type != "none":
        if not auth_token:
            errors.append(FieldError("auth_token", f"auth_token is required for {auth_type} auth"))
        elif auth_type == "basic" and ":" not in auth_token:
            errors.append(FieldError("auth_token", "Basic auth token must be 'username:password'"))

    triggers = config.get("triggers") or []
    if not triggers:
        errors.append(FieldError("triggers", "At least one trigger is required"))
    else:
        unknown = [t for t in triggers if t not in VALID_WEBHOOK_TRIGGERS]
        if unknown:
            errors.append(FieldError("triggers", f"Unknown triggers: {', '.join(map(str, unknown))}"))

    policy = config.get("retry_policy") or {}
    max_retries = policy.get("max_retries")
    if not _is_int(max_retries) or not 0 <= max_retries <= MAX_RETRIES_LIMIT:
        errors.append(
            FieldError(
                "retry_policy.max_retries",
                f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}",
            )
        )
    if policy.get("backoff_type") not in VALID_BACKOFF_TYPES:
        errors.append(
            FieldError("retry_policy.backoff_type", "backoff_type must be exponential or linear")
        )
    initial_delay_ms = policy.get("initial_delay_ms")
    if not _is_int(initial_delay_ms) or not 0 < initial_delay_ms <= MAX_INITIAL_DELAY_MS:
        errors.append(
            FieldError(
                "retry_policy.initial_delay_ms",
                f"initial_delay_ms must be greater than 0 and at most {MAX_INITIAL_DELAY_MS}",
            )
        )

    rate_limit = config.get("rate_limit_per_minute")
    if not _is_int(rate_limit) or not 0 < rate_limit <= MAX_RATE_LIMIT_PER_MINUTE:
        errors.append(
            FieldError(
                "rate_limit_per_minute",
                f"rate_limit_per_minute must be between 1 and {MAX_RATE_LIMIT_PER_MINUTE}",
            )
        )

    return errors


class WebhookRegistry:
    """Service for storing and validating webhook definitions."""

    @staticmethod
    async def list_webhooks(
        db: AsyncSession,
        user_id: str,
        agent_id: Optional[str] = None,
        enabled: Optional[bool] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Webhook], int, int]:
        """List a user's webhooks.

        Args:
            db: Database session
            user_id: Owner
            agent_id: Only webhooks scoped to this agent
            enabled: Filter on the enabled flag
            status: active, paused, deleted or all (default: everything but deleted)
            search: Substring of the URL or name
            page: 1-based page number
            page_size: Rows per page

        Returns:
            Tuple of (webhooks, total, total_pages)
        """
        conditions = [Webhook.user_id == user_id]
        if agent_id is not None:
            conditions.append(Webhook.agent_id == agent_id)
        if enabled is not None:
            conditions.append(Webhook.enabled == enabled)
        if status is None:
            conditions.append(Webhook.status != "deleted")
        elif status != "all":
            conditions.append(Webhook.status == status)
        if search:
            pattern = f"%{search}%"
            conditions.append(Webhook.url.ilike(pattern) | Webhook.name.ilike(pattern))

        count_result = await db.execute(
            select(func.count()).select_from(Webhook).where(*conditions)
        )
        total = count_result.scalar() or 0

        result = await db.execute(
            select(Webhook)
            .where(*conditions)
            .order_by(Webhook.updated_at.desc(), Webhook.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        total_pages = math.ceil(total / page_size) if page_size else 0
        return list(result.scalars().all()), total, total_pages

    @staticmethod
    async def get_webhook(
        db: AsyncSession,
        webhook_id: int,
        user_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Webhook:
        """Get webhook by ID.

        Raises:
            WebhookNotFoundError: If missing, owned by someone else, or deleted
        """
        query = select(Webhook).where(Webhook.id == webhook_id)
        if user_id is not None:
            query = query.where(Webhook.user_id == user_id)
        result = await db.execute(query)
        webhook = result.scalar_one_or_none()

        if not webhook or (webhook.status == "deleted" and not include_deleted):
            raise WebhookNotFoundError(webhook_id)
        return webhook

    @staticmethod
    async def create_webhook(db: AsyncSession, user_id: str, data: WebhookCreate) -> Webhook:
        """Validate and store a new webhook.

        Raises:
            WebhookValidationError: Listing every violated field
        """
        config = data.model_dump()
        config["retry_policy"] = {**DEFAULT_RETRY_POLICY, **config["retry_policy"]}

        errors = validate_webhook_config(config)
        if errors:
            raise WebhookValidationError(errors)

        webhook = Webhook(
            user_id=user_id,
            agent_id=config["agent_id"],
            name=config["name"],
            url=config["url"].strip(),
            method=config["method"],
            headers=config["headers"],
            auth_type=config["auth_type"],
            auth_token=WebhookRegistry._store_token(config["auth_type"], config["auth_token"]),
            triggers=config["triggers"],
            retry_policy=config["retry_policy"],
            rate_limit_per_minute=config["rate_limit_per_minute"],
            enabled=config["enabled"],
            status="active",
        )
        db.add(webhook)
        await db.commit()
        await db.refresh(webhook)

        logger.info(
            f"Created webhook {webhook.id} for user {sanitize_log_message(user_id)} "
            f"-> {sanitize_log_message(webhook.url)}"
        )
        return webhook

    @staticmethod
    async def update_webhook(
        db: AsyncSession, webhook_id: int, user_id: str, data: WebhookUpdate
    ) -> Webhook:
        """Apply a partial update.

        The patch is merged over the stored configuration and the result is
        validated as a whole, so e.g. switching ``auth_type`` to bearer
        without supplying a token is rejected.

        Raises:
            WebhookNotFoundError: If the webhook is not visible to the user
            WebhookValidationError: Listing every violated field
        """
        webhook = await WebhookRegistry.get_webhook(db, webhook_id, user_id=user_id)
        patch = data.model_dump(exclude_unset=True)

        current_token = None
        if webhook.auth_token:
            try:
                current_token = decrypt_value(webhook.auth_token)
            except ValueError:
                logger.warning(f"Stored auth token for webhook {webhook_id} cannot be decrypted")

        config = {
            "url": webhook.url,
            "method": webhook.method,
            "headers": dict(webhook.headers or {}),
            "auth_type": webhook.auth_type,
            "auth_token": current_token,
            "triggers": list(webhook.triggers or []),
            "retry_policy": dict(webhook.retry_policy or DEFAULT_RETRY_POLICY),
            "rate_limit_per_minute": webhook.rate_limit_per_minute,
        }
        for key in config:
            if key in patch and patch[key] is not None:
                config[key] = patch[key]
        if "auth_token" in patch:
            config["auth_token"] = patch["auth_token"]
        if patch.get("retry_policy") is not None:
            # Nested fields are partial too; omitted ones keep their stored values
            config["retry_policy"] = {
                **DEFAULT_RETRY_POLICY,
                **(webhook.retry_policy or {}),
                **patch["retry_policy"],
            }

        errors = validate_webhook_config(config)
        if errors:
            raise WebhookValidationError(errors)

        webhook.url = config["url"].strip()
        webhook.method = config["method"]
        webhook.headers = config["headers"]
        webhook.auth_type = config["auth_type"]
        webhook.auth_token = WebhookRegistry._store_token(config["auth_type"], config["auth_token"])
        webhook.triggers = config["triggers"]
        webhook.retry_policy = config["retry_policy"]

        # Dispatches already in the window keep counting against the new limit
        webhook.rate_limit_per_minute = config["rate_limit_per_minute"]

        if "agent_id" in patch:
            webhook.agent_id = patch["agent_id"]
        if "name" in patch:
            webhook.name = patch["name"]
        if patch.get("enabled") is not None:
            webhook.enabled = patch["enabled"]
        if patch.get("status") is not None:
            webhook.status = patch["status"]

        await db.commit()
        await db.refresh(webhook)

        logger.info(f"Updated webhook {webhook.id} (fields: {', '.join(sorted(patch))})")
        return webhook

    @staticmethod
    async def delete_webhook(db: AsyncSession, webhook_id: int, user_id: str) -> None:
        """Soft-delete a webhook.

        Delivery logs keep referencing the row. Pending retries are cancelled
        when they fire because the webhook is no longer active.

        Raises:
            WebhookNotFoundError: If the webhook is not visible to the user
        """
        webhook = await WebhookRegistry.get_webhook(db, webhook_id, user_id=user_id)
        webhook.status = "deleted"
        webhook.enabled = False
        await db.commit()
        await webhook_rate_limiter.forget(webhook_id)
        logger.info(f"Deleted webhook {webhook_id}")

    @staticmethod
    def get_auth_token(webhook: Webhook) -> Optional[str]:
        """Decrypt the webhook's auth material.

        Raises:
            ValueError: If the stored token cannot be decrypted
        """
        if webhook.auth_type == "none" or not webhook.auth_token:
            return None
        return decrypt_value(webhook.auth_token)

    @staticmethod
    def _store_token(auth_type: str, auth_token: Optional[str]) -> Optional[str]:
        if auth_type == "none" or not auth_token:
            return None
        return encrypt_value(auth_token)
