"""Schemas for webhook configuration and management."""

from datetime import datetime
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from formhook.utils.security import mask_sensitive


# Domain event kinds a webhook can subscribe to
VALID_WEBHOOK_TRIGGERS = [
    "session_started",
    "session_completed",
    "field_collected",
    "session_updated",
]

WebhookTrigger = Literal["session_started", "session_completed", "field_collected", "session_updated"]
WebhookMethod = Literal["POST", "PUT", "PATCH"]
WebhookAuthType = Literal["none", "bearer", "basic", "hmac"]
WebhookStatus = Literal["active", "paused", "deleted"]
BackoffType = Literal["exponential", "linear"]


class RetryPolicy(BaseModel):
    """Retry policy for failed deliveries."""

    max_retries: int = Field(default=3, description="Retries after the initial attempt")
    backoff_type: BackoffType = "exponential"
    initial_delay_ms: int = Field(default=1000, description="Base delay in milliseconds")


class WebhookCreate(BaseModel):
    """Schema for creating a new webhook.

    Only shapes are checked here; semantic rules (URL form, numeric ranges,
    auth material) are enforced by the registry so that every violation is
    reported together.
    """

    agent_id: Optional[str] = Field(None, description="Agent scope; omit for a global webhook")
    name: Optional[str] = Field(None, max_length=100)
    url: str = Field(..., description="Absolute http(s) URL")
    method: WebhookMethod = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    auth_type: WebhookAuthType = "none"
    auth_token: Optional[str] = Field(None, description="Bearer token, user:pass, or HMAC secret")
    triggers: List[WebhookTrigger] = Field(default_factory=list)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    rate_limit_per_minute: int = 60
    enabled: bool = True

    @field_validator("triggers")
    @classmethod
    def dedupe_triggers(cls, v):
        """Keep first occurrence of each trigger."""
        return list(dict.fromkeys(v))


class WebhookUpdate(BaseModel):
    """Schema for patching an existing webhook."""

    agent_id: Optional[str] = None
    name: Optional[str] = Field(None, max_length=100)
    url: Optional[str] = None
    method: Optional[WebhookMethod] = None
    headers: Optional[Dict[str, str]] = None
    auth_type: Optional[WebhookAuthType] = None
    auth_token: Optional[str] = None
    triggers: Optional[List[WebhookTrigger]] = None
    retry_policy: Optional[RetryPolicy] = None
    rate_limit_per_minute: Optional[int] = None
    enabled: Optional[bool] = None
    status: Optional[Literal["active", "paused"]] = None

    @field_validator("triggers")
    @classmethod
    def dedupe_triggers(cls, v):
        if v is None:
            return v
        return list(dict.fromkeys(v))


class WebhookSchema(BaseModel):
    """Schema for webhook response.

    The auth token never leaves the service; only a masked hint is returned.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    agent_id: Optional[str] = None
    name: Optional[str] = None
    url: str
    method: str
    headers: Dict[str, str]
    auth_type: str
    auth_token_hint: Optional[str] = None
    triggers: List[str]
    retry_policy: RetryPolicy
    rate_limit_per_minute: int
    enabled: bool
    status: str
    last_successful_delivery_at: Optional[datetime] = None
    last_delivery_status: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, webhook, auth_token: Optional[str] = None) -> "WebhookSchema":
        """Build a response from a model, masking the decrypted token if given."""
        schema = cls.model_validate(webhook)
        if webhook.auth_type != "none" and webhook.auth_token:
            schema.auth_token_hint = mask_sensitive(auth_token) if auth_token else "***"
        return schema


class WebhookListResponse(BaseModel):
    """Paginated webhook list."""

    webhooks: List[WebhookSchema]
    total: int
    page: int
    page_size: int
    total_pages: int


class WebhookTestResponse(BaseModel):
    """Response from testing a webhook."""

    success: bool
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    message: str
    delivery_log_id: Optional[int] = None
