"""Custom exceptions for FormHook."""

from dataclasses import dataclass
from typing import List, Optional


class SSRFProtectionError(Exception):
    """Raised when a URL fails SSRF (Server-Side Request Forgery) validation.

    Indicates the URL points to a private/internal resource (localhost,
    private IPs, cloud metadata endpoints) or uses a disallowed scheme.
    """
    pass


@dataclass
class FieldError:
    """A single violated field in a webhook configuration."""

    field: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class WebhookValidationError(Exception):
    """Raised when a webhook configuration is malformed.

    Carries every violated field, not just the first one found, so the
    dashboard can highlight all problems at once.
    """

    def __init__(self, errors: List[FieldError]):
        self.errors = errors
        fields = ", ".join(e.field for e in errors)
        super().__init__(f"Invalid webhook configuration: {fields}")

    @property
    def fields(self) -> List[str]:
        return [e.field for e in self.errors]


class WebhookNotFoundError(Exception):
    """Raised when a webhook does not exist (or is not visible to the caller)."""

    def __init__(self, webhook_id: int):
        self.webhook_id = webhook_id
        super().__init__(f"Webhook with ID {webhook_id} not found")


class WebhookInactiveError(Exception):
    """Raised when an operation needs an active, enabled webhook."""

    def __init__(self, webhook_id: int, status: str):
        self.webhook_id = webhook_id
        self.status = status
        super().__init__(f"Webhook {webhook_id} is not active (status: {status})")


class DeliveryNotFoundError(Exception):
    """Raised when a delivery log or a deliverable session event cannot be found."""
    pass


class DeliveryError(Exception):
    """Base class for per-attempt delivery failures.

    ``error_type`` is the value persisted on the delivery log row.
    """

    error_type = "network"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class NetworkError(DeliveryError):
    """Connection refused, DNS failure, TLS failure."""

    error_type = "network"


class DeliveryTimeoutError(DeliveryError):
    """The request exceeded the configured timeout."""

    error_type = "timeout"


class HTTPStatusError(DeliveryError):
    """The endpoint answered with a non-2xx status."""

    error_type = "non-2xx"


class AuthMaterialError(DeliveryError):
    """Auth material for the webhook could not be prepared (e.g. undecryptable token)."""

    error_type = "auth"


class RateLimitedError(DeliveryError):
    """Internal throttling; never counts against the retry budget."""

    error_type = "rate_limited"

    def __init__(self, retry_after_ms: int, limit_per_minute: int):
        self.retry_after_ms = retry_after_ms
        self.limit_per_minute = limit_per_minute
        super().__init__(f"Rate limit of {limit_per_minute}/min exceeded")


class ExhaustedError(DeliveryError):
    """Terminal failure after max_retries retries."""

    def __init__(self, message: str, error_type: str):
        super().__init__(message)
        self.error_type = error_type
