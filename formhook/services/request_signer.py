"""Build signed outbound webhook requests.

Wire contract (payload version 1):

    Body     {"version", "event", "delivery_id", "webhook_id", "session_id",
              "agent_id", "timestamp", "data"} serialized once as compact JSON
    Headers  User-Agent, X-Webhook-Event, X-Webhook-Delivery, X-Webhook-Attempt,
             then custom headers, then Content-Type and auth headers

For ``hmac`` webhooks ``X-Webhook-Signature`` is the hex HMAC-SHA256 of the
exact body bytes and ``X-Webhook-Timestamp`` carries the send time in unix
seconds. The body signature alone does not cover the timestamp, so an
attacker replaying a captured request can pair it with a fresh timestamp.
``X-Webhook-Timestamp-Signature`` signs ``"<timestamp>." + body``; receivers
that enforce a replay window should check that one
(``verify_timestamped_signature``).
"""

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from formhook.models.webhook import Webhook

PAYLOAD_VERSION = "1"
USER_AGENT = "FormHook-Webhook/1.0"
SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_ALGORITHM_HEADER = "X-Webhook-Signature-Algorithm"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
TIMESTAMPED_SIGNATURE_HEADER = "X-Webhook-Timestamp-Signature"
REPLAY_TOLERANCE_SECONDS = 300


@dataclass
class OutboundRequest:
    """A fully prepared HTTP request for one delivery attempt."""

    url: str
    method: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def build_payload(
    event_kind: str,
    delivery_id: str,
    webhook_id: int,
    session_id: Optional[str],
    agent_id: Optional[str],
    timestamp: str,
    data: Dict[str, Any],
) -> Dict[str, Any]:
    """Assemble the versioned event envelope sent to receivers."""
    return {
        "version": PAYLOAD_VERSION,
        "event": event_kind,
        "delivery_id": delivery_id,
        "webhook_id": webhook_id,
        "session_id": session_id,
        "agent_id": agent_id,
        "timestamp": timestamp,
        "data": data,
    }


def serialize_payload(payload: Dict[str, Any]) -> bytes:
    """Serialize a payload deterministically; signatures are computed over these bytes."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def generate_signature(body: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a webhook body.

    Args:
        body: Raw request body bytes
        secret: Shared secret

    Returns:
        Hex-encoded signature
    """
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Constant-time check of a signature against a body (receiver side)."""
    expected = generate_signature(body, secret)
    return hmac.compare_digest(expected, signature)


def timestamped_content(body: bytes, timestamp: int) -> bytes:
    return f"{timestamp}.".encode("ascii") + body


def verify_timestamped_signature(
    body: bytes,
    secret: str,
    timestamp: str,
    signature: str,
    tolerance_seconds: int = REPLAY_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Receiver-side check of ``X-Webhook-Timestamp-Signature``.

    Fails when the timestamp is malformed, further than ``tolerance_seconds``
    from ``now``, or not the one that was signed.
    """
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = now if now is not None else time.time()
    if abs(current - sent_at) > tolerance_seconds:
        return False
    expected = generate_signature(timestamped_content(body, sent_at), secret)
    return hmac.compare_digest(expected, signature)


def basic_credentials(auth_token: str) -> str:
    """Encode ``username:password`` for a Basic Authorization header."""
    return base64.b64encode(auth_token.encode("utf-8")).decode("ascii")


def auth_headers(
    auth_type: str, auth_token: Optional[str], body: bytes, now: Optional[float] = None
) -> Dict[str, str]:
    """Headers derived from the webhook's auth scheme.

    Args:
        auth_type: none, bearer, basic or hmac
        auth_token: Decrypted auth material
        body: Raw request body (signed for hmac)
        now: Unix time for the timestamp header (defaults to current time)

    Returns:
        Header mapping (empty for ``none`` or missing material)
    """
    if auth_type == "none" or not auth_token:
        return {}

    if auth_type == "bearer":
        return {"Authorization": f"Bearer {auth_token}"}

    if auth_type == "basic":
        return {"Authorization": f"Basic {basic_credentials(auth_token)}"}

    if auth_type == "hmac":
        timestamp = int(now if now is not None else time.time())
        return {
            SIGNATURE_HEADER: generate_signature(body, auth_token),
            SIGNATURE_ALGORITHM_HEADER: "sha256",
            TIMESTAMP_HEADER: str(timestamp),
            TIMESTAMPED_SIGNATURE_HEADER: generate_signature(
                timestamped_content(body, timestamp), auth_token
            ),
        }

    raise ValueError(f"Unknown auth type: {auth_type}")


def merge_headers(*layers: Dict[str, str]) -> Dict[str, str]:
    """Merge header layers case-insensitively; later layers win.

    The casing of the winning layer is kept.
    """
    merged: Dict[str, str] = {}
    names: Dict[str, str] = {}
    for layer in layers:
        for name, value in layer.items():
            key = name.lower()
            if key in names:
                del merged[names[key]]
            names[key] = name
            merged[name] = value
    return merged


def build_request(
    webhook: Webhook,
    payload: Dict[str, Any],
    auth_token: Optional[str] = None,
    attempt_number: int = 1,
    now: Optional[float] = None,
) -> OutboundRequest:
    """Prepare the outbound request for a webhook and payload.

    Args:
        webhook: Target webhook
        payload: Event envelope (see ``build_payload``)
        auth_token: Decrypted auth material for the webhook
        attempt_number: Attempt number, echoed in ``X-Webhook-Attempt``
        now: Unix time used for the HMAC timestamp header

    Returns:
        OutboundRequest with auth headers taking precedence over custom headers
    """
    body = serialize_payload(payload)

    base = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Webhook-Event": str(payload.get("event", "")),
        "X-Webhook-Delivery": str(payload.get("delivery_id", "")),
        "X-Webhook-Attempt": str(attempt_number),
    }
    custom = dict(webhook.headers or {})
    auth = auth_headers(webhook.auth_type or "none", auth_token, body, now=now)

    return OutboundRequest(
        url=webhook.url,
        method=(webhook.method or "POST").upper(),
        # The body is always JSON, so Content-Type is not overridable
        headers=merge_headers(base, custom, {"Content-Type": "application/json"}, auth),
        body=body,
    )
