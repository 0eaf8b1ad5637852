"""Delivery executor: one webhook delivery attempt, end to end.

Per attempt:

1. Ask the rate limiter for a slot. A denial is logged as ``retrying`` with
   ``error_type=rate_limited`` and deferred by the limiter's suggested delay
   without touching the retry budget.
2. Build the signed request.
3. Send it with a hard timeout.
4. Classify: 2xx is success; timeouts, network errors and other statuses are
   failures.
5. Persist the outcome and hand retryable failures to the retry scheduler.

Every attempt produces exactly one delivery log row. Nothing in here raises
to the event source for a delivery failure.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.exceptions import (
    AuthMaterialError,
    DeliveryError,
    DeliveryTimeoutError,
    ExhaustedError,
    HTTPStatusError,
    NetworkError,
    RateLimitedError,
)
from formhook.models.delivery_log import DeliveryLog
from formhook.models.webhook import Webhook
from formhook.schemas.event import DomainEvent
from formhook.services import metrics
from formhook.services.delivery_log_store import DeliveryLogStore
from formhook.services.request_signer import build_payload, build_request
from formhook.services.retry_scheduler import RetryScheduler, retry_scheduler
from formhook.services.settings_service import SettingsService
from formhook.services.webhook_rate_limiter import WebhookRateLimiter, webhook_rate_limiter
from formhook.services.webhook_registry import WebhookRegistry
from formhook.utils.clock import utcnow
from formhook.utils.security import mask_headers, sanitize_log_message

logger = logging.getLogger(__name__)

TEST_EVENT_KIND = "test"

# 4xx codes that stay retryable when client errors are configured as terminal
RETRYABLE_CLIENT_ERRORS = (408, 429)


class DeliveryExecutor:
    """Runs delivery attempts against webhook endpoints."""

    def __init__(
        self,
        rate_limiter: WebhookRateLimiter,
        retry_scheduler: RetryScheduler,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Initialize delivery executor.

        Args:
            rate_limiter: Per-webhook limiter consulted before every send
            retry_scheduler: Receives retryable failures
            transport: Custom httpx transport (tests use ``httpx.MockTransport``)
            timeout: Fixed request timeout in seconds; defaults to the
                ``webhook_request_timeout`` setting
        """
        self.rate_limiter = rate_limiter
        self.retry_scheduler = retry_scheduler
        self.transport = transport
        self.timeout = timeout

    async def dispatch(self, db: AsyncSession, webhook: Webhook, event: DomainEvent) -> DeliveryLog:
        """Start a new logical delivery of an event to one webhook."""
        delivery_id = str(uuid4())
        payload = build_payload(
            event_kind=event.kind,
            delivery_id=delivery_id,
            webhook_id=webhook.id,
            session_id=event.session_id,
            agent_id=event.agent_id,
            timestamp=event.occurred_at.isoformat(),
            data=event.payload,
        )
        return await self.attempt(
            db,
            webhook,
            payload=payload,
            delivery_id=delivery_id,
            event_kind=event.kind,
            session_id=event.session_id,
            attempt_number=1,
        )

    async def redeliver(self, db: AsyncSession, webhook: Webhook, source: DeliveryLog) -> DeliveryLog:
        """Re-send a previously delivered payload as a fresh logical delivery.

        The event data is kept; ``delivery_id`` and ``timestamp`` are new.
        """
        delivery_id = str(uuid4())
        stored = dict(source.request_payload or {})
        payload = build_payload(
            event_kind=source.event_kind,
            delivery_id=delivery_id,
            webhook_id=webhook.id,
            session_id=source.session_id,
            agent_id=stored.get("agent_id"),
            timestamp=utcnow().isoformat(),
            data=stored.get("data", {}),
        )
        return await self.attempt(
            db,
            webhook,
            payload=payload,
            delivery_id=delivery_id,
            event_kind=source.event_kind,
            session_id=source.session_id,
            attempt_number=1,
        )

    async def send_test(self, db: AsyncSession, webhook: Webhook) -> DeliveryLog:
        """Send a synthetic event once, without scheduling retries."""
        delivery_id = str(uuid4())
        payload = build_payload(
            event_kind=TEST_EVENT_KIND,
            delivery_id=delivery_id,
            webhook_id=webhook.id,
            session_id=None,
            agent_id=webhook.agent_id,
            timestamp=utcnow().isoformat(),
            data={
                "message": "This is a test webhook from FormHook",
                "webhook_id": webhook.id,
                "webhook_name": webhook.name,
            },
        )
        return await self.attempt(
            db,
            webhook,
            payload=payload,
            delivery_id=delivery_id,
            event_kind=TEST_EVENT_KIND,
            session_id=None,
            attempt_number=1,
            allow_retry=False,
        )

    async def attempt(
        self,
        db: AsyncSession,
        webhook: Webhook,
        *,
        payload: Dict[str, Any],
        delivery_id: str,
        event_kind: str,
        session_id: Optional[str],
        attempt_number: int,
        throttle_count: int = 0,
        allow_retry: bool = True,
    ) -> DeliveryLog:
        """Run one delivery attempt and persist its outcome.

        Args:
            db: Database session
            webhook: Target webhook
            payload: Event envelope, identical across a chain's attempts
            delivery_id: Logical delivery id shared by the chain
            event_kind: Event kind (``test`` for test deliveries)
            session_id: Session the event belongs to
            attempt_number: 1 for the initial attempt, N+1 for the Nth retry
            throttle_count: Rate-limit deferrals so far in the chain
            allow_retry: False for single-shot test deliveries

        Returns:
            The attempt's delivery log row
        """
        log = await DeliveryLogStore.create_pending(
            db,
            webhook,
            delivery_id=delivery_id,
            event_kind=event_kind,
            session_id=session_id,
            attempt_number=attempt_number,
            throttle_count=throttle_count,
            request_payload=payload,
        )

        decision = await self.rate_limiter.try_acquire(webhook.id, webhook.rate_limit_per_minute)
        if not decision.allowed:
            throttled = RateLimitedError(decision.retry_after_ms or 0, webhook.rate_limit_per_minute)
            return await self._defer_rate_limited(db, webhook, log, throttled, allow_retry)

        error: Optional[DeliveryError] = None
        response: Optional[httpx.Response] = None
        started = time.monotonic()

        try:
            auth_token = WebhookRegistry.get_auth_token(webhook)
        except ValueError as e:
            error = AuthMaterialError(str(e))
        else:
            request = build_request(
                webhook, payload, auth_token=auth_token, attempt_number=attempt_number
            )
            log.request_headers = mask_headers(request.headers)
            timeout = await self._get_timeout(db)

            try:
                response = await asyncio.wait_for(
                    self._send(request.method, request.url, request.headers, request.body, timeout),
                    timeout=timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                error = DeliveryTimeoutError(f"Request timed out after {timeout:g}s")
            except httpx.RequestError as e:
                error = NetworkError(f"Request error: {type(e).__name__}: {e}")

        elapsed = time.monotonic() - started
        log.completed_at = utcnow()
        log.duration_ms = int(elapsed * 1000)

        if response is not None:
            max_body = await SettingsService.get_int(db, "webhook_max_response_body", default=10000)
            log.response_code = response.status_code
            log.response_body = response.text[:max_body]
            log.response_headers = dict(response.headers)
            metrics.delivery_duration.observe(elapsed)
            if not 200 <= response.status_code < 300:
                error = HTTPStatusError(
                    f"HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )

        if error is None:
            return await self._complete_success(db, webhook, log)
        return await self._complete_failure(db, webhook, log, error, allow_retry)

    async def _send(
        self, method: str, url: str, headers: Dict[str, str], body: bytes, timeout: float
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=timeout, transport=self.transport, follow_redirects=False
        ) as client:
            return await client.request(method, url, headers=headers, content=body)

    async def _get_timeout(self, db: AsyncSession) -> float:
        if self.timeout is not None:
            return self.timeout
        seconds = await SettingsService.get_int(db, "webhook_request_timeout", default=15)
        return float(min(max(seconds, 1), 120))

    async def _defer_rate_limited(
        self,
        db: AsyncSession,
        webhook: Webhook,
        log: DeliveryLog,
        error: RateLimitedError,
        allow_retry: bool,
    ) -> DeliveryLog:
        """Complete a throttled attempt; the chain resumes under the same attempt number."""
        floor_ms = await SettingsService.get_int(db, "webhook_rate_limit_min_delay_ms", default=1000)
        delay_ms = max(error.retry_after_ms, floor_ms)

        log.completed_at = utcnow()
        log.duration_ms = 0
        log.error_type = error.error_type
        log.error_message = str(error)
        log.throttle_count = (log.throttle_count or 0) + 1

        if not allow_retry:
            log.status = "failed"
            log.will_retry = False
            await db.commit()
            await db.refresh(log)
            metrics.deliveries_total.labels(outcome="rate_limited").inc()
            return log

        next_retry_at = self.retry_scheduler.schedule_retry(
            webhook, log, log.attempt_number, base_delay_ms=delay_ms
        )
        await db.commit()
        await db.refresh(log)
        metrics.deliveries_total.labels(outcome="rate_limited").inc()
        self.retry_scheduler.arm(log.id, next_retry_at)

        logger.info(
            f"Webhook {webhook.id} rate limited; attempt {log.attempt_number} of delivery "
            f"{log.delivery_id} deferred {delay_ms}ms"
        )
        return log

    async def _complete_success(self, db: AsyncSession, webhook: Webhook, log: DeliveryLog) -> DeliveryLog:
        log.status = "success"
        log.will_retry = False
        log.next_retry_at = None

        webhook.last_successful_delivery_at = log.completed_at
        webhook.last_delivery_status = "success"
        webhook.last_error = None

        await db.commit()
        await db.refresh(log)
        metrics.deliveries_total.labels(outcome="success").inc()

        logger.info(
            f"Webhook {webhook.id} delivered {log.event_kind} "
            f"(delivery {log.delivery_id}, attempt {log.attempt_number}, "
            f"HTTP {log.response_code}, {log.duration_ms}ms)"
        )
        return log

    async def _complete_failure(
        self,
        db: AsyncSession,
        webhook: Webhook,
        log: DeliveryLog,
        error: DeliveryError,
        allow_retry: bool,
    ) -> DeliveryLog:
        log.error_type = error.error_type
        log.error_message = str(error)

        retryable = (
            allow_retry
            and log.attempt_number < webhook.max_retries + 1
            and await self._is_retryable(db, error)
        )

        if retryable:
            next_retry_at = self.retry_scheduler.schedule_retry(webhook, log, log.attempt_number)
            await db.commit()
            await db.refresh(log)
            metrics.deliveries_total.labels(outcome="retrying").inc()
            self.retry_scheduler.arm(log.id, next_retry_at)
            logger.warning(
                f"Webhook {webhook.id} attempt {log.attempt_number} failed "
                f"({log.error_type}): {sanitize_log_message(log.error_message)}"
            )
            return log

        log.status = "failed"
        log.will_retry = False
        log.next_retry_at = None

        if allow_retry and log.attempt_number > 1:
            error = ExhaustedError(
                f"Gave up after {log.attempt_number} attempts: {error}", error.error_type
            )
        webhook.last_delivery_status = "failed"
        webhook.last_error = str(error)

        await db.commit()
        await db.refresh(log)
        metrics.deliveries_total.labels(outcome="failed").inc()
        if allow_retry:
            metrics.retry_chains_exhausted_total.inc()

        logger.error(
            f"Webhook {webhook.id} delivery {log.delivery_id} failed after "
            f"{log.attempt_number} attempt(s) ({log.error_type}): "
            f"{sanitize_log_message(str(error))}"
        )
        return log

    async def _is_retryable(self, db: AsyncSession, error: DeliveryError) -> bool:
        if not isinstance(error, HTTPStatusError) or error.status_code is None:
            return True
        if not 400 <= error.status_code < 500 or error.status_code in RETRYABLE_CLIENT_ERRORS:
            return True
        return await SettingsService.get_bool(db, "webhook_retry_client_errors", default=True)


delivery_executor = DeliveryExecutor(webhook_rate_limiter, retry_scheduler)
retry_scheduler.bind(delivery_executor)
