"""Tests for the delivery executor (formhook/services/delivery_executor.py).

Tests one-attempt-per-row delivery with retries driven through the retry
scheduler:
- Success, non-2xx, timeout and network outcomes
- Retry chains with exponential backoff and exhaustion
- Rate-limit deferrals that never consume the retry budget
- Independence of webhooks subscribed to the same event
- Test deliveries (single shot, no retries)
- Audit snapshots (masked request headers, captured response)
"""

import json
from datetime import timedelta

import httpx

from formhook.services.delivery_executor import DeliveryExecutor
from formhook.services.delivery_log_store import DeliveryLogStore
from formhook.services.request_signer import serialize_payload
from formhook.services.webhook_rate_limiter import WebhookRateLimiter
from formhook.services.settings_service import SettingsService
from formhook.utils.clock import as_utc


def retry_delay(log) -> timedelta:
    return as_utc(log.next_retry_at) - as_utc(log.completed_at)


class FakeClock:
    def __init__(self):
        self.now = 5000.0

    def __call__(self):
        return self.now


async def add(db, webhook):
    db.add(webhook)
    await db.commit()
    return webhook


class TestSuccessfulDelivery:
    """Test suite for 2xx outcomes."""

    async def test_success_records_one_row(self, db, executor, receiver, make_webhook, make_event):
        webhook = await add(db, make_webhook())

        log = await executor.dispatch(db, webhook, make_event())

        assert log.status == "success"
        assert log.attempt_number == 1
        assert log.will_retry is False
        assert log.response_code == 200
        assert json.loads(log.response_body) == {"received": True}
        assert log.response_headers["x-receiver"] == "fake"
        assert log.duration_ms is not None
        assert len(receiver.requests) == 1

    async def test_success_updates_webhook_status(self, db, executor, make_webhook, make_event):
        webhook = await add(db, make_webhook(last_error="old failure"))

        await executor.dispatch(db, webhook, make_event())

        assert webhook.last_delivery_status == "success"
        assert webhook.last_successful_delivery_at is not None
        assert webhook.last_error is None

    async def test_request_carries_payload_and_headers(self, db, executor, receiver, make_webhook, make_event):
        """Test the receiver sees the event envelope and delivery headers."""
        webhook = await add(db, make_webhook())
        event = make_event()

        log = await executor.dispatch(db, webhook, event)

        request = receiver.requests[0]
        body = json.loads(request.content)
        assert body["event"] == "session_completed"
        assert body["session_id"] == "session-1"
        assert body["data"] == event.payload
        assert body["delivery_id"] == log.delivery_id
        assert request.headers["X-Webhook-Delivery"] == log.delivery_id
        assert request.headers["X-Webhook-Attempt"] == "1"
        assert request.headers["Content-Type"] == "application/json"

    async def test_stored_headers_are_masked(self, db, executor, receiver, make_webhook, make_event):
        """Test auth material never lands in the audit snapshot."""
        webhook = await add(db, make_webhook(auth_type="bearer", auth_token="tok_secret_value"))

        log = await executor.dispatch(db, webhook, make_event())

        assert receiver.requests[0].headers["Authorization"] == "Bearer tok_secret_value"
        assert log.request_headers["Authorization"].startswith("Bearer ")
        assert "tok_secret_value" not in json.dumps(log.request_headers)


class TestFailedDelivery:
    """Test suite for failures and retry chains."""

    async def test_no_retries_single_failed_row(
        self, db, executor, receiver, apscheduler, make_webhook, make_event
    ):
        """Test max_retries=0 with a 500 gives exactly one failed row."""
        webhook = await add(
            db,
            make_webhook(
                retry_policy={"max_retries": 0, "backoff_type": "exponential", "initial_delay_ms": 1000}
            ),
        )
        receiver.queue(500)

        log = await executor.dispatch(db, webhook, make_event())

        chain = await DeliveryLogStore.get_chain(db, log.delivery_id)
        assert len(chain) == 1
        assert log.status == "failed"
        assert log.will_retry is False
        assert log.error_type == "non-2xx"
        assert log.response_code == 500
        assert webhook.last_delivery_status == "failed"
        apscheduler.add_job.assert_not_called()

    async def test_exponential_chain_until_exhaustion(
        self, db, executor, retries, receiver, apscheduler, make_webhook, make_event
    ):
        """Test max_retries=2 gives three rows with 500ms then 1000ms delays."""
        webhook = await add(
            db,
            make_webhook(
                retry_policy={"max_retries": 2, "backoff_type": "exponential", "initial_delay_ms": 500}
            ),
        )
        receiver.queue(500, 500, 500)

        first = await executor.dispatch(db, webhook, make_event())
        assert first.status == "retrying"
        assert first.will_retry is True
        assert abs(retry_delay(first).total_seconds() * 1000 - 500) < 250
        assert apscheduler.add_job.call_args[1]["id"] == f"webhook_retry_{first.id}"

        second = await retries.resume_delivery(db, first.id)
        assert second.attempt_number == 2
        assert second.status == "retrying"
        assert abs(retry_delay(second).total_seconds() * 1000 - 1000) < 250

        third = await retries.resume_delivery(db, second.id)
        assert third.attempt_number == 3
        assert third.status == "failed"
        assert third.will_retry is False

        chain = await DeliveryLogStore.get_chain(db, first.delivery_id)
        assert [row.attempt_number for row in chain] == [1, 2, 3]
        assert [row.will_retry for row in chain] == [True, True, False]
        assert len(receiver.requests) == 3
        assert webhook.last_delivery_status == "failed"
        assert "Gave up after 3 attempts" in webhook.last_error

    async def test_retry_succeeds_midway(self, db, executor, retries, receiver, make_webhook, make_event):
        webhook = await add(db, make_webhook())
        receiver.queue(503, 200)

        first = await executor.dispatch(db, webhook, make_event())
        second = await retries.resume_delivery(db, first.id)

        assert first.status == "retrying"
        assert second.status == "success"
        assert second.attempt_number == 2
        assert webhook.last_delivery_status == "success"

    async def test_retries_resend_identical_body(self, db, executor, retries, receiver, make_webhook, make_event):
        """Test the body is frozen at the first attempt."""
        webhook = await add(db, make_webhook())
        receiver.queue(500, 200)

        first = await executor.dispatch(db, webhook, make_event())
        await retries.resume_delivery(db, first.id)

        assert receiver.requests[0].content == receiver.requests[1].content
        assert receiver.requests[1].headers["X-Webhook-Attempt"] == "2"
        assert receiver.requests[0].content == serialize_payload(first.request_payload)

    async def test_timeout_is_classified(self, db, executor, receiver, make_webhook, make_event):
        webhook = await add(db, make_webhook())
        receiver.queue(httpx.ReadTimeout("timed out"))

        log = await executor.dispatch(db, webhook, make_event())

        assert log.status == "retrying"
        assert log.error_type == "timeout"
        assert log.response_code is None
        assert log.response_body is None

    async def test_network_error_is_classified(self, db, executor, receiver, make_webhook, make_event):
        webhook = await add(db, make_webhook())
        receiver.queue(httpx.ConnectError("connection refused"))

        log = await executor.dispatch(db, webhook, make_event())

        assert log.status == "retrying"
        assert log.error_type == "network"
        assert "connection refused" in log.error_message

    async def test_client_errors_terminal_when_configured(self, db, executor, receiver, make_webhook, make_event):
        """Test 4xx fails immediately when client-error retries are off."""
        await SettingsService.set(db, "webhook_retry_client_errors", "false")
        webhook = await add(db, make_webhook())
        receiver.queue(404, 429)

        not_found = await executor.dispatch(db, webhook, make_event())
        throttled = await executor.dispatch(db, webhook, make_event())

        assert not_found.status == "failed"
        assert throttled.status == "retrying"

    async def test_client_errors_retry_by_default(self, db, executor, receiver, make_webhook, make_event):
        webhook = await add(db, make_webhook())
        receiver.queue(400)

        log = await executor.dispatch(db, webhook, make_event())

        assert log.status == "retrying"

    async def test_undecryptable_token_is_auth_failure(self, db, executor, receiver, make_webhook, make_event):
        webhook = make_webhook(auth_type="bearer")
        webhook.auth_token = "not-a-fernet-token"
        await add(db, webhook)

        log = await executor.dispatch(db, webhook, make_event())

        assert log.error_type == "auth"
        assert receiver.requests == []


class TestIndependentWebhooks:
    """Test suite for fan-out independence."""

    async def test_failure_of_one_does_not_affect_other(self, db, retries, make_webhook, make_event):
        def handle(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500 if request.url.host == "down.example.com" else 200)

        executor = DeliveryExecutor(
            WebhookRateLimiter(), retries, transport=httpx.MockTransport(handle), timeout=5.0
        )
        retries.bind(executor)
        no_retry = {"max_retries": 0, "backoff_type": "linear", "initial_delay_ms": 1000}
        failing = await add(db, make_webhook(url="https://down.example.com/hook", retry_policy=no_retry))
        healthy = await add(db, make_webhook(url="https://up.example.com/hook", retry_policy=no_retry))
        event = make_event()

        failed_log = await executor.dispatch(db, failing, event)
        ok_log = await executor.dispatch(db, healthy, event)

        assert failed_log.status == "failed"
        assert ok_log.status == "success"
        assert failed_log.delivery_id != ok_log.delivery_id
        assert failed_log.webhook_id == failing.id
        assert ok_log.webhook_id == healthy.id


class TestRateLimitedDelivery:
    """Test suite for rate-limit deferrals."""

    async def test_denied_attempt_is_deferred(self, db, executor, receiver, apscheduler, make_webhook, make_event):
        webhook = await add(db, make_webhook(rate_limit_per_minute=1))

        await executor.dispatch(db, webhook, make_event())
        deferred = await executor.dispatch(db, webhook, make_event())

        assert deferred.status == "retrying"
        assert deferred.error_type == "rate_limited"
        assert deferred.error_message == "Rate limit of 1/min exceeded"
        assert deferred.will_retry is True
        assert deferred.attempt_number == 1
        assert deferred.throttle_count == 1
        assert deferred.request_headers == {}
        assert retry_delay(deferred) >= timedelta(seconds=1)
        assert len(receiver.requests) == 1
        assert apscheduler.add_job.call_args[1]["id"] == f"webhook_retry_{deferred.id}"

    async def test_deferral_does_not_consume_retry_budget(
        self, db, retries, receiver, make_webhook, make_event
    ):
        """Test a throttled delivery with max_retries=0 still gets its one real attempt."""
        clock = FakeClock()
        executor = DeliveryExecutor(
            WebhookRateLimiter(clock=clock), retries, transport=receiver.transport, timeout=5.0
        )
        retries.bind(executor)
        webhook = await add(
            db,
            make_webhook(
                rate_limit_per_minute=1,
                retry_policy={"max_retries": 0, "backoff_type": "linear", "initial_delay_ms": 1000},
            ),
        )
        receiver.queue(200, 500)

        await executor.dispatch(db, webhook, make_event())
        deferred = await executor.dispatch(db, webhook, make_event())
        assert deferred.status == "retrying"

        clock.now += 61
        attempt = await retries.resume_delivery(db, deferred.id)

        assert attempt.attempt_number == 1
        assert attempt.throttle_count == 1
        assert attempt.status == "failed"
        assert attempt.error_type == "non-2xx"
        assert attempt.delivery_id == deferred.delivery_id

    async def test_delay_respects_floor_setting(self, db, executor, make_webhook, make_event):
        await SettingsService.set(db, "webhook_rate_limit_min_delay_ms", "120000")
        webhook = await add(db, make_webhook(rate_limit_per_minute=1))

        await executor.dispatch(db, webhook, make_event())
        deferred = await executor.dispatch(db, webhook, make_event())

        assert retry_delay(deferred) >= timedelta(seconds=119)

    async def test_delay_follows_limiter_hint_above_floor(
        self, db, retries, receiver, make_webhook, make_event
    ):
        """Test the deferral waits until the oldest dispatch leaves the window."""
        clock = FakeClock()
        executor = DeliveryExecutor(
            WebhookRateLimiter(clock=clock), retries, transport=receiver.transport, timeout=5.0
        )
        webhook = await add(db, make_webhook(rate_limit_per_minute=1))

        await executor.dispatch(db, webhook, make_event())
        clock.now += 15
        deferred = await executor.dispatch(db, webhook, make_event())

        assert timedelta(seconds=44) <= retry_delay(deferred) <= timedelta(seconds=46)
        assert deferred.error_type == "rate_limited"


class TestSendTest:
    """Test suite for single-shot test deliveries."""

    async def test_test_delivery_never_retries(self, db, executor, receiver, apscheduler, make_webhook):
        webhook = await add(db, make_webhook())
        receiver.queue(500)

        log = await executor.send_test(db, webhook)

        assert log.status == "failed"
        assert log.will_retry is False
        assert log.session_id is None
        assert log.event_kind == "test"
        assert receiver.requests[0].headers["X-Webhook-Event"] == "test"
        apscheduler.add_job.assert_not_called()

    async def test_test_delivery_rate_limited_fails(self, db, executor, make_webhook):
        webhook = await add(db, make_webhook(rate_limit_per_minute=1))

        await executor.send_test(db, webhook)
        log = await executor.send_test(db, webhook)

        assert log.status == "failed"
        assert log.error_type == "rate_limited"
        assert log.will_retry is False
