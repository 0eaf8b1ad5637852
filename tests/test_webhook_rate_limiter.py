"""Tests for the per-webhook rate limiter (formhook/services/webhook_rate_limiter.py).

Covers:
- Sliding 60-second window accounting
- retry_after_ms computed from the oldest dispatch in the window
- Independence between webhooks
- Concurrent acquires never over-admit
"""

import asyncio

from formhook.services.webhook_rate_limiter import WebhookRateLimiter


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestTryAcquire:
    """Test suite for try_acquire()."""

    async def test_allows_up_to_limit(self):
        """Test exactly limit_per_minute dispatches are admitted."""
        limiter = WebhookRateLimiter(clock=FakeClock())

        decisions = [await limiter.try_acquire(1, 3) for _ in range(3)]

        assert all(d.allowed for d in decisions)
        assert limiter.in_window(1) == 3

    async def test_denies_over_limit_with_retry_after(self):
        """Test the next dispatch is denied until the oldest leaves the window."""
        clock = FakeClock()
        limiter = WebhookRateLimiter(clock=clock)

        await limiter.try_acquire(1, 2)
        clock.advance(10)
        await limiter.try_acquire(1, 2)
        clock.advance(5)

        decision = await limiter.try_acquire(1, 2)

        assert decision.allowed is False
        # Oldest dispatch was 15s ago, so 45s remain in its window
        assert decision.retry_after_ms == 45000

    async def test_window_slides(self):
        """Test capacity returns once the oldest dispatch is 60s old."""
        clock = FakeClock()
        limiter = WebhookRateLimiter(clock=clock)

        await limiter.try_acquire(1, 1)
        assert (await limiter.try_acquire(1, 1)).allowed is False

        clock.advance(60.001)
        assert (await limiter.try_acquire(1, 1)).allowed is True

    async def test_denied_dispatch_does_not_consume(self):
        """Test denials are not recorded in the window."""
        clock = FakeClock()
        limiter = WebhookRateLimiter(clock=clock)

        await limiter.try_acquire(1, 1)
        for _ in range(5):
            await limiter.try_acquire(1, 1)

        assert limiter.in_window(1) == 1

    async def test_webhooks_are_independent(self):
        """Test one webhook's budget does not affect another's."""
        limiter = WebhookRateLimiter(clock=FakeClock())

        await limiter.try_acquire(1, 1)

        assert (await limiter.try_acquire(1, 1)).allowed is False
        assert (await limiter.try_acquire(2, 1)).allowed is True

    async def test_concurrent_acquires_respect_limit(self):
        """Test concurrent dispatches for one webhook never exceed the limit."""
        limiter = WebhookRateLimiter(clock=FakeClock())

        decisions = await asyncio.gather(*(limiter.try_acquire(1, 5) for _ in range(20)))

        assert sum(1 for d in decisions if d.allowed) == 5

    async def test_forget_clears_window(self):
        """Test forget() drops the state of a deleted webhook."""
        limiter = WebhookRateLimiter(clock=FakeClock())
        await limiter.try_acquire(1, 1)

        await limiter.forget(1)

        assert limiter.in_window(1) == 0
        assert (await limiter.try_acquire(1, 1)).allowed is True

    async def test_lowered_limit_counts_existing_window(self):
        """Test dispatches made under the old limit count against a lower new one."""
        limiter = WebhookRateLimiter(clock=FakeClock())
        for _ in range(3):
            assert (await limiter.try_acquire(1, 10)).allowed is True

        decision = await limiter.try_acquire(1, 2)

        assert decision.allowed is False
        assert limiter.in_window(1) == 3


class TestMetrics:
    """Test suite for limiter counters."""

    async def test_counts_allowed_and_denied(self):
        limiter = WebhookRateLimiter(clock=FakeClock())
        await limiter.try_acquire(1, 1)
        await limiter.try_acquire(1, 1)

        assert limiter.get_metrics() == {1: {"allowed": 1, "denied": 1}}

        limiter.reset_metrics()
        assert limiter.get_metrics() == {}
