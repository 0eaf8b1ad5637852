"""Per-webhook rate limiting for outbound deliveries.

Sliding 60-second window counter keyed by webhook id. Unlike a blocking
limiter, a denied acquire returns immediately with the time until the oldest
dispatch in the window expires; the executor turns that into a deferred retry.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


@dataclass
class RateLimitDecision:
    """Outcome of a rate limit check.

    Attributes:
        allowed: Whether the dispatch may proceed now
        retry_after_ms: Milliseconds until a slot frees up (only when denied)
    """

    allowed: bool
    retry_after_ms: int | None = None


@dataclass
class WindowState:
    """Sliding window state for a single webhook.

    Attributes:
        request_times: Monotonic timestamps of dispatches in the window
        lock: Serializes check-and-record so concurrent events never double count
    """

    request_times: list = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class WebhookRateLimiter:
    """Keyed sliding-window limiter enforcing ``rate_limit_per_minute``.

    Example:
        limiter = WebhookRateLimiter()
        decision = await limiter.try_acquire(webhook.id, webhook.rate_limit_per_minute)
        if not decision.allowed:
            defer(decision.retry_after_ms)
    """

    def __init__(self, clock=time.monotonic):
        """Initialize rate limiter.

        Args:
            clock: Monotonic time source in seconds (injectable for tests)
        """
        self._clock = clock
        self._states: dict[int, WindowState] = {}
        self._lock = asyncio.Lock()

        # Metrics tracking
        self._allowed_count: dict[int, int] = {}
        self._denied_count: dict[int, int] = {}

    async def _get_state(self, webhook_id: int) -> WindowState:
        """Get or create window state for a webhook."""
        async with self._lock:
            if webhook_id not in self._states:
                self._states[webhook_id] = WindowState()
            return self._states[webhook_id]

    async def try_acquire(self, webhook_id: int, limit_per_minute: int) -> RateLimitDecision:
        """Consume one slot of the webhook's per-minute budget if available.

        Args:
            webhook_id: Webhook the dispatch is for
            limit_per_minute: The webhook's ``rate_limit_per_minute``

        Returns:
            RateLimitDecision; when denied, ``retry_after_ms`` is the remaining
            time until the oldest dispatch leaves the window
        """
        state = await self._get_state(webhook_id)

        async with state.lock:
            now = self._clock()
            window_start = now - WINDOW_SECONDS

            # Drop dispatches that fell out of the window
            state.request_times = [t for t in state.request_times if t > window_start]

            if len(state.request_times) >= max(limit_per_minute, 1):
                oldest = min(state.request_times)
                wait_needed = (oldest + WINDOW_SECONDS) - now
                retry_after_ms = max(1, math.ceil(wait_needed * 1000))
                self._denied_count[webhook_id] = self._denied_count.get(webhook_id, 0) + 1
                logger.debug(
                    f"Rate limiting webhook {webhook_id}: "
                    f"{len(state.request_times)}/{limit_per_minute} in window, "
                    f"retry in {retry_after_ms}ms"
                )
                return RateLimitDecision(allowed=False, retry_after_ms=retry_after_ms)

            state.request_times.append(now)
            self._allowed_count[webhook_id] = self._allowed_count.get(webhook_id, 0) + 1
            return RateLimitDecision(allowed=True)

    async def forget(self, webhook_id: int) -> None:
        """Drop window state for a deleted webhook."""
        async with self._lock:
            self._states.pop(webhook_id, None)

    def in_window(self, webhook_id: int) -> int:
        """Number of dispatches currently counted for a webhook."""
        state = self._states.get(webhook_id)
        if not state:
            return 0
        window_start = self._clock() - WINDOW_SECONDS
        return sum(1 for t in state.request_times if t > window_start)

    def get_metrics(self) -> dict[int, dict[str, int]]:
        """Get per-webhook allowed/denied counters."""
        return {
            webhook_id: {
                "allowed": self._allowed_count.get(webhook_id, 0),
                "denied": self._denied_count.get(webhook_id, 0),
            }
            for webhook_id in set(self._allowed_count) | set(self._denied_count)
        }

    def reset_metrics(self) -> None:
        self._allowed_count.clear()
        self._denied_count.clear()

    def reset(self) -> None:
        """Drop all window state and counters."""
        self._states = {}
        self._lock = asyncio.Lock()
        self.reset_metrics()


webhook_rate_limiter = WebhookRateLimiter()

__all__ = ["webhook_rate_limiter", "WebhookRateLimiter", "RateLimitDecision"]
