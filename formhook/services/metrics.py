"""Prometheus metrics for FormHook."""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from formhook.models.webhook import Webhook
from formhook.models.delivery_log import DeliveryLog

# Populated by formhook.main once the version is known
app_info = Info("formhook_app", "FormHook application information")

# Delivery metrics
deliveries_total = Counter(
    "formhook_webhook_deliveries_total",
    "Webhook delivery attempts by outcome",
    ["outcome"],  # success, failed, retrying, rate_limited, cancelled
)
delivery_duration = Histogram(
    "formhook_webhook_delivery_duration_seconds",
    "Outbound webhook request duration",
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)
retries_scheduled_total = Counter(
    "formhook_webhook_retries_scheduled_total", "Webhook retries scheduled", ["reason"]
)
retry_chains_exhausted_total = Counter(
    "formhook_webhook_retry_chains_exhausted_total",
    "Logical deliveries that failed after exhausting their retry budget",
)

# Registry metrics (collected on scrape)
webhooks_by_status = Gauge(
    "formhook_webhooks_by_status", "Webhooks grouped by status", ["status"]
)
pending_retries = Gauge(
    "formhook_webhook_pending_retries", "Delivery attempts waiting for a scheduled retry"
)


async def collect_metrics(db: AsyncSession) -> None:
    """Refresh the registry gauges; statuses with no webhooks report zero."""
    counts = dict.fromkeys(("active", "paused", "deleted"), 0)
    rows = await db.execute(
        select(Webhook.status, func.count(Webhook.id)).group_by(Webhook.status)
    )
    counts.update({status: count for status, count in rows.fetchall()})
    for status, count in counts.items():
        webhooks_by_status.labels(status=status).set(count)

    waiting = await db.scalar(
        select(func.count()).select_from(DeliveryLog).where(DeliveryLog.status == "retrying")
    )
    pending_retries.set(waiting or 0)


def get_metrics() -> bytes:
    """Current registry in the Prometheus text exposition format."""
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
