"""
Prometheus metrics for the sale payment lifecycle.

Tracks:
- Confirmation outcomes (approved, already approved, rejected)
- Stock conflicts
- Webhook notifications by outcome
- Side-effect failures
- Expiration job runs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Confirmation metrics
sale_confirmations_total = Counter(
    "sale_confirmations_total",
    "Total sale confirmation attempts",
    ["outcome", "initiator"],  # approved, already_approved, not_found, invalid, insufficient_stock
)

sale_confirmation_duration_seconds = Histogram(
    "sale_confirmation_duration_seconds",
    "Time to commit a sale confirmation in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

stock_conflicts_total = Counter(
    "stock_conflicts_total",
    "Confirmations rejected for insufficient stock",
)

# Webhook metrics
webhook_notifications_total = Counter(
    "webhook_notifications_total",
    "Total payment notifications received",
    ["topic", "outcome"],  # processed, failed, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Side-effect metrics
side_effect_failures_total = Counter(
    "side_effect_failures_total",
    "Best-effort side effects that failed",
    ["action"],  # pre_shipment, confirmation_email, expiration_email
)

# Expiration metrics
sales_expired_total = Counter(
    "sales_expired_total",
    "Total sales moved to vencido",
)

expiration_job_duration_seconds = Histogram(
    "expiration_job_duration_seconds",
    "Expiration job duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

expiration_last_run_timestamp = Gauge(
    "expiration_last_run_timestamp",
    "Timestamp of last expiration job run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_confirmation(outcome: str, initiator: str, duration_seconds: float = 0) -> None:
        """Record a confirmation attempt."""
        sale_confirmations_total.labels(outcome=outcome, initiator=initiator).inc()
        if outcome == "insufficient_stock":
            stock_conflicts_total.inc()
        if duration_seconds > 0:
            sale_confirmation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_webhook(topic: str, outcome: str, duration_seconds: float = 0) -> None:
        """Record a webhook notification."""
        webhook_notifications_total.labels(topic=topic or "unknown", outcome=outcome).inc()
        if duration_seconds > 0:
            webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_side_effect_failure(action: str) -> None:
        side_effect_failures_total.labels(action=action).inc()

    @staticmethod
    def record_expiration_run(expired_count: int, duration_seconds: float) -> None:
        """Record an expiration job run."""
        sales_expired_total.inc(expired_count)
        expiration_job_duration_seconds.observe(duration_seconds)
        expiration_last_run_timestamp.set(time.time())


metrics = MetricsCollector()
