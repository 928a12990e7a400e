"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total inbound payment webhooks",
    ["provider", "outcome"],  # processed, duplicate, acknowledged, rejected, unknown_provider, error
)

payments_settled_total = Counter(
    "payments_settled_total",
    "Total payments that extended an entitlement",
    ["provider"],
)

access_decisions_total = Counter(
    "access_decisions_total",
    "Access control decisions per action",
    ["action"],
)

members_removed_total = Counter(
    "members_removed_total",
    "Members removed from groups for lacking an active subscription",
    ["source"],  # join, message, sweep
)

subscriptions_expired_total = Counter(
    "subscriptions_expired_total",
    "Group subscriptions flipped to inactive by the expiry sweep",
)

telegram_requests_total = Counter(
    "telegram_requests_total",
    "Total Telegram API requests",
    ["method", "status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
telegram_request_duration_seconds = Histogram(
    "telegram_request_duration_seconds",
    "Telegram API request duration",
    ["method"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10],
)

webhook_duration_seconds = Histogram(
    "webhook_duration_seconds",
    "Webhook handling duration",
    ["provider"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5],
)


router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
