"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter(tags=["metrics"])

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Business Metrics - Capture
# ============================================

webhooks_captured = Counter(
    'webhooks_captured_total',
    'Total inbound webhooks captured',
    ['project_id']
)

# ============================================
# Business Metrics - Delivery
# ============================================

delivery_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Delivery attempts by resulting status',
    ['outcome']
)

delivery_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Outbound delivery request duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

webhook_replays = Counter(
    'webhook_replays_total',
    'Replays and manual retries requested',
    ['kind']
)

webhooks_dead_lettered = Counter(
    'webhooks_dead_lettered_total',
    'Total webhooks moved to the dead-letter queue'
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_capture(project_id: str):
    """Record an inbound webhook capture."""
    webhooks_captured.labels(project_id=project_id).inc()


def track_delivery(outcome: str, duration_seconds: float):
    """Record one delivery attempt and how long the outbound call took."""
    delivery_attempts.labels(outcome=outcome).inc()
    delivery_duration.observe(duration_seconds)


def track_replay(kind: str):
    """Record a replay ("replay") or manual retry ("manual_retry")."""
    webhook_replays.labels(kind=kind).inc()


def track_dead_letter():
    """Record a dead-lettered webhook."""
    webhooks_dead_lettered.inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
