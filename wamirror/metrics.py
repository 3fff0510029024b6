"""
Prometheus metrics for the webhook mirror.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook normalization outcome counter (result)
- Real-time broadcast counter (event) and connected-clients gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: created, updated, ignored, unmatched_status, persistence_error,
# invalid_signature, invalid_json
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook normalization outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

realtime_events_total = Counter(
    "realtime_events_total",
    "Real-time events broadcast to connected clients",
    labelnames=["event"]
)

realtime_connections = Gauge(
    "realtime_connections",
    "Currently connected real-time clients"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]
    # Per-conversation paths would explode label cardinality
    if normalized_path.startswith("/api/messages/"):
        normalized_path = "/api/messages/{conversation_id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    """Record the outcome of normalizing one webhook payload."""
    webhook_events_total.labels(result=result).inc()


def record_realtime_event(event: str) -> None:
    realtime_events_total.labels(event=event).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
