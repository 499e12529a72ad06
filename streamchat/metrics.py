"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Chat send outcome counter (result)
- Moderation outcome counter (result)
- Active backend subscription gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: sent, validation_error, backend_error
chat_send_total = Counter(
    "chat_send_total",
    "Total chat send outcomes",
    labelnames=["result"]
)

# result: deleted, already_deleted, unauthorized, not_found, backend_error
chat_moderation_total = Counter(
    "chat_moderation_total",
    "Total soft-delete outcomes",
    labelnames=["result"]
)

# Live listeners held by engines; a value that keeps growing means a leak
chat_active_subscriptions = Gauge(
    "chat_active_subscriptions",
    "Backend stream subscriptions currently open"
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

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_send_outcome(result: str) -> None:
    chat_send_total.labels(result=result).inc()


def record_moderation_outcome(result: str) -> None:
    chat_moderation_total.labels(result=result).inc()


def subscription_opened() -> None:
    chat_active_subscriptions.inc()


def subscription_closed() -> None:
    chat_active_subscriptions.dec()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
