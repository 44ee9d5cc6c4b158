"""
Prometheus metrics for the messaging API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message send outcome counter (channel, result)
- Auto-created contact counter
- Gauge of registered real-time sessions

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# channel: rest, realtime
# result: created, duplicate, user_not_found, error
messages_sent_total = Counter(
    "messages_sent_total",
    "Total message send outcomes",
    labelnames=["channel", "result"]
)

auto_created_contacts_total = Counter(
    "auto_created_contacts_total",
    "Contacts created as a side effect of an inbound message"
)

realtime_connections = Gauge(
    "realtime_connections",
    "Users currently registered on the real-time channel"
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
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


def record_send_outcome(channel: str, result: str) -> None:
    messages_sent_total.labels(channel=channel, result=result).inc()


def record_auto_created_contact() -> None:
    auto_created_contacts_total.inc()


def set_realtime_connections(count: int) -> None:
    realtime_connections.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
