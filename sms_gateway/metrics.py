"""
Prometheus metrics for the SMS gateway.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message submission outcome counter (result)
- Claimed message counter and device poll counter
- Status update counter (status)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, duplicate, validation_error, error
messages_submitted_total = Counter(
    "messages_submitted_total",
    "Total message submission outcomes",
    labelnames=["result"]
)

messages_claimed_total = Counter(
    "messages_claimed_total",
    "Total messages newly claimed by polling devices"
)

device_polls_total = Counter(
    "device_polls_total",
    "Total device polls",
    labelnames=["outcome"]
)

# status: sent, failed
status_updates_total = Counter(
    "status_updates_total",
    "Total message status reports",
    labelnames=["status"]
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
    # Message ids in the path would explode label cardinality
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/gateway/status/"):
        normalized_path = "/gateway/status/{message_id}"
    elif normalized_path.startswith("/messages/"):
        normalized_path = "/messages/{message_id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_submission_outcome(result: str) -> None:
    """
    Record a message submission outcome.

    Args:
        result: One of "created", "duplicate", "validation_error", "error"
    """
    messages_submitted_total.labels(result=result).inc()


def record_messages_claimed(count: int) -> None:
    if count > 0:
        messages_claimed_total.inc(count)


def record_device_poll(delivered: int) -> None:
    device_polls_total.labels(outcome="messages" if delivered else "empty").inc()


def record_status_update(status: str) -> None:
    status_updates_total.labels(status=status).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.
    """
    return CONTENT_TYPE_LATEST
