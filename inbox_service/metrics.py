"""
Prometheus metrics for the conversation inbox service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook event counter (result)
- Conversation cache outcome counter and rebuild duration histogram
- Bulk reader row and retry counters (table)

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

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, duplicate, status_update, ignored, error
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events processed",
    labelnames=["result"]
)

# outcome: hit, miss, stale, error, timeout
conversation_cache_total = Counter(
    "conversation_cache_total",
    "Conversation list cache lookups by outcome",
    labelnames=["outcome"]
)

conversation_rebuild_seconds = Histogram(
    "conversation_rebuild_seconds",
    "Time spent rebuilding the conversation list",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

bulk_fetch_rows_total = Counter(
    "bulk_fetch_rows_total",
    "Rows retrieved by the bulk reader",
    labelnames=["table"]
)

bulk_fetch_retries_total = Counter(
    "bulk_fetch_retries_total",
    "Rate-limit retries performed by the bulk reader",
    labelnames=["table"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template (e.g. /conversations/{phone}) or raw path
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


def record_webhook_event(result: str, amount: int = 1) -> None:
    """Record webhook processing outcomes."""
    if amount > 0:
        webhook_events_total.labels(result=result).inc(amount)


def record_cache_outcome(outcome: str) -> None:
    conversation_cache_total.labels(outcome=outcome).inc()


def record_rebuild_duration(seconds: float) -> None:
    conversation_rebuild_seconds.observe(seconds)


def record_bulk_fetch(table: str, rows: int, retries: int) -> None:
    """
    Record the outcome of one bulk fetch.

    Args:
        table: Table the rows were read from
        rows: Number of rows accumulated
        retries: Number of rate-limit retries that were needed
    """
    if rows:
        bulk_fetch_rows_total.labels(table=table).inc(rows)
    if retries:
        bulk_fetch_retries_total.labels(table=table).inc(retries)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
