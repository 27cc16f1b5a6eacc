"""
Prometheus metrics for the inbox service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook delivery outcome counter (result)
- Webhook event outcome counter (kind, result)
- Outgoing send counter (result)
- Ingestion queue depth gauge

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

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# One increment per POST (queued, queue_full, not_running) and one per processed job
# (processed, decode_error, invalid_signature, ignored, error); dropped_at_shutdown on stop
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook deliveries by outcome",
    labelnames=["result"]
)

# kind=message: created, duplicate, failed
# kind=status: updated, unmatched, skipped, failed
webhook_events_total = Counter(
    "webhook_events_total",
    "Messages and status updates handled from webhook deliveries",
    labelnames=["kind", "result"]
)

whatsapp_sends_total = Counter(
    "whatsapp_sends_total",
    "Outgoing WhatsApp sends by outcome",
    labelnames=["result"]
)

ingest_queue_depth = Gauge(
    "ingest_queue_depth",
    "Webhook deliveries waiting in the ingestion queue"
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


def record_webhook_delivery(result: str) -> None:
    webhook_deliveries_total.labels(result=result).inc()


def record_webhook_event(kind: str, result: str) -> None:
    webhook_events_total.labels(kind=kind, result=result).inc()


def record_send(result: str) -> None:
    whatsapp_sends_total.labels(result=result).inc()


def set_queue_depth(depth: int) -> None:
    ingest_queue_depth.set(depth)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
