"""
Prometheus metrics for the chat import API.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Archive import outcome counter (result)
- Per-message outcome counter (outcome)
- Media upload and embedding request counters
- Single-message ingest outcome counter

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

# result: imported, all_duplicates, rejected, timeout
chat_imports_total = Counter(
    "chat_imports_total",
    "Total archive import outcomes",
    labelnames=["result"]
)

# outcome: parsed, duplicate, inserted, error
chat_import_messages_total = Counter(
    "chat_import_messages_total",
    "Messages seen by the import pipeline, by outcome",
    labelnames=["outcome"]
)

# result: uploaded, failed
media_uploads_total = Counter(
    "media_uploads_total",
    "Media file uploads to object storage",
    labelnames=["result"]
)

# result: ok, error, skipped
embedding_requests_total = Counter(
    "embedding_requests_total",
    "Embedding service batch requests",
    labelnames=["result"]
)

# result: created, duplicate, invalid_signature, validation_error, error
ingest_requests_total = Counter(
    "ingest_requests_total",
    "Total single-message ingest outcomes",
    labelnames=["result"]
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
    # Normalize path to avoid high-cardinality labels
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


def record_import_outcome(result: str) -> None:
    chat_imports_total.labels(result=result).inc()


def record_message_outcome(outcome: str, count: int = 1) -> None:
    if count:
        chat_import_messages_total.labels(outcome=outcome).inc(count)


def record_media_upload(result: str) -> None:
    media_uploads_total.labels(result=result).inc()


def record_embedding_request(result: str) -> None:
    embedding_requests_total.labels(result=result).inc()


def record_ingest_outcome(result: str) -> None:
    """
    Record a single-message ingest outcome.

    Args:
        result: Processing result - one of:
            - "created": New message stored
            - "duplicate": Message already existed
            - "invalid_signature": HMAC validation failed
            - "validation_error": Request body validation failed
            - "error": Storage failure
    """
    ingest_requests_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
