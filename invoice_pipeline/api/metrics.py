"""Prometheus metrics for the extraction API.

Exposes:
- Request counts and durations by endpoint
- Invoices processed by extraction method and outcome
- Extraction duration and line items per invoice
- Cascade fallbacks by failing strategy

Prometheus naming reference:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Extraction metrics
invoices_processed_total = Counter(
    "invoices_processed_total",
    "Invoices processed through the extraction cascade",
    ["method", "status"],  # status: success, empty, needs_training, failed
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "End-to-end extraction duration per invoice in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

line_items_extracted = Histogram(
    "line_items_extracted",
    "Line items extracted per invoice",
    buckets=(0, 1, 2, 5, 10, 20, 50),
)

strategy_fallbacks_total = Counter(
    "strategy_fallbacks_total",
    "Times a cascade strategy failed and handed over to the next tier",
    ["strategy"],
)


def record_fallback(strategy: str, error: Exception) -> None:
    """Fallback hook for the orchestrator."""
    strategy_fallbacks_total.labels(strategy=strategy).inc()


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
