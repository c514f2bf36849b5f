"""
Prometheus metrics for the harvester.

- harvester_http_requests_total / harvester_request_latency_seconds: API traffic,
  labelled by route template
- harvester_scrape_runs_total: one increment per scrape_group call
- harvester_messages_ingested_total: one increment per fetched message
- harvester_retention_deleted_total: messages removed by cleanup

All metrics live in the default in-process registry.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)


http_requests_total = Counter(
    "harvester_http_requests_total",
    "HTTP requests served, by route template and status",
    labelnames=["method", "route", "status"],
)

request_latency_seconds = Histogram(
    "harvester_request_latency_seconds",
    "HTTP request latency",
    labelnames=["method", "route"],
    buckets=LATENCY_BUCKETS,
)

# status: completed, failed, rejected (failed before a run record existed)
scrape_runs_total = Counter(
    "harvester_scrape_runs_total",
    "Group scrapes by outcome",
    labelnames=["status"],
)

# result: created, duplicate, error
messages_ingested_total = Counter(
    "harvester_messages_ingested_total",
    "Fetched messages by ingestion outcome",
    labelnames=["result"],
)

retention_deleted_total = Counter(
    "harvester_retention_deleted_total",
    "Messages deleted by retention cleanup",
)


def record_http_request(method: str, route: str, status: int, latency_seconds: float) -> None:
    """
    Count one served request and observe its latency.

    Args:
        route: route template such as /api/groups/{group_id}/messages, never the raw path
    """
    http_requests_total.labels(method, route, str(status)).inc()
    request_latency_seconds.labels(method, route).observe(latency_seconds)


def record_scrape_outcome(status: str) -> None:
    scrape_runs_total.labels(status).inc()


def record_message_outcome(result: str) -> None:
    messages_ingested_total.labels(result).inc()


def record_retention_deleted(count: int) -> None:
    if count > 0:
        retention_deleted_total.inc(count)


def get_metrics() -> bytes:
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
