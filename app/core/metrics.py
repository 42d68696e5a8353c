"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "LLM visibility pipeline application info")
APP_INFO.info({"version": "2.1.0", "name": "llm_visibility_pipeline"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

COMPLETION_EVENTS = Counter(
    "completion_events_total",
    "Inbound task completion events by outcome",
    ["outcome"],  # success | failed | duplicate | unknown_task | late_failure
)

TASK_RETRIES = Counter(
    "task_retries_total",
    "Retry policy decisions for failed tasks",
    ["decision"],  # requeued | exhausted | requeue_failed | raced
)

AGGREGATION_FAILURES = Counter(
    "aggregation_failures_total",
    "Aggregation steps that failed and were isolated",
    ["kind"],  # metrics | competitor | sources | utilization | resolution
)

BATCH_ITEMS = Counter(
    "batch_items_total",
    "Reconciliation batch items by outcome",
    ["job", "outcome"],  # job: reconcile | backfill; outcome: successful | failed | skipped
)

BATCH_DURATION = Histogram(
    "batch_duration_seconds",
    "Reconciliation batch duration in seconds",
    ["job"],
    buckets=[0.5, 1, 5, 15, 30, 60, 120, 300, 600],
)

CHART_CACHE = Counter(
    "chart_snapshot_reads_total",
    "Chart snapshot reads by result",
    ["result"],  # hit | miss | stale
)


# --- Middleware ---

# Normalize dynamic path segments to reduce cardinality
_PATH_PREFIXES = ("/api/v1/charts/",)


def _normalize_path(path: str) -> str:
    """Replace entity UUIDs in paths with {id} to avoid high cardinality."""
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix) :]
            parts = rest.split("/", 1)
            if parts[0]:
                tail = f"/{parts[1]}" if len(parts) > 1 else ""
                return f"{prefix}{{id}}{tail}"
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
