"""
Prometheus metrics middleware.

Collects HTTP request metrics (counter + histogram) and defines the
orchestration-level counters/gauges that the event-bus subscriber in
app.orchestration.services feeds: pipeline and stage runs, algorithm
executions, alerts, deployments and A/B executions.
"""

import time

from prometheus_client import Counter, Histogram, Gauge
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Pipeline metrics ─────────────────────────────────────────────────────────

pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Total pipeline runs",
    ["pipeline", "status"],
)

pipeline_duration_seconds = Histogram(
    "pipeline_duration_seconds",
    "Pipeline run duration in seconds",
    ["pipeline"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

pipeline_stage_runs_total = Counter(
    "pipeline_stage_runs_total",
    "Total pipeline stage executions",
    ["pipeline", "stage", "success"],
)

pipeline_queue_depth = Gauge(
    "pipeline_queue_depth",
    "Pipeline executions waiting for a free slot",
)

pipeline_active_executions = Gauge(
    "pipeline_active_executions",
    "Pipeline executions currently running",
)

# ── Algorithm execution metrics ──────────────────────────────────────────────

algorithm_executions_total = Counter(
    "algorithm_executions_total",
    "Total algorithm executions reported to monitoring",
    ["algorithm", "success"],
)

algorithm_execution_duration_seconds = Histogram(
    "algorithm_execution_duration_seconds",
    "Algorithm execution duration in seconds",
    ["algorithm"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

algorithm_alerts_total = Counter(
    "algorithm_alerts_total",
    "Performance alerts raised",
    ["algorithm", "metric", "severity"],
)

# ── Registry metrics ─────────────────────────────────────────────────────────

algorithm_deployments_total = Counter(
    "algorithm_deployments_total",
    "Deployment outcomes",
    ["environment", "outcome"],
)

# ── A/B testing metrics ──────────────────────────────────────────────────────

abtest_executions_total = Counter(
    "abtest_executions_total",
    "A/B test variant executions",
    ["test", "variant", "success"],
)


def _normalize_path(path: str) -> str:
    """Collapse path parameters to reduce cardinality.

    e.g. /api/pipelines/executions/3f2a...e1/cancel → /api/pipelines/executions/{id}/cancel
    """
    parts = path.strip("/").split("/")
    normalized = []
    for i, part in enumerate(parts):
        if i > 1 and (part.isdigit() or len(part) > 20 or part.count("-") >= 4):
            normalized.append("{id}")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint itself to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        http_requests_total.labels(
            method=method,
            path=path,
            status_code=response.status_code,
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            path=path,
        ).observe(duration)

        return response
