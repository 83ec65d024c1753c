"""
Prometheus metrics endpoint.

GET /metrics   HTTP, pipeline, algorithm, alert, deployment and A/B counters
               in Prometheus text exposition format.

Queue depth and active-run gauges are refreshed on scrape so they are
accurate even when no pipeline event has fired recently.
"""

from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.middleware import metrics as prom

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def prometheus_metrics(request: Request):
    """Expose Prometheus metrics in text format."""
    services = getattr(request.app.state, "services", None)
    if services is not None:
        prom.pipeline_queue_depth.set(len(services.pipelines.get_queued_executions()))
        prom.pipeline_active_executions.set(len(services.pipelines.get_active_executions()))
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
