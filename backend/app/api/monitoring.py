"""
Monitoring API — dashboards, thresholds and alerts per algorithm.

GET  /api/monitoring/system                                      System-wide summary
GET  /api/monitoring/{algorithm_id}/dashboard?window=1h          Dashboard for a time window
GET  /api/monitoring/{algorithm_id}/realtime?window_seconds=300  Raw metric buckets
POST /api/monitoring/{algorithm_id}/custom-metrics              Record a custom gauge on the current bucket
PUT  /api/monitoring/{algorithm_id}/thresholds                   Set a threshold (replaces same metric)
GET  /api/monitoring/{algorithm_id}/thresholds                   Configured thresholds
GET  /api/monitoring/{algorithm_id}/alerts                       Alerts (active only by default)
POST /api/monitoring/{algorithm_id}/alerts/{alert_id}/resolve    Resolve an alert
"""

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_services
from app.orchestration.errors import ValidationError
from app.orchestration.models import (
    DashboardData,
    MetricBucket,
    PerformanceAlert,
    PerformanceThreshold,
    SystemMetrics,
)
from app.orchestration.services import OrchestrationServices
from app.schemas.schemas import CustomMetricRequest

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


@router.get("/system", response_model=SystemMetrics)
async def system_metrics(services: OrchestrationServices = Depends(get_services)):
    return await services.monitoring.get_system_metrics()


@router.get("/{algorithm_id}/dashboard", response_model=DashboardData)
async def dashboard(
    algorithm_id: str,
    window: str = Query("1h", description="1h | 24h | 7d | 30d"),
    services: OrchestrationServices = Depends(get_services),
):
    return await services.monitoring.get_dashboard_data(algorithm_id, window)


@router.get("/{algorithm_id}/realtime", response_model=list[MetricBucket])
async def realtime_metrics(
    algorithm_id: str,
    window_seconds: float = Query(300, gt=0, le=86400),
    services: OrchestrationServices = Depends(get_services),
):
    return services.monitoring.get_real_time_metrics(algorithm_id, window_seconds)


@router.post("/{algorithm_id}/custom-metrics", response_model=MetricBucket, status_code=201)
async def record_custom_metric(
    algorithm_id: str,
    body: CustomMetricRequest,
    services: OrchestrationServices = Depends(get_services),
):
    return await services.monitoring.record_custom_metric(algorithm_id, body.name, body.value)


@router.put("/{algorithm_id}/thresholds", response_model=PerformanceThreshold)
async def set_threshold(
    algorithm_id: str,
    body: PerformanceThreshold,
    services: OrchestrationServices = Depends(get_services),
):
    if body.algorithm_id != algorithm_id:
        raise ValidationError("Threshold algorithm_id does not match the path")
    return await services.monitoring.set_threshold(body)


@router.get("/{algorithm_id}/thresholds", response_model=list[PerformanceThreshold])
async def get_thresholds(algorithm_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.monitoring.get_thresholds(algorithm_id)


@router.get("/{algorithm_id}/alerts", response_model=list[PerformanceAlert])
async def list_alerts(
    algorithm_id: str,
    include_resolved: bool = Query(False),
    services: OrchestrationServices = Depends(get_services),
):
    return await services.monitoring.list_alerts(algorithm_id, include_resolved=include_resolved)


@router.post("/{algorithm_id}/alerts/{alert_id}/resolve", response_model=PerformanceAlert)
async def resolve_alert(
    algorithm_id: str,
    alert_id: str,
    services: OrchestrationServices = Depends(get_services),
):
    return await services.monitoring.resolve_alert(algorithm_id, alert_id)
