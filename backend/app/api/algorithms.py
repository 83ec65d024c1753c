"""
Algorithms API — registry of algorithm versions and deployments.

POST /api/algorithms                          Register an algorithm version
GET  /api/algorithms                          List / search / filter definitions
GET  /api/algorithms/statistics               Registry-wide counts
GET  /api/algorithms/analytics/system         Top performers and system trends
GET  /api/algorithms/{id}                     Definition plus active version
GET  /api/algorithms/{id}/versions            All versions
GET  /api/algorithms/{id}/active-version      The version callers should use
GET  /api/algorithms/{id}/deployments         Deployment history
POST /api/algorithms/{id}/deploy              Deploy a version to an environment
GET  /api/algorithms/{id}/baseline            Stored performance baseline
PUT  /api/algorithms/{id}/baseline            Replace the performance baseline
GET  /api/algorithms/{id}/comparison          Baseline vs monitored performance (?window=24h)
POST /api/algorithms/{id}/rollback            Roll an environment back to a version
"""

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_services
from app.orchestration.errors import NotFoundError
from app.orchestration.models import (
    AlgorithmDefinition,
    AlgorithmVersion,
    Deployment,
    PerformanceBaseline,
    PerformanceComparison,
    SystemAnalytics,
)
from app.orchestration.services import OrchestrationServices
from app.schemas.schemas import DeployRequest, RegisterAlgorithmRequest, RollbackRequest

router = APIRouter(prefix="/api/algorithms", tags=["algorithms"])


@router.post("", response_model=AlgorithmVersion, status_code=201)
async def register_algorithm(
    body: RegisterAlgorithmRequest,
    services: OrchestrationServices = Depends(get_services),
):
    return await services.registry.register_algorithm(body.definition, body.version, body.config_schema)


@router.get("", response_model=list[AlgorithmDefinition])
async def list_algorithms(
    q: str | None = Query(None, description="Case-insensitive search over name, description and tags"),
    category: str | None = Query(None),
    services: OrchestrationServices = Depends(get_services),
):
    if q:
        algorithms = await services.registry.search_algorithms(q)
    else:
        algorithms = await services.registry.list_algorithms()
    if category:
        algorithms = [a for a in algorithms if a.category == category]
    return algorithms


@router.get("/statistics")
async def registry_statistics(services: OrchestrationServices = Depends(get_services)):
    return await services.registry.get_statistics()


@router.get("/analytics/system", response_model=SystemAnalytics)
async def system_analytics(services: OrchestrationServices = Depends(get_services)):
    return await services.analytics.get_system_analytics()


@router.get("/{algorithm_id}")
async def get_algorithm(algorithm_id: str, services: OrchestrationServices = Depends(get_services)):
    definition = await services.registry.get_definition(algorithm_id)
    try:
        active = await services.registry.get_active_version(algorithm_id)
    except NotFoundError:
        active = None
    return {
        "definition": definition,
        "active_version": active,
        "configuration_schema": await services.registry.get_configuration_schema(algorithm_id),
        "performance_baseline": await services.registry.get_performance_baseline(algorithm_id),
    }


@router.get("/{algorithm_id}/versions", response_model=list[AlgorithmVersion])
async def list_versions(algorithm_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.registry.get_versions(algorithm_id)


@router.get("/{algorithm_id}/active-version", response_model=AlgorithmVersion)
async def active_version(algorithm_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.registry.get_active_version(algorithm_id)


@router.get("/{algorithm_id}/deployments", response_model=list[Deployment])
async def list_deployments(algorithm_id: str, services: OrchestrationServices = Depends(get_services)):
    await services.registry.get_definition(algorithm_id)
    return await services.registry.list_deployments(algorithm_id)


@router.post("/{algorithm_id}/deploy", response_model=Deployment)
async def deploy(
    algorithm_id: str,
    body: DeployRequest,
    services: OrchestrationServices = Depends(get_services),
):
    return await services.registry.deploy(algorithm_id, body.version, body.environment, body.actor)


@router.post("/{algorithm_id}/rollback", response_model=Deployment)
async def rollback(
    algorithm_id: str,
    body: RollbackRequest,
    services: OrchestrationServices = Depends(get_services),
):
    return await services.registry.rollback(algorithm_id, body.environment, body.to_version, body.actor)


@router.get("/{algorithm_id}/baseline", response_model=PerformanceBaseline)
async def get_baseline(algorithm_id: str, services: OrchestrationServices = Depends(get_services)):
    await services.registry.get_definition(algorithm_id)
    return await services.registry.get_performance_baseline(algorithm_id) or PerformanceBaseline()


@router.put("/{algorithm_id}/baseline", response_model=PerformanceBaseline)
async def update_baseline(
    algorithm_id: str,
    body: PerformanceBaseline,
    services: OrchestrationServices = Depends(get_services),
):
    await services.registry.update_performance_baseline(algorithm_id, body)
    return body


@router.get("/{algorithm_id}/comparison", response_model=PerformanceComparison)
async def performance_comparison(
    algorithm_id: str,
    window: str = Query("24h", description="1h | 24h | 7d | 30d"),
    services: OrchestrationServices = Depends(get_services),
):
    return await services.analytics.compare_to_baseline(algorithm_id, window)
