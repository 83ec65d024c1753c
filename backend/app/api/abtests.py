"""
A/B Testing API — lifecycle, gated execution and analysis.

POST /api/abtests                            Create a test (draft)
GET  /api/abtests?status=running             List tests
GET  /api/abtests/{id}                       Test definition
POST /api/abtests/{id}/start|pause|resume    Lifecycle transitions
POST /api/abtests/{id}/stop|cancel           Terminal transitions (optional reason)
POST /api/abtests/{id}/execute               Run the caller's variant
GET  /api/abtests/{id}/results?limit=100     Most recent recorded executions
GET  /api/abtests/{id}/statistics            Per-variant statistics
GET  /api/abtests/{id}/recommendation        Deploy / stop / extend / continue
"""

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_correlation_id, get_services
from app.orchestration.errors import NotEligibleError
from app.orchestration.models import (
    ABTestDefinition,
    TestExecutionResult,
    TestRecommendation,
    TestStatus,
    VariantStatistics,
)
from app.orchestration.services import OrchestrationServices
from app.schemas.schemas import ABExecuteResponse, ExecuteRequest, StopTestRequest

router = APIRouter(prefix="/api/abtests", tags=["abtests"])


@router.post("", response_model=ABTestDefinition, status_code=201)
async def create_test(body: ABTestDefinition, services: OrchestrationServices = Depends(get_services)):
    return await services.abtests.create_test(body)


@router.get("", response_model=list[ABTestDefinition])
async def list_tests(
    status: TestStatus | None = Query(None),
    services: OrchestrationServices = Depends(get_services),
):
    return await services.abtests.list_tests(status)


@router.get("/{test_id}", response_model=ABTestDefinition)
async def get_test(test_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.abtests.get_test(test_id)


@router.post("/{test_id}/start", response_model=ABTestDefinition)
async def start_test(test_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.abtests.start_test(test_id)


@router.post("/{test_id}/pause", response_model=ABTestDefinition)
async def pause_test(test_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.abtests.pause_test(test_id)


@router.post("/{test_id}/resume", response_model=ABTestDefinition)
async def resume_test(test_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.abtests.resume_test(test_id)


@router.post("/{test_id}/stop", response_model=ABTestDefinition)
async def stop_test(
    test_id: str,
    body: StopTestRequest | None = None,
    services: OrchestrationServices = Depends(get_services),
):
    reason = body.reason if body and body.reason else "Stopped manually"
    return await services.abtests.stop_test(test_id, reason)


@router.post("/{test_id}/cancel", response_model=ABTestDefinition)
async def cancel_test(
    test_id: str,
    body: StopTestRequest | None = None,
    services: OrchestrationServices = Depends(get_services),
):
    reason = body.reason if body and body.reason else "Cancelled"
    return await services.abtests.cancel_test(test_id, reason)


@router.post("/{test_id}/execute", response_model=ABExecuteResponse)
async def execute_with_test(
    test_id: str,
    body: ExecuteRequest,
    services: OrchestrationServices = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
):
    """Gated-out callers get ``status: not_eligible`` rather than an HTTP error."""
    try:
        record = await services.abtests.execute_with_ab_test(test_id, body.input, body.to_context(correlation_id))
    except NotEligibleError as e:
        return ABExecuteResponse(
            status="not_eligible",
            test_id=test_id,
            correlation_id=correlation_id,
            reason=e.details.get("reason", e.message),
        )
    return ABExecuteResponse(
        status="completed" if record.result.success else "failed",
        test_id=test_id,
        correlation_id=correlation_id,
        variant_id=record.variant_id,
        is_control=record.is_control,
        result=record.result,
        execution_time=record.execution_time,
    )


@router.get("/{test_id}/statistics", response_model=list[VariantStatistics])
async def test_statistics(test_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.abtests.get_test_statistics(test_id)


@router.get("/{test_id}/recommendation", response_model=TestRecommendation)
async def test_recommendation(test_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.abtests.get_test_recommendation(test_id)


@router.get("/{test_id}/results", response_model=list[TestExecutionResult])
async def test_results(
    test_id: str,
    limit: int = Query(100, ge=1, le=1000),
    services: OrchestrationServices = Depends(get_services),
):
    return await services.abtests.get_results(test_id, limit)
