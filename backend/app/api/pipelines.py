"""
Pipelines API — register and run multi-stage algorithm pipelines.

POST /api/pipelines                                  Register a pipeline definition
GET  /api/pipelines                                  List registered pipelines
GET  /api/pipelines/executions/active                Runs currently holding a slot
GET  /api/pipelines/executions/{execution_id}        Outcome of a recent or queued run
POST /api/pipelines/executions/{execution_id}/cancel Cancel a queued or running execution
GET  /api/pipelines/{pipeline_id}                    Pipeline definition
GET  /api/pipelines/{pipeline_id}/metrics            Pipeline and stage metrics
POST /api/pipelines/{pipeline_id}/execute            Execute (or queue) a run
"""

from fastapi import APIRouter, Depends

from app.api.deps import get_correlation_id, get_services
from app.orchestration.models import PipelineDefinition, PipelineExecutionResult, PipelineMetrics
from app.orchestration.services import OrchestrationServices
from app.schemas.schemas import CancelResponse, ExecuteRequest

router = APIRouter(prefix="/api/pipelines", tags=["pipelines"])


@router.post("", response_model=PipelineDefinition, status_code=201)
async def register_pipeline(
    body: PipelineDefinition,
    services: OrchestrationServices = Depends(get_services),
):
    return await services.pipelines.register_pipeline(body)


@router.get("", response_model=list[PipelineDefinition])
async def list_pipelines(services: OrchestrationServices = Depends(get_services)):
    return await services.pipelines.list_pipelines()


@router.get("/executions/active")
async def active_executions(services: OrchestrationServices = Depends(get_services)):
    return {
        "active": services.pipelines.get_active_executions(),
        "queued": services.pipelines.get_queued_executions(),
    }


@router.get("/executions/{execution_id}", response_model=PipelineExecutionResult)
async def get_execution(execution_id: str, services: OrchestrationServices = Depends(get_services)):
    return services.pipelines.get_execution_result(execution_id)


@router.post("/executions/{execution_id}/cancel", response_model=CancelResponse)
async def cancel_execution(execution_id: str, services: OrchestrationServices = Depends(get_services)):
    cancelled = await services.pipelines.cancel(execution_id)
    return CancelResponse(execution_id=execution_id, cancelled=cancelled)


@router.get("/{pipeline_id}", response_model=PipelineDefinition)
async def get_pipeline(pipeline_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.pipelines.get_pipeline(pipeline_id)


@router.get("/{pipeline_id}/metrics", response_model=PipelineMetrics)
async def get_pipeline_metrics(pipeline_id: str, services: OrchestrationServices = Depends(get_services)):
    return await services.pipelines.get_pipeline_metrics(pipeline_id)


@router.post("/{pipeline_id}/execute", response_model=PipelineExecutionResult)
async def execute_pipeline(
    pipeline_id: str,
    body: ExecuteRequest,
    services: OrchestrationServices = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
):
    """
    Run the pipeline now, or queue it when the concurrency ceiling is reached.

    Always answers with a structured outcome: completed, failed, queued or
    cancelled. A queued run can be polled at /executions/{execution_id}.
    """
    return await services.pipelines.execute(pipeline_id, body.input, body.to_context(correlation_id))
