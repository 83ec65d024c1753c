"""
Pydantic schemas for API request/response models.

Domain models (PipelineDefinition, ABTestDefinition, ...) are accepted and
returned as-is; the classes here only wrap call parameters and outcomes.
"""

from typing import Any

from pydantic import BaseModel, Field

from app.orchestration.models import (
    AlgorithmDefinition,
    AlgorithmResult,
    AlgorithmVersion,
    ConfigSchema,
    Environment,
    ExecutionContext,
)


# ── Execution ──

class ExecuteRequest(BaseModel):
    input: Any = None
    user_id: str = "anonymous"
    project_id: str | None = None
    timeout: float | None = Field(None, gt=0, description="Overall timeout in ms")
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_context(self, correlation_id: str) -> ExecutionContext:
        return ExecutionContext(
            user_id=self.user_id,
            project_id=self.project_id,
            correlation_id=correlation_id,
            timeout=self.timeout,
            metadata=self.metadata,
        )


class CancelResponse(BaseModel):
    execution_id: str
    cancelled: bool


# ── Registry ──

class RegisterAlgorithmRequest(BaseModel):
    definition: AlgorithmDefinition
    version: AlgorithmVersion
    config_schema: ConfigSchema | None = None


class DeployRequest(BaseModel):
    version: str
    environment: Environment
    actor: str = "system"


class RollbackRequest(BaseModel):
    environment: Environment
    to_version: str
    actor: str = "system"


# ── A/B testing ──

class StopTestRequest(BaseModel):
    reason: str | None = None


class ABExecuteResponse(BaseModel):
    status: str  # completed | failed | not_eligible
    test_id: str
    correlation_id: str
    variant_id: str | None = None
    is_control: bool | None = None
    result: AlgorithmResult | None = None
    execution_time: float | None = None
    reason: str | None = None


# ── Monitoring ──

class CustomMetricRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    value: float
