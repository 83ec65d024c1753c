"""
Algorithm orchestration layer.

Coordinates algorithm executions for the platform: multi-stage pipelines,
a versioned algorithm registry with deployments, real-time monitoring with
alerting, and A/B testing of algorithm variants. Algorithm code itself runs
behind the AlgorithmExecutor interface.

Components:
    models      — pydantic domain models and enums
    errors      — OrchestrationError hierarchy (mapped to HTTP status codes)
    events      — typed in-process event bus
    store       — async key-value stores (in-memory or Redis)
    executor    — AlgorithmExecutor interface and HTTP implementation
    conditions  — dotted-path access and rule evaluation
    retry       — per-call timeout and tenacity-driven retry with backoff
    stats       — significance tests for A/B analysis
    monitoring  — time-bucketed metrics, thresholds, alerts, dashboards
    registry    — algorithm versions and deployment lifecycle
    pipeline    — DAG pipeline engine with concurrency ceiling and queue
    abtesting   — A/B test lifecycle, assignment and recommendations
    analytics   — baseline comparisons and system-wide analytics
    services    — OrchestrationServices container and background loops
"""

from app.orchestration.errors import (
    OrchestrationError, ValidationError, ConflictError, NotFoundError,
    StateError, NotEligibleError, CapacityError, ExecutionError,
)
from app.orchestration.events import EventBus, EventType, Event
from app.orchestration.executor import AlgorithmExecutor, HttpAlgorithmExecutor
from app.orchestration.monitoring import MonitoringEngine
from app.orchestration.registry import AlgorithmRegistry
from app.orchestration.pipeline import PipelineEngine
from app.orchestration.abtesting import ABTestingEngine
from app.orchestration.analytics import AnalyticsEngine
from app.orchestration.services import OrchestrationServices

__all__ = [
    "OrchestrationError", "ValidationError", "ConflictError", "NotFoundError",
    "StateError", "NotEligibleError", "CapacityError", "ExecutionError",
    "EventBus", "EventType", "Event",
    "AlgorithmExecutor", "HttpAlgorithmExecutor",
    "MonitoringEngine", "AlgorithmRegistry", "PipelineEngine", "ABTestingEngine",
    "AnalyticsEngine", "OrchestrationServices",
]
