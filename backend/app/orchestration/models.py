"""
Domain models for the orchestration layer.

Definitions that cross the API boundary or live in a KeyValueStore are
pydantic models so they validate on the way in and serialize for Redis.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# ── Executor contract ────────────────────────────────────────────────────────

class ExecutionContext(BaseModel):
    """Per-call context handed to the executor."""
    user_id: str = "system"
    project_id: str | None = None
    correlation_id: str = Field(default_factory=new_id)
    timeout: float | None = None  # ms
    version: str | None = None
    configuration: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AlgorithmResult(BaseModel):
    """What the single-algorithm executor returns for one call."""
    success: bool
    data: Any = None
    error: str | None = None
    execution_time: float = 0.0  # ms
    algorithm_version: str = "unknown"
    confidence: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Registry ─────────────────────────────────────────────────────────────────

class AlgorithmCategory(str, Enum):
    ANALYSIS = "analysis"
    PREDICTION = "prediction"
    CLASSIFICATION = "classification"
    OPTIMIZATION = "optimization"
    RECOMMENDATION = "recommendation"
    NLP = "nlp"
    VISION = "vision"


class AlgorithmPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    BACKGROUND = "background"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    ACTIVE = "active"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AlgorithmDefinition(BaseModel):
    id: str
    name: str
    description: str = ""
    version: str
    category: str
    priority: str = AlgorithmPriority.NORMAL.value
    tags: list[str] = Field(default_factory=list)


class AlgorithmDependency(BaseModel):
    algorithm_id: str
    version: str
    required: bool = True
    description: str = ""


class PerformanceBaseline(BaseModel):
    average_execution_time: float = 0.0  # ms
    success_rate: float = 1.0
    throughput: float = 0.0  # per minute


class AlgorithmVersion(BaseModel):
    id: str = Field(default_factory=new_id)
    algorithm_id: str
    version: str
    description: str = ""
    release_notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str
    is_active: bool = True
    is_default: bool = False
    performance_baseline: PerformanceBaseline = Field(default_factory=PerformanceBaseline)
    dependencies: list[AlgorithmDependency] = Field(default_factory=list)
    configuration: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConfigProperty(BaseModel):
    type: str = "string"
    description: str = ""
    default: Any = None


class ConfigSchema(BaseModel):
    properties: dict[str, ConfigProperty] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class HealthCheck(BaseModel):
    name: str
    status: HealthStatus
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    response_time: float = 0.0  # ms


class DeploymentMetrics(BaseModel):
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time: float = 0.0
    error_rate: float = 0.0
    last_updated: datetime = Field(default_factory=utcnow)


class Deployment(BaseModel):
    id: str = Field(default_factory=new_id)
    algorithm_id: str
    version: str
    environment: Environment
    status: DeploymentStatus = DeploymentStatus.PENDING
    deployed_at: datetime = Field(default_factory=utcnow)
    deployed_by: str
    rollback_version: str | None = None
    status_reason: str = ""
    health_checks: list[HealthCheck] = Field(default_factory=list)
    metrics: DeploymentMetrics = Field(default_factory=DeploymentMetrics)


# ── Pipelines ────────────────────────────────────────────────────────────────

class InputSource(str, Enum):
    PIPELINE_INPUT = "pipeline_input"
    PREVIOUS_STAGE = "previous_stage"
    CONSTANT = "constant"
    ENVIRONMENT = "environment"


class OutputTarget(str, Enum):
    PIPELINE_OUTPUT = "pipeline_output"
    NEXT_STAGE = "next_stage"
    ACCUMULATOR = "accumulator"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class InputMapping(BaseModel):
    source: InputSource = InputSource.PIPELINE_INPUT
    path: str = ""
    default_value: Any = None


class OutputMapping(BaseModel):
    target: OutputTarget = OutputTarget.ACCUMULATOR
    path: str = ""


class Condition(BaseModel):
    """One field/operator/value comparison, joined to its siblings by ``logic``."""
    field: str
    operator: str
    value: Any = None
    logic: str = "and"  # and | or


class RetryPolicy(BaseModel):
    max_retries: int = Field(0, ge=0, le=10)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = Field(100.0, ge=0)  # ms
    max_delay: float = Field(5000.0, ge=0)  # ms
    retryable_errors: list[str] = Field(default_factory=list)


class PipelineStage(BaseModel):
    id: str
    name: str = ""
    algorithm_id: str
    version: str | None = None
    input_mapping: InputMapping = Field(default_factory=InputMapping)
    output_mapping: OutputMapping = Field(default_factory=OutputMapping)
    conditions: list[Condition] = Field(default_factory=list)
    timeout: float = Field(30000.0, gt=0)  # ms
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    dependencies: list[str] = Field(default_factory=list)


class PipelineDefinition(BaseModel):
    id: str
    name: str
    description: str = ""
    version: str
    stages: list[PipelineStage] = Field(default_factory=list)
    input_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None
    timeout: float = Field(300000.0, gt=0)  # ms
    max_concurrency: int = Field(10, ge=1)
    is_active: bool = True
    halt_on_stage_failure: bool = True
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PipelineStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    QUEUED = "queued"
    CANCELLED = "cancelled"


class PipelineExecutionResult(BaseModel):
    execution_id: str
    pipeline_id: str
    correlation_id: str
    status: PipelineStatus
    data: Any = None
    error: str | None = None
    execution_time: float = 0.0  # ms
    stage_results: dict[str, AlgorithmResult] = Field(default_factory=dict)
    pipeline_version: str = "unknown"
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == PipelineStatus.COMPLETED


class StageMetrics(BaseModel):
    total_executions: int = 0
    failed_executions: int = 0
    average_execution_time: float = 0.0
    error_rate: float = 0.0


class PipelineMetrics(BaseModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time: float = 0.0
    p95_execution_time: float = 0.0
    p99_execution_time: float = 0.0
    error_rate: float = 0.0
    last_execution_time: datetime | None = None
    recent_execution_times: list[float] = Field(default_factory=list)
    stage_metrics: dict[str, StageMetrics] = Field(default_factory=dict)


# ── Monitoring ───────────────────────────────────────────────────────────────

class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ThresholdMetric(str, Enum):
    ERROR_RATE = "error_rate"
    RESPONSE_TIME = "response_time"
    THROUGHPUT = "throughput"


class PerformanceThreshold(BaseModel):
    algorithm_id: str
    metric: ThresholdMetric
    operator: str = "gt"  # gt | lt | gte | lte | eq
    threshold: float
    severity: AlertSeverity = AlertSeverity.MEDIUM
    enabled: bool = True


class PerformanceAlert(BaseModel):
    id: str = Field(default_factory=new_id)
    algorithm_id: str
    type: ThresholdMetric
    severity: AlertSeverity
    message: str
    threshold: float
    current_value: float
    occurrences: int = 1
    timestamp: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    resolved_at: datetime | None = None


# ── A/B testing ──────────────────────────────────────────────────────────────

class TestStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_TEST_STATES = frozenset({TestStatus.COMPLETED, TestStatus.CANCELLED})


class Recommendation(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"
    EXTEND = "extend"
    DEPLOY = "deploy"


class AlgorithmVariant(BaseModel):
    id: str
    name: str = ""
    algorithm_id: str
    version: str
    configuration: dict[str, Any] = Field(default_factory=dict)
    weight: float = Field(ge=0, le=100)
    is_control: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class TrafficAllocation(BaseModel):
    total_traffic: float = Field(100.0, ge=0, le=100)


class TargetingRules(BaseModel):
    custom_rules: list[Condition] = Field(default_factory=list)
    include_users: list[str] = Field(default_factory=list)
    exclude_users: list[str] = Field(default_factory=list)


class SuccessCriteria(BaseModel):
    metric: str = "success_rate"
    operator: str = "gt"
    threshold: float = 0.0
    improvement: float = 5.0  # minimum improvement, percent


class TestMetrics(BaseModel):
    primary_metric: str = "success_rate"
    secondary_metrics: list[str] = Field(default_factory=list)
    success_criteria: SuccessCriteria = Field(default_factory=SuccessCriteria)
    statistical_significance: float = Field(0.95, gt=0, lt=1)
    minimum_sample_size: int = Field(100, ge=1)
    maximum_duration: float = Field(336.0, gt=0)  # hours


class ABTestDefinition(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    algorithm_id: str
    variants: list[AlgorithmVariant]
    traffic_allocation: TrafficAllocation = Field(default_factory=TrafficAllocation)
    targeting: TargetingRules = Field(default_factory=TargetingRules)
    metrics: TestMetrics = Field(default_factory=TestMetrics)
    status: TestStatus = TestStatus.DRAFT
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utcnow)
    start_date: datetime | None = None
    end_date: datetime | None = None
    stop_reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def control(self) -> AlgorithmVariant:
        return next(v for v in self.variants if v.is_control)

    def variant(self, variant_id: str) -> AlgorithmVariant | None:
        return next((v for v in self.variants if v.id == variant_id), None)


class UserVariantAssignment(BaseModel):
    test_id: str
    user_id: str
    variant_id: str
    assigned_at: datetime = Field(default_factory=utcnow)


class TestExecutionResult(BaseModel):
    test_id: str
    variant_id: str
    user_id: str
    session_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    result: AlgorithmResult
    execution_time: float
    is_control: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class RunningStat(BaseModel):
    """Count, mean and sum of squared deviations, updated one sample at a time (Welford)."""
    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)

    @property
    def variance(self) -> float:
        """Sample variance (n - 1)."""
        return self.m2 / (self.count - 1) if self.count > 1 else 0.0


class VariantTally(BaseModel):
    """Running per-variant totals; statistics read these instead of the result log."""
    test_id: str
    variant_id: str
    executions: int = 0
    successes: int = 0
    execution_time: RunningStat = Field(default_factory=RunningStat)
    confidence: RunningStat = Field(default_factory=RunningStat)

    def record(self, success: bool, execution_time: float, confidence: float | None) -> None:
        self.executions += 1
        if success:
            self.successes += 1
        self.execution_time.add(execution_time)
        if confidence is not None:
            self.confidence.add(confidence)


class ConfidenceInterval(BaseModel):
    lower: float = 0.0
    upper: float = 0.0


class VariantStatistics(BaseModel):
    test_id: str
    variant_id: str
    is_control: bool
    total_executions: int
    successful_executions: int
    failed_executions: int
    average_execution_time: float
    average_confidence: float
    conversion_rate: float
    metric_values: dict[str, float] = Field(default_factory=dict)
    confidence_interval: ConfidenceInterval = Field(default_factory=ConfidenceInterval)
    p_value: float = 1.0
    statistical_significance: float = 0.0
    is_significant: bool = False
    improvement: float = 0.0  # percent vs control on the primary metric


class TestRecommendation(BaseModel):
    test_id: str
    recommendation: Recommendation
    confidence: float
    reasoning: str
    best_variant_id: str | None = None
    primary_metric: float = 0.0
    improvement: float = 0.0
    statistical_significance: float = 0.0
    next_steps: list[str] = Field(default_factory=list)


# ── Monitoring views ─────────────────────────────────────────────────────────

class MetricBucket(BaseModel):
    """Aggregates for one algorithm over one bucket window."""
    algorithm_id: str
    timestamp: float  # bucket start, epoch seconds
    throughput: int = 0
    failures: int = 0
    average_latency: float = 0.0  # ms
    error_rate: float = 0.0
    cpu_usage: float | None = None  # percent
    memory_usage: float | None = None  # MB
    custom_metrics: dict[str, float] = Field(default_factory=dict)


class TimeSeriesPoint(BaseModel):
    timestamp: float
    throughput: int
    average_latency: float
    error_rate: float


class DashboardData(BaseModel):
    algorithm_id: str
    time_window: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    average_response_time: float
    p95_response_time: float
    p99_response_time: float
    throughput: float  # executions per minute
    error_rate: float
    availability: float  # percent
    time_series: list[TimeSeriesPoint] = Field(default_factory=list)
    alerts: list[PerformanceAlert] = Field(default_factory=list)
    health_score: float


class SystemMetrics(BaseModel):
    total_algorithms: int
    total_executions: int
    average_health_score: float
    critical_alerts: int
    active_alerts: int
    average_response_time: float
    total_throughput: float
    cpu_usage: float | None = None
    memory_usage: float | None = None


# ── Analytics views ──────────────────────────────────────────────────────────

class ChangeSignificance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class OverallTrend(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class MetricChange(BaseModel):
    metric: str
    baseline: float
    current: float
    absolute_change: float
    percentage_change: float  # 0 when the baseline is 0
    significance: ChangeSignificance
    improved: bool | None = None  # None when unchanged


class ComparisonSummary(BaseModel):
    overall_trend: OverallTrend
    key_insights: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class PerformanceComparison(BaseModel):
    """Registry baseline of an algorithm against what monitoring saw in a time window."""
    algorithm_id: str
    time_window: str
    executions: int
    baseline: PerformanceBaseline
    current: PerformanceBaseline | None = None  # None without executions in the window
    changes: list[MetricChange] = Field(default_factory=list)
    summary: ComparisonSummary


class PerformerScore(BaseModel):
    algorithm_id: str
    health_score: float
    total_executions: int


class MetricTrend(BaseModel):
    metric: str
    trend: TrendDirection
    previous: float
    current: float
    change: float  # percent


class SystemAnalytics(BaseModel):
    total_algorithms: int
    total_executions: int
    average_health_score: float
    critical_alerts: int
    top_performers: list[PerformerScore] = Field(default_factory=list)
    trends: list[MetricTrend] = Field(default_factory=list)
