"""
Pipeline Engine — executes multi-stage algorithm workflows.

A pipeline is a DAG of stages. Execution proceeds in wavefronts: every
stage whose dependencies have all run is dispatched concurrently, outputs
are merged in declaration order, and the next frontier is computed. Stages
can be skipped by conditions evaluated against the run's data view, and
every executor call is bounded by the stage timeout and retry policy.

A global ceiling (``max_concurrent``) limits simultaneous runs. Excess runs
wait in a FIFO queue that a background ticker drains as slots free up.
"""

import asyncio
import logging
import os
import time
from collections import OrderedDict, deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.orchestration.conditions import evaluate_rules, get_nested_value, set_nested_value
from app.orchestration.errors import CapacityError, ExecutionError, NotFoundError, ValidationError
from app.orchestration.events import EventBus, EventType
from app.orchestration.executor import AlgorithmExecutor
from app.orchestration.models import (
    AlgorithmResult,
    ExecutionContext,
    InputSource,
    OutputTarget,
    PipelineDefinition,
    PipelineExecutionResult,
    PipelineMetrics,
    PipelineStage,
    PipelineStatus,
    StageMetrics,
    new_id,
    utcnow,
)
from app.orchestration.monitoring import MonitoringEngine
from app.orchestration.retry import call_with_retry
from app.orchestration.stats import percentile
from app.orchestration.store import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)

MAX_RECENT_EXECUTION_TIMES = 1000


@dataclass
class PipelineRun:
    """Mutable state of one pipeline execution."""
    execution_id: str
    pipeline: PipelineDefinition
    correlation_id: str
    user_id: str
    project_id: str | None
    input: Any
    timeout: float  # ms
    metadata: dict[str, Any] = field(default_factory=dict)
    stage_results: dict[str, AlgorithmResult] = field(default_factory=dict)
    accumulator: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    output_written: bool = False
    failed_stages: list[str] = field(default_factory=list)
    skipped_stages: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    cancelled: bool = False

    def log_context(self) -> dict[str, str]:
        return {"pipeline_id": self.pipeline.id, "execution_id": self.execution_id}

    def data_view(self) -> dict[str, Any]:
        return {
            "input": self.input,
            "accumulator": self.accumulator,
            "output": self.output,
            "stages": {sid: r.data for sid, r in self.stage_results.items()},
        }


def find_cycle(stages: list[PipelineStage]) -> list[str] | None:
    """DFS with a recursion stack. Returns one cycle as a list of stage ids, or None."""
    deps = {s.id: s.dependencies for s in stages}
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def visit(node: str) -> list[str] | None:
        visited.add(node)
        stack.append(node)
        on_stack.add(node)
        for dep in deps.get(node, []):
            if dep in on_stack:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        on_stack.discard(node)
        return None

    for stage in stages:
        if stage.id not in visited:
            cycle = visit(stage.id)
            if cycle:
                return cycle
    return None


class PipelineEngine:
    """Registers pipelines and runs them against the algorithm executor."""

    def __init__(
        self,
        event_bus: EventBus,
        executor: AlgorithmExecutor,
        monitoring: MonitoringEngine,
        pipelines: KeyValueStore | None = None,
        metrics: KeyValueStore | None = None,
        max_concurrent: int = 50,
        max_queue_size: int = 1000,
        recent_results_limit: int = 500,
        environment: Mapping[str, str] | None = None,
    ):
        self.event_bus = event_bus
        self.executor = executor
        self.monitoring = monitoring
        self._pipelines: KeyValueStore[PipelineDefinition] = pipelines or InMemoryStore()
        self._metrics: KeyValueStore[PipelineMetrics] = metrics or InMemoryStore()
        self.max_concurrent = max_concurrent
        self.max_queue_size = max_queue_size
        self.recent_results_limit = recent_results_limit
        self.environment = environment if environment is not None else os.environ
        self._active: dict[str, PipelineRun] = {}
        self._queue: deque[PipelineRun] = deque()
        self._recent: OrderedDict[str, PipelineExecutionResult] = OrderedDict()
        self._tasks: set[asyncio.Task] = set()
        self._metrics_lock = asyncio.Lock()

    # ── Registration ─────────────────────────────────────────────────────────

    async def register_pipeline(self, definition: PipelineDefinition) -> PipelineDefinition:
        self._validate(definition)
        await self._pipelines.set(definition.id, definition)
        async with self._metrics_lock:
            await self._metrics.set(definition.id, PipelineMetrics())
        logger.info(
            "Registered pipeline %s v%s (%d stages)",
            definition.id, definition.version, len(definition.stages),
            extra={"pipeline_id": definition.id},
        )
        await self.event_bus.publish(
            EventType.PIPELINE_REGISTERED,
            pipeline_id=definition.id,
            version=definition.version,
            stages=len(definition.stages),
        )
        return definition

    def _validate(self, definition: PipelineDefinition) -> None:
        if not definition.id or not definition.name or not definition.version:
            raise ValidationError("Pipeline definition must include id, name, and version")
        if not definition.stages:
            raise ValidationError("Pipeline must have at least one stage")

        ids = [s.id for s in definition.stages]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate stage ids: {', '.join(duplicates)}")

        known = set(ids)
        for stage in definition.stages:
            unknown = [d for d in stage.dependencies if d not in known]
            if unknown:
                raise ValidationError(
                    f"Stage {stage.id} depends on unknown stage(s): {', '.join(unknown)}",
                    stage_id=stage.id,
                )

        cycle = find_cycle(definition.stages)
        if cycle:
            raise ValidationError(
                f"Circular dependency detected: {' -> '.join(cycle)}",
                cycle=cycle,
            )

    async def get_pipeline(self, pipeline_id: str) -> PipelineDefinition:
        pipeline = await self._pipelines.get(pipeline_id)
        if pipeline is None:
            raise NotFoundError(f"Pipeline {pipeline_id} not found")
        return pipeline

    async def list_pipelines(self) -> list[PipelineDefinition]:
        return await self._pipelines.values()

    async def get_pipeline_metrics(self, pipeline_id: str) -> PipelineMetrics:
        metrics = await self._metrics.get(pipeline_id)
        if metrics is None:
            raise NotFoundError(f"Pipeline {pipeline_id} not found")
        return metrics

    # ── Execution entry points ───────────────────────────────────────────────

    async def execute(
        self,
        pipeline_id: str,
        input_data: Any,
        context: ExecutionContext | None = None,
    ) -> PipelineExecutionResult:
        pipeline = await self.get_pipeline(pipeline_id)
        if not pipeline.is_active:
            raise ValidationError(f"Pipeline {pipeline_id} is not active")

        context = context or ExecutionContext()
        run = PipelineRun(
            execution_id=new_id(),
            pipeline=pipeline,
            correlation_id=context.correlation_id,
            user_id=context.user_id,
            project_id=context.project_id,
            input=input_data,
            timeout=context.timeout or pipeline.timeout,
            metadata=dict(context.metadata),
        )

        # Waiting runs keep their turn: a fresh submission only starts when none are queued.
        if len(self._active) < self.max_concurrent and not self._queue:
            self._active[run.execution_id] = run
            return await self._run(run)

        if len(self._queue) >= self.max_queue_size:
            raise CapacityError(
                f"Pipeline queue is full ({self.max_queue_size} waiting)",
                pipeline_id=pipeline_id,
            )
        self._queue.append(run)
        position = len(self._queue)
        result = PipelineExecutionResult(
            execution_id=run.execution_id,
            pipeline_id=pipeline_id,
            correlation_id=run.correlation_id,
            status=PipelineStatus.QUEUED,
            pipeline_version=pipeline.version,
            metadata={
                "execution_id": run.execution_id,
                "correlation_id": run.correlation_id,
                "queue_position": position,
            },
        )
        self._remember(result)
        logger.info(
            "Pipeline %s queued at position %d (execution %s)",
            pipeline_id, position, run.execution_id,
            extra={"pipeline_id": pipeline_id, "execution_id": run.execution_id},
        )
        await self.event_bus.publish(
            EventType.PIPELINE_QUEUED,
            pipeline_id=pipeline_id,
            execution_id=run.execution_id,
            queue_position=position,
        )
        return result

    async def process_queue(self) -> int:
        """Promote queued runs in FIFO order while slots are free. Returns the number started."""
        started = 0
        while self._queue and len(self._active) < self.max_concurrent:
            run = self._queue.popleft()
            self._active[run.execution_id] = run
            task = asyncio.create_task(self._run(run), name=f"pipeline-{run.execution_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    async def cancel(self, execution_id: str) -> bool:
        for run in self._queue:
            if run.execution_id == execution_id:
                self._queue.remove(run)
                run.cancelled = True
                result = self._build_result(run, PipelineStatus.CANCELLED, error="Cancelled while queued")
                self._remember(result)
                logger.info(
                    "Cancelled queued execution %s", execution_id,
                    extra={"pipeline_id": run.pipeline.id, "execution_id": execution_id},
                )
                await self.event_bus.publish(
                    EventType.PIPELINE_CANCELLED,
                    pipeline_id=run.pipeline.id,
                    execution_id=execution_id,
                )
                return True

        run = self._active.pop(execution_id, None)
        if run is None:
            return False
        run.cancelled = True
        logger.info(
            "Cancelled active execution %s", execution_id,
            extra={"pipeline_id": run.pipeline.id, "execution_id": execution_id},
        )
        return True

    def get_active_executions(self) -> list[dict[str, Any]]:
        return [
            {
                "execution_id": run.execution_id,
                "pipeline_id": run.pipeline.id,
                "correlation_id": run.correlation_id,
                "user_id": run.user_id,
                "started_at": run.created_at,
                "completed_stages": list(run.stage_results),
            }
            for run in self._active.values()
        ]

    def get_queued_executions(self) -> list[str]:
        return [run.execution_id for run in self._queue]

    def get_execution_result(self, execution_id: str) -> PipelineExecutionResult:
        result = self._recent.get(execution_id)
        if result is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return result

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ── Run ──────────────────────────────────────────────────────────────────

    async def _run(self, run: PipelineRun) -> PipelineExecutionResult:
        # Caller has already placed the run in self._active.
        start = time.perf_counter()
        error: str | None = None
        try:
            await asyncio.wait_for(self._execute_stages(run), timeout=run.timeout / 1000)
        except asyncio.TimeoutError:
            error = f"Pipeline timeout after {run.timeout:.0f}ms"
        except ExecutionError as e:
            error = e.message
        except Exception as e:
            logger.exception(
                "Pipeline %s execution %s crashed", run.pipeline.id, run.execution_id, extra=run.log_context(),
            )
            error = f"{type(e).__name__}: {e}"
        finally:
            self._active.pop(run.execution_id, None)
        elapsed = (time.perf_counter() - start) * 1000

        if run.cancelled:
            status = PipelineStatus.CANCELLED
            error = error or "Cancelled"
        elif error is not None:
            status = PipelineStatus.FAILED
        else:
            status = PipelineStatus.COMPLETED

        result = self._build_result(run, status, error=error, execution_time=elapsed)
        self._remember(result)
        if status != PipelineStatus.CANCELLED:
            await self._update_pipeline_metrics(run.pipeline.id, elapsed, status == PipelineStatus.COMPLETED)

        event = {
            PipelineStatus.COMPLETED: EventType.PIPELINE_COMPLETED,
            PipelineStatus.FAILED: EventType.PIPELINE_FAILED,
            PipelineStatus.CANCELLED: EventType.PIPELINE_CANCELLED,
        }[status]
        if status == PipelineStatus.FAILED:
            logger.warning(
                "Pipeline %s execution %s failed: %s", run.pipeline.id, run.execution_id, error,
                extra={**run.log_context(), "duration_ms": round(elapsed, 2)},
            )
        await self.event_bus.publish(
            event,
            pipeline_id=run.pipeline.id,
            execution_id=run.execution_id,
            correlation_id=run.correlation_id,
            execution_time=elapsed,
            error=error,
        )
        return result

    def _build_result(
        self,
        run: PipelineRun,
        status: PipelineStatus,
        error: str | None = None,
        execution_time: float = 0.0,
    ) -> PipelineExecutionResult:
        metadata: dict[str, Any] = {
            "execution_id": run.execution_id,
            "correlation_id": run.correlation_id,
        }
        if run.failed_stages:
            metadata["failed_stages"] = list(run.failed_stages)
        if run.skipped_stages:
            metadata["skipped_stages"] = list(run.skipped_stages)
        return PipelineExecutionResult(
            execution_id=run.execution_id,
            pipeline_id=run.pipeline.id,
            correlation_id=run.correlation_id,
            status=status,
            data=run.output if run.output_written else run.accumulator,
            error=error,
            execution_time=execution_time,
            stage_results=dict(run.stage_results),
            pipeline_version=run.pipeline.version,
            metadata=metadata,
        )

    def _remember(self, result: PipelineExecutionResult) -> None:
        self._recent[result.execution_id] = result
        self._recent.move_to_end(result.execution_id)
        while len(self._recent) > self.recent_results_limit:
            self._recent.popitem(last=False)

    async def _execute_stages(self, run: PipelineRun) -> None:
        stages = run.pipeline.stages
        done: set[str] = set()
        blocked: set[str] = set()
        semaphore = asyncio.Semaphore(run.pipeline.max_concurrency)

        async def bounded(stage: PipelineStage) -> AlgorithmResult:
            async with semaphore:
                return await self._execute_stage(run, stage)

        while len(done) < len(stages):
            if run.cancelled:
                return

            frontier = [s for s in stages if s.id not in done and all(d in done for d in s.dependencies)]
            if not frontier:
                remaining = [s.id for s in stages if s.id not in done]
                raise ExecutionError(f"No runnable stages left (cycle among {', '.join(remaining)})")

            runnable = []
            for stage in frontier:
                if any(d in blocked for d in stage.dependencies):
                    run.stage_results[stage.id] = AlgorithmResult(
                        success=False,
                        error="upstream_failed",
                        algorithm_version="skipped",
                        metadata={"stage_id": stage.id, "skipped": True, "reason": "upstream_failed"},
                    )
                    run.skipped_stages.append(stage.id)
                    blocked.add(stage.id)
                    done.add(stage.id)
                else:
                    runnable.append(stage)

            results = await asyncio.gather(*(bounded(s) for s in runnable))

            for stage, result in zip(runnable, results):
                run.stage_results[stage.id] = result
                done.add(stage.id)
                if not result.success:
                    run.failed_stages.append(stage.id)
                    blocked.add(stage.id)
                elif not result.metadata.get("skipped"):
                    self._merge_output(run, stage, result.data)

            if run.failed_stages and run.pipeline.halt_on_stage_failure:
                first = run.failed_stages[0]
                raise ExecutionError(
                    f"Stage {first} failed: {run.stage_results[first].error}",
                    failed_stages=list(run.failed_stages),
                )

    async def _execute_stage(self, run: PipelineRun, stage: PipelineStage) -> AlgorithmResult:
        if stage.conditions and not evaluate_rules(stage.conditions, run.data_view()):
            logger.debug(
                "Stage %s skipped: conditions not met", stage.id,
                extra={**run.log_context(), "stage_id": stage.id},
            )
            return AlgorithmResult(
                success=True,
                algorithm_version="skipped",
                metadata={"stage_id": stage.id, "skipped": True, "reason": "conditions_not_met"},
            )

        stage_input = self._map_input(run, stage)
        context = ExecutionContext(
            user_id=run.user_id,
            project_id=run.project_id,
            correlation_id=run.correlation_id,
            timeout=stage.timeout,
            version=stage.version,
            metadata={
                "pipeline_id": run.pipeline.id,
                "execution_id": run.execution_id,
                "stage_id": stage.id,
            },
        )

        start = time.perf_counter()
        result, attempts = await call_with_retry(
            lambda: self.executor.execute(stage.algorithm_id, stage_input, context),
            stage.retry_policy,
            stage.timeout,
            label=f"stage {stage.id}",
        )
        elapsed = (time.perf_counter() - start) * 1000
        result = result.model_copy(update={
            "execution_time": elapsed,
            "metadata": {**result.metadata, "stage_id": stage.id, "attempts": attempts},
        })
        if not result.success:
            logger.warning(
                "Stage %s of pipeline %s failed after %d attempt(s): %s",
                stage.id, run.pipeline.id, attempts, result.error,
                extra={
                    **run.log_context(),
                    "stage_id": stage.id,
                    "algorithm_id": stage.algorithm_id,
                    "duration_ms": round(elapsed, 2),
                },
            )

        await self.monitoring.record_execution(stage.algorithm_id, context, result, elapsed)
        await self._update_stage_metrics(run.pipeline.id, stage.id, elapsed, result.success)
        await self.event_bus.publish(
            EventType.STAGE_COMPLETED,
            pipeline_id=run.pipeline.id,
            execution_id=run.execution_id,
            stage_id=stage.id,
            algorithm_id=stage.algorithm_id,
            success=result.success,
            execution_time=elapsed,
            attempts=attempts,
        )
        return result

    def _map_input(self, run: PipelineRun, stage: PipelineStage) -> Any:
        mapping = stage.input_mapping
        if mapping.source == InputSource.PIPELINE_INPUT:
            value = get_nested_value(run.input, mapping.path)
        elif mapping.source == InputSource.PREVIOUS_STAGE:
            value = get_nested_value(run.accumulator, mapping.path)
        elif mapping.source == InputSource.ENVIRONMENT:
            value = self.environment.get(mapping.path)
        else:
            value = None
        return mapping.default_value if value is None else value

    def _merge_output(self, run: PipelineRun, stage: PipelineStage, data: Any) -> None:
        mapping = stage.output_mapping
        if mapping.target == OutputTarget.PIPELINE_OUTPUT:
            if not mapping.path:
                run.output = data
            else:
                if not isinstance(run.output, dict):
                    run.output = {}
                set_nested_value(run.output, mapping.path, data)
            run.output_written = True
        elif mapping.target == OutputTarget.NEXT_STAGE:
            set_nested_value(run.accumulator, mapping.path or stage.id, data)
        else:
            run.accumulator[mapping.path or stage.id] = data

    # ── Metrics ──────────────────────────────────────────────────────────────

    async def _update_pipeline_metrics(self, pipeline_id: str, execution_time: float, success: bool) -> None:
        async with self._metrics_lock:
            m = await self._metrics.get(pipeline_id) or PipelineMetrics()
            m.total_executions += 1
            if success:
                m.successful_executions += 1
            else:
                m.failed_executions += 1
            m.average_execution_time += (execution_time - m.average_execution_time) / m.total_executions
            m.recent_execution_times = (m.recent_execution_times + [execution_time])[-MAX_RECENT_EXECUTION_TIMES:]
            m.p95_execution_time = percentile(m.recent_execution_times, 95)
            m.p99_execution_time = percentile(m.recent_execution_times, 99)
            m.error_rate = m.failed_executions / m.total_executions
            m.last_execution_time = utcnow()
            await self._metrics.set(pipeline_id, m)

    async def _update_stage_metrics(self, pipeline_id: str, stage_id: str, execution_time: float, success: bool) -> None:
        async with self._metrics_lock:
            m = await self._metrics.get(pipeline_id) or PipelineMetrics()
            s = m.stage_metrics.setdefault(stage_id, StageMetrics())
            s.total_executions += 1
            if not success:
                s.failed_executions += 1
            s.average_execution_time += (execution_time - s.average_execution_time) / s.total_executions
            s.error_rate = s.failed_executions / s.total_executions
            await self._metrics.set(pipeline_id, m)
