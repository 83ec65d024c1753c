"""
Service container — wires the four engines together once per process.

The FastAPI lifespan builds an ``OrchestrationServices`` from settings,
stores it on ``app.state.services`` and calls ``start()``/``stop()`` around
the application's lifetime. Tests build one directly with a fake executor.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

from app.config import Settings
from app.middleware import metrics as prom
from app.orchestration.abtesting import ABTestingEngine
from app.orchestration.analytics import AnalyticsEngine
from app.orchestration.events import Event, EventBus, EventType
from app.orchestration.executor import AlgorithmExecutor, HttpAlgorithmExecutor
from app.orchestration.models import (
    ABTestDefinition,
    AlgorithmDefinition,
    AlgorithmVersion,
    ConfigSchema,
    Deployment,
    Environment,
    PerformanceAlert,
    PerformanceBaseline,
    PerformanceThreshold,
    PipelineDefinition,
    PipelineMetrics,
    TestExecutionResult,
    UserVariantAssignment,
    VariantTally,
)
from app.orchestration.monitoring import MonitoringEngine
from app.orchestration.pipeline import PipelineEngine
from app.orchestration.registry import AlgorithmRegistry
from app.orchestration.store import StoreFactory

logger = logging.getLogger(__name__)

_PIPELINE_OUTCOMES = {
    EventType.PIPELINE_COMPLETED: "completed",
    EventType.PIPELINE_FAILED: "failed",
    EventType.PIPELINE_CANCELLED: "cancelled",
    EventType.PIPELINE_QUEUED: "queued",
}

_DEPLOYMENT_OUTCOMES = {
    EventType.DEPLOYMENT_SUCCEEDED: "succeeded",
    EventType.DEPLOYMENT_FAILED: "failed",
    EventType.DEPLOYMENT_ROLLED_BACK: "rolled_back",
}


class OrchestrationServices:
    """Holds the engines, their shared event bus and the background loops."""

    def __init__(
        self,
        settings: Settings,
        executor: AlgorithmExecutor | None = None,
        store_factory: StoreFactory | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.settings = settings
        self.event_bus = EventBus()
        self.executor = executor or HttpAlgorithmExecutor(settings.executor_url, settings.executor_timeout)
        self.stores = store_factory or StoreFactory(
            backend=settings.store_backend,
            redis_url=settings.redis_url,
            namespace=settings.redis_namespace,
        )
        self.environment = Environment(settings.deployment_environment)

        monitoring_kwargs: dict[str, Any] = {}
        if clock is not None:
            monitoring_kwargs["clock"] = clock
        self.monitoring = MonitoringEngine(
            self.event_bus,
            thresholds=self.stores.create("thresholds", list[PerformanceThreshold]),
            alerts=self.stores.create("alerts", list[PerformanceAlert]),
            bucket_seconds=settings.metrics_bucket_seconds,
            retention_days=settings.metrics_retention_days,
            max_buckets=settings.max_metrics_per_algorithm,
            response_time_ceiling=settings.response_time_ceiling_ms,
            alert_cooldown=settings.alert_cooldown_seconds,
            **monitoring_kwargs,
        )
        self.registry = AlgorithmRegistry(
            self.event_bus,
            algorithms=self.stores.create("algorithms", AlgorithmDefinition),
            versions=self.stores.create("versions", list[AlgorithmVersion]),
            deployments=self.stores.create("deployments", list[Deployment]),
            schemas=self.stores.create("schemas", ConfigSchema),
            baselines=self.stores.create("baselines", PerformanceBaseline),
            executor=self.executor,
            smoke_test_timeout=settings.deployment_smoke_test_timeout,
        )
        self.pipelines = PipelineEngine(
            self.event_bus,
            self.executor,
            self.monitoring,
            pipelines=self.stores.create("pipelines", PipelineDefinition),
            metrics=self.stores.create("pipeline_metrics", PipelineMetrics),
            max_concurrent=settings.max_concurrent_pipelines,
            max_queue_size=settings.max_queue_size,
            recent_results_limit=settings.recent_results_limit,
        )
        self.abtests = ABTestingEngine(
            self.event_bus,
            self.executor,
            self.monitoring,
            tests=self.stores.create("abtests", ABTestDefinition),
            assignments=self.stores.create("assignments", UserVariantAssignment),
            results=self.stores.create("abtest_results", TestExecutionResult),
            tallies=self.stores.create("abtest_tallies", VariantTally),
            rng=rng,
        )
        self.analytics = AnalyticsEngine(self.monitoring, self.registry)
        self._tasks: list[asyncio.Task] = []

        self.event_bus.subscribe(None, self._log_event)
        self.event_bus.subscribe(None, self._record_prometheus)
        self.event_bus.subscribe(EventType.EXECUTION_RECORDED, self._feed_deployment_metrics)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop("pipeline-queue", self.pipelines.process_queue, self.settings.queue_poll_interval),
                name="pipeline-queue",
            ),
            asyncio.create_task(
                self._loop("resource-sampler", self.monitoring.attach_resource_sample,
                           self.settings.resource_sample_interval),
                name="resource-sampler",
            ),
            asyncio.create_task(
                self._loop("ab-analyzer", self.abtests.analyze_running_tests, self.settings.ab_analysis_interval),
                name="ab-analyzer",
            ),
        ]
        logger.info("Orchestration background loops started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.pipelines.shutdown()
        await self.executor.close()
        await self.stores.close()
        logger.info("Orchestration services stopped")

    @staticmethod
    async def _loop(name: str, step: Callable[[], Awaitable[Any]], interval: float) -> None:
        while True:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Background loop %s iteration failed", name)
            await asyncio.sleep(interval)

    # ── Event subscribers ────────────────────────────────────────────────────

    async def _log_event(self, event: Event) -> None:
        if event.type == EventType.EXECUTION_RECORDED:
            logger.debug("event %s %s", event.type.value, event.payload)
        else:
            logger.info("event %s %s", event.type.value, event.payload)

    async def _record_prometheus(self, event: Event) -> None:
        p = event.payload
        if event.type in _PIPELINE_OUTCOMES:
            prom.pipeline_runs_total.labels(pipeline=p["pipeline_id"], status=_PIPELINE_OUTCOMES[event.type]).inc()
            if event.type != EventType.PIPELINE_QUEUED and p.get("execution_time") is not None:
                prom.pipeline_duration_seconds.labels(pipeline=p["pipeline_id"]).observe(p["execution_time"] / 1000)
            prom.pipeline_queue_depth.set(len(self.pipelines.get_queued_executions()))
            prom.pipeline_active_executions.set(len(self.pipelines.get_active_executions()))
        elif event.type == EventType.STAGE_COMPLETED:
            prom.pipeline_stage_runs_total.labels(
                pipeline=p["pipeline_id"], stage=p["stage_id"], success=str(p["success"]).lower(),
            ).inc()
        elif event.type == EventType.EXECUTION_RECORDED:
            prom.algorithm_executions_total.labels(
                algorithm=p["algorithm_id"], success=str(p["success"]).lower(),
            ).inc()
            prom.algorithm_execution_duration_seconds.labels(algorithm=p["algorithm_id"]).observe(
                p["execution_time"] / 1000
            )
        elif event.type == EventType.ALERT_TRIGGERED:
            prom.algorithm_alerts_total.labels(
                algorithm=p["algorithm_id"], metric=p["metric"], severity=p["severity"],
            ).inc()
        elif event.type in _DEPLOYMENT_OUTCOMES:
            prom.algorithm_deployments_total.labels(
                environment=p["environment"], outcome=_DEPLOYMENT_OUTCOMES[event.type],
            ).inc()
        elif event.type == EventType.TEST_EXECUTION_RECORDED:
            prom.abtest_executions_total.labels(
                test=p["test_id"], variant=p["variant_id"], success=str(p["success"]).lower(),
            ).inc()

    async def _feed_deployment_metrics(self, event: Event) -> None:
        p = event.payload
        await self.registry.update_deployment_metrics(
            p["algorithm_id"], self.environment, p["success"], p["execution_time"],
        )
