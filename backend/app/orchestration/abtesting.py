"""
A/B Testing Engine — compares algorithm variants on live traffic.

Lifecycle:
    draft → running ⇄ paused
    {draft, running, paused} → completed | cancelled   (terminal)

A call through ``execute_with_ab_test`` passes three gates (traffic
percentage, targeting rules, include/exclude lists), resolves the caller's
sticky variant, runs it through the executor and records the outcome.
Statistics compare every treatment with the control: a two-proportion
z-test for success rate, Welch's t-test for continuous metrics.

Each outcome is appended to the test's result log and folded into a running
per-variant tally, so recording costs the same on the first call and the
millionth, and statistics never rescan the log.
"""

import asyncio
import logging
import random
import time
from datetime import timedelta
from typing import Any

from app.orchestration.conditions import evaluate_rules
from app.orchestration.errors import ConflictError, NotEligibleError, NotFoundError, StateError, ValidationError
from app.orchestration.events import EventBus, EventType
from app.orchestration.executor import AlgorithmExecutor
from app.orchestration.models import (
    TERMINAL_TEST_STATES,
    ABTestDefinition,
    AlgorithmResult,
    AlgorithmVariant,
    ConfidenceInterval,
    ExecutionContext,
    Recommendation,
    RunningStat,
    TestExecutionResult,
    TestRecommendation,
    TestStatus,
    UserVariantAssignment,
    VariantStatistics,
    VariantTally,
    utcnow,
)
from app.orchestration.monitoring import MonitoringEngine
from app.orchestration.stats import (
    mean_interval_summary,
    proportion_interval,
    two_proportion_z_test,
    welch_t_test_summary,
)
from app.orchestration.store import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)

SUPPORTED_METRICS = ("success_rate", "average_confidence", "average_execution_time")
LOWER_IS_BETTER = frozenset({"average_execution_time"})
WEIGHT_TOLERANCE = 0.01

NEXT_STEPS = {
    Recommendation.DEPLOY: [
        "Deploy winning variant to production",
        "Monitor performance in production",
        "Archive test results",
    ],
    Recommendation.STOP: [
        "Stop test immediately",
        "Analyze why treatment performed worse",
        "Consider alternative approaches",
    ],
    Recommendation.EXTEND: [
        "Continue test for more data",
        "Monitor for statistical significance",
        "Consider increasing traffic allocation",
    ],
    Recommendation.CONTINUE: [
        "Continue test as planned",
        "Monitor sample size requirements",
        "Review test configuration",
    ],
}


def improvement_pct(control: float, treatment: float, metric: str) -> float:
    """Relative change vs control in percent, sign flipped for lower-is-better metrics."""
    diff = treatment - control
    if metric in LOWER_IS_BETTER:
        diff = -diff
    if control == 0:
        return diff * 100
    return diff / abs(control) * 100


def _running(tally: VariantTally, metric: str) -> RunningStat:
    """Continuous-metric accumulator of a tally."""
    return tally.confidence if metric == "average_confidence" else tally.execution_time


def _metric_values(tally: VariantTally) -> dict[str, float]:
    n = tally.executions
    return {
        "success_rate": tally.successes / n if n else 0.0,
        "average_confidence": tally.confidence.mean if tally.confidence.count else 0.0,
        "average_execution_time": tally.execution_time.mean if n else 0.0,
    }


class ABTestingEngine:
    """Runs A/B tests over algorithm variants."""

    def __init__(
        self,
        event_bus: EventBus,
        executor: AlgorithmExecutor,
        monitoring: MonitoringEngine,
        tests: KeyValueStore | None = None,
        assignments: KeyValueStore | None = None,
        results: KeyValueStore | None = None,
        tallies: KeyValueStore | None = None,
        rng: random.Random | None = None,
    ):
        self.event_bus = event_bus
        self.executor = executor
        self.monitoring = monitoring
        self._tests: KeyValueStore[ABTestDefinition] = tests or InMemoryStore()
        self._assignments: KeyValueStore[UserVariantAssignment] = assignments or InMemoryStore()
        # Only the append-only log side of this store is used, keyed by test id.
        self._results: KeyValueStore[TestExecutionResult] = results or InMemoryStore()
        self._tallies: KeyValueStore[VariantTally] = tallies or InMemoryStore()
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._assign_lock = asyncio.Lock()
        self._tally_lock = asyncio.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def create_test(self, definition: ABTestDefinition) -> ABTestDefinition:
        self._validate(definition)
        test = definition.model_copy(update={
            "status": TestStatus.DRAFT,
            "start_date": None,
            "end_date": None,
            "stop_reason": None,
        })
        async with self._lock:
            if await self._tests.contains(test.id):
                raise ConflictError(f"A/B test {test.id} already exists")
            await self._tests.set(test.id, test)

        logger.info(
            "Created A/B test %s (%s) with %d variants", test.id, test.name, len(test.variants),
            extra={"test_id": test.id, "algorithm_id": test.algorithm_id},
        )
        await self.event_bus.publish(
            EventType.TEST_CREATED,
            test_id=test.id,
            algorithm_id=test.algorithm_id,
            variants=[v.id for v in test.variants],
        )
        return test

    def _validate(self, definition: ABTestDefinition) -> None:
        if not definition.name or not definition.algorithm_id:
            raise ValidationError("A/B test must include name and algorithm_id")
        if len(definition.variants) < 2:
            raise ValidationError("A/B test must have at least 2 variants")

        controls = [v for v in definition.variants if v.is_control]
        if len(controls) != 1:
            raise ValidationError(f"A/B test must have exactly one control variant (found {len(controls)})")

        ids = [v.id for v in definition.variants]
        if len(set(ids)) != len(ids):
            raise ValidationError("Variant ids must be unique")

        total = sum(v.weight for v in definition.variants)
        if abs(total - 100) > WEIGHT_TOLERANCE:
            raise ValidationError(f"Variant weights must sum to 100 (got {total:g})")

        traffic = definition.traffic_allocation.total_traffic
        if not 0 <= traffic <= 100:
            raise ValidationError("Total traffic must be between 0 and 100")

        if definition.metrics.primary_metric not in SUPPORTED_METRICS:
            raise ValidationError(
                f"Unsupported primary metric: {definition.metrics.primary_metric}",
                supported=list(SUPPORTED_METRICS),
            )

    async def start_test(self, test_id: str) -> ABTestDefinition:
        return await self._transition(
            test_id, {TestStatus.DRAFT}, TestStatus.RUNNING, EventType.TEST_STARTED, start=True,
        )

    async def pause_test(self, test_id: str) -> ABTestDefinition:
        return await self._transition(test_id, {TestStatus.RUNNING}, TestStatus.PAUSED, EventType.TEST_PAUSED)

    async def resume_test(self, test_id: str) -> ABTestDefinition:
        return await self._transition(test_id, {TestStatus.PAUSED}, TestStatus.RUNNING, EventType.TEST_RESUMED)

    async def stop_test(self, test_id: str, reason: str = "Stopped manually") -> ABTestDefinition:
        return await self._transition(
            test_id,
            {TestStatus.DRAFT, TestStatus.RUNNING, TestStatus.PAUSED},
            TestStatus.COMPLETED,
            EventType.TEST_STOPPED,
            reason=reason,
        )

    async def cancel_test(self, test_id: str, reason: str = "Cancelled") -> ABTestDefinition:
        return await self._transition(
            test_id,
            {TestStatus.DRAFT, TestStatus.RUNNING, TestStatus.PAUSED},
            TestStatus.CANCELLED,
            EventType.TEST_STOPPED,
            reason=reason,
        )

    async def _transition(
        self,
        test_id: str,
        allowed: set[TestStatus],
        target: TestStatus,
        event: EventType,
        start: bool = False,
        reason: str | None = None,
    ) -> ABTestDefinition:
        async with self._lock:
            test = await self.get_test(test_id)
            if test.status not in allowed:
                raise StateError(
                    f"Cannot move test {test_id} from {test.status.value} to {target.value}",
                    status=test.status.value,
                )
            test.status = target
            if start:
                test.start_date = utcnow()
            if target in TERMINAL_TEST_STATES:
                test.end_date = utcnow()
                test.stop_reason = reason
            await self._tests.set(test_id, test)

        logger.info(
            "A/B test %s is now %s%s", test_id, target.value, f" ({reason})" if reason else "",
            extra={"test_id": test_id},
        )
        await self.event_bus.publish(event, test_id=test_id, status=target.value, reason=reason)
        return test

    # ── Lookups ──────────────────────────────────────────────────────────────

    async def get_test(self, test_id: str) -> ABTestDefinition:
        test = await self._tests.get(test_id)
        if test is None:
            raise NotFoundError(f"A/B test {test_id} not found")
        return test

    async def list_tests(self, status: TestStatus | None = None) -> list[ABTestDefinition]:
        tests = await self._tests.values()
        if status is None:
            return tests
        return [t for t in tests if t.status == status]

    async def get_user_variant(self, test_id: str, user_id: str) -> AlgorithmVariant | None:
        test = await self.get_test(test_id)
        assignment = await self._assignments.get(f"{test_id}:{user_id}")
        if assignment is None:
            return None
        return test.variant(assignment.variant_id)

    async def get_results(self, test_id: str, limit: int | None = None) -> list[TestExecutionResult]:
        """Recorded executions, oldest first; only the most recent *limit* when given."""
        await self.get_test(test_id)
        return await self._results.get_log(test_id, limit)

    async def _tally(self, test_id: str, variant_id: str) -> VariantTally:
        tally = await self._tallies.get(f"{test_id}:{variant_id}")
        return tally or VariantTally(test_id=test_id, variant_id=variant_id)

    # ── Execution ────────────────────────────────────────────────────────────

    async def execute_with_ab_test(
        self,
        test_id: str,
        input_data: Any,
        context: ExecutionContext,
    ) -> TestExecutionResult:
        test = await self.get_test(test_id)
        if test.status != TestStatus.RUNNING:
            raise StateError(f"A/B test {test_id} is not running ({test.status.value})", status=test.status.value)

        self._check_eligibility(test, context)
        variant = await self._resolve_variant(test, context.user_id)

        variant_context = context.model_copy(update={
            "version": variant.version,
            "configuration": {**context.configuration, **variant.configuration},
            "metadata": {**context.metadata, "ab_test_id": test.id, "variant_id": variant.id},
        })
        start = time.perf_counter()
        try:
            result = await self.executor.execute(variant.algorithm_id, input_data, variant_context)
        except Exception as e:
            logger.exception(
                "Variant %s of test %s raised", variant.id, test.id,
                extra={"test_id": test.id, "algorithm_id": variant.algorithm_id},
            )
            result = AlgorithmResult(success=False, error=f"{type(e).__name__}: {e}", algorithm_version=variant.version)
        elapsed = (time.perf_counter() - start) * 1000

        record = TestExecutionResult(
            test_id=test.id,
            variant_id=variant.id,
            user_id=context.user_id,
            session_id=str(context.metadata.get("session_id") or context.correlation_id),
            result=result,
            execution_time=elapsed,
            is_control=variant.is_control,
            metadata={"correlation_id": context.correlation_id},
        )
        await self.monitoring.record_execution(variant.algorithm_id, variant_context, result, elapsed)
        await self._results.append(test.id, record)
        async with self._tally_lock:
            tally = await self._tally(test.id, variant.id)
            tally.record(result.success, elapsed, result.confidence)
            await self._tallies.set(f"{test.id}:{variant.id}", tally)

        await self.event_bus.publish(
            EventType.TEST_EXECUTION_RECORDED,
            test_id=test.id,
            variant_id=variant.id,
            algorithm_id=variant.algorithm_id,
            success=result.success,
            execution_time=elapsed,
        )
        return record

    def _check_eligibility(self, test: ABTestDefinition, context: ExecutionContext) -> None:
        if self._rng.random() * 100 >= test.traffic_allocation.total_traffic:
            raise NotEligibleError("User not selected by traffic allocation", reason="traffic")

        targeting = test.targeting
        if targeting.custom_rules and not evaluate_rules(targeting.custom_rules, context.metadata):
            raise NotEligibleError("User does not match targeting rules", reason="targeting")
        if context.user_id in targeting.exclude_users:
            raise NotEligibleError("User is excluded from this test", reason="excluded")
        if targeting.include_users and context.user_id not in targeting.include_users:
            raise NotEligibleError("User is not in the include list", reason="not_included")

    async def _resolve_variant(self, test: ABTestDefinition, user_id: str) -> AlgorithmVariant:
        key = f"{test.id}:{user_id}"
        async with self._assign_lock:
            existing = await self._assignments.get(key)
            if existing is not None:
                variant = test.variant(existing.variant_id)
                if variant is not None:
                    return variant

            variant = self._draw_variant(test)
            await self._assignments.set(key, UserVariantAssignment(
                test_id=test.id,
                user_id=user_id,
                variant_id=variant.id,
            ))
        logger.debug(
            "Assigned user %s to variant %s of test %s", user_id, variant.id, test.id,
            extra={"test_id": test.id},
        )
        return variant

    def _draw_variant(self, test: ABTestDefinition) -> AlgorithmVariant:
        roll = self._rng.random() * 100
        cumulative = 0.0
        for variant in test.variants:
            cumulative += variant.weight
            if roll < cumulative:
                return variant
        return test.variants[-1]

    # ── Analysis ─────────────────────────────────────────────────────────────

    async def get_test_statistics(self, test_id: str) -> list[VariantStatistics]:
        test = await self.get_test(test_id)
        tallies = {v.id: await self._tally(test.id, v.id) for v in test.variants}

        metric = test.metrics.primary_metric
        min_n = test.metrics.minimum_sample_size
        control = tallies[test.control.id]
        control_values = _metric_values(control)

        stats = []
        for variant in test.variants:
            tally = tallies[variant.id]
            n = tally.executions
            successes = tally.successes
            values = _metric_values(tally)

            if metric == "success_rate":
                lower, upper = proportion_interval(successes, n)
            else:
                running = _running(tally, metric)
                lower, upper = mean_interval_summary(running.count, running.mean, running.variance)

            p_value = 1.0
            improvement = 0.0
            if not variant.is_control:
                control_n = control.executions
                if n >= min_n and control_n >= min_n:
                    if metric == "success_rate":
                        p_value = two_proportion_z_test(successes, n, control.successes, control_n)
                    else:
                        a, b = _running(tally, metric), _running(control, metric)
                        p_value = welch_t_test_summary(a.count, a.mean, a.variance, b.count, b.mean, b.variance)
                if n and control_n:
                    improvement = improvement_pct(control_values[metric], values[metric], metric)

            significance = 1.0 - p_value
            stats.append(VariantStatistics(
                test_id=test_id,
                variant_id=variant.id,
                is_control=variant.is_control,
                total_executions=n,
                successful_executions=successes,
                failed_executions=n - successes,
                average_execution_time=values["average_execution_time"],
                average_confidence=values["average_confidence"],
                conversion_rate=values["success_rate"],
                metric_values=values,
                confidence_interval=ConfidenceInterval(lower=lower, upper=upper),
                p_value=p_value,
                statistical_significance=significance,
                is_significant=not variant.is_control and significance >= test.metrics.statistical_significance,
                improvement=improvement,
            ))
        return stats

    async def get_test_recommendation(self, test_id: str) -> TestRecommendation:
        test = await self.get_test(test_id)
        stats = await self.get_test_statistics(test_id)
        metric = test.metrics.primary_metric
        required = test.metrics.success_criteria.improvement

        control = next(s for s in stats if s.is_control)
        treatments = [s for s in stats if not s.is_control and s.total_executions > 0]
        if control.total_executions == 0 or not treatments:
            return self._recommend(
                test_id, Recommendation.CONTINUE, 0.0,
                "Not enough data collected for control and treatment variants yet",
                primary=control.metric_values.get(metric, 0.0),
            )

        pick = min if metric in LOWER_IS_BETTER else max
        best = pick(treatments, key=lambda s: s.metric_values[metric])
        primary = best.metric_values[metric]

        if best.is_significant and best.improvement >= required:
            return self._recommend(
                test_id, Recommendation.DEPLOY, best.statistical_significance,
                f"Variant {best.variant_id} improves {metric} by {best.improvement:.2f}% "
                f"with {best.statistical_significance:.1%} significance",
                best_variant_id=best.variant_id, primary=primary,
                improvement=best.improvement, significance=best.statistical_significance,
            )
        if best.is_significant and best.improvement < 0:
            return self._recommend(
                test_id, Recommendation.STOP, best.statistical_significance,
                f"Best treatment {best.variant_id} is significantly worse than control "
                f"({best.improvement:.2f}% on {metric})",
                best_variant_id=control.variant_id, primary=primary,
                improvement=best.improvement, significance=best.statistical_significance,
            )
        if best.improvement > 0:
            return self._recommend(
                test_id, Recommendation.EXTEND, best.statistical_significance,
                f"Variant {best.variant_id} shows a {best.improvement:.2f}% improvement "
                f"that is not yet significant",
                best_variant_id=best.variant_id, primary=primary,
                improvement=best.improvement, significance=best.statistical_significance,
            )
        return self._recommend(
            test_id, Recommendation.CONTINUE, best.statistical_significance,
            "No treatment shows a meaningful improvement over control yet",
            best_variant_id=best.variant_id, primary=primary,
            improvement=best.improvement, significance=best.statistical_significance,
        )

    @staticmethod
    def _recommend(
        test_id: str,
        recommendation: Recommendation,
        confidence: float,
        reasoning: str,
        best_variant_id: str | None = None,
        primary: float = 0.0,
        improvement: float = 0.0,
        significance: float = 0.0,
    ) -> TestRecommendation:
        return TestRecommendation(
            test_id=test_id,
            recommendation=recommendation,
            confidence=confidence,
            reasoning=reasoning,
            best_variant_id=best_variant_id,
            primary_metric=primary,
            improvement=improvement,
            statistical_significance=significance,
            next_steps=list(NEXT_STEPS[recommendation]),
        )

    @staticmethod
    def has_exceeded_duration(test: ABTestDefinition) -> bool:
        if test.start_date is None:
            return False
        return utcnow() - test.start_date >= timedelta(hours=test.metrics.maximum_duration)

    async def analyze_running_tests(self) -> list[TestRecommendation]:
        """
        Recompute recommendations for every running test. Tests with a deploy
        or stop verdict are auto-stopped, as are tests that have run past their
        maximum duration.
        """
        recommendations = []
        for test in await self.list_tests(TestStatus.RUNNING):
            try:
                rec = await self.get_test_recommendation(test.id)
                await self.event_bus.publish(
                    EventType.TEST_ANALYZED,
                    test_id=test.id,
                    recommendation=rec.recommendation.value,
                    confidence=rec.confidence,
                )
                if rec.recommendation in (Recommendation.DEPLOY, Recommendation.STOP):
                    await self.stop_test(test.id, reason=f"Auto-stopped ({rec.recommendation.value}): {rec.reasoning}")
                elif self.has_exceeded_duration(test):
                    await self.stop_test(
                        test.id,
                        reason=f"Maximum duration of {test.metrics.maximum_duration:g}h reached "
                               f"({rec.recommendation.value}): {rec.reasoning}",
                    )
                recommendations.append(rec)
            except Exception:
                logger.exception("Failed to analyze A/B test %s", test.id, extra={"test_id": test.id})
        return recommendations
