"""
Performance analytics over the registry and the monitoring buckets.

Two views:
    compare_to_baseline   the registry's stored baseline of one algorithm
                          against its dashboard for a time window, with a
                          per-metric change, significance and a summary
    get_system_analytics  every tracked algorithm ranked by health score,
                          plus hour-over-hour trends of the whole system
"""

import logging
import math

from app.orchestration.models import (
    AlertSeverity,
    ChangeSignificance,
    ComparisonSummary,
    MetricChange,
    MetricTrend,
    OverallTrend,
    PerformanceBaseline,
    PerformanceComparison,
    PerformerScore,
    SystemAnalytics,
    TrendDirection,
)
from app.orchestration.monitoring import MonitoringEngine
from app.orchestration.registry import AlgorithmRegistry

logger = logging.getLogger(__name__)

COMPARED_METRICS = ("average_execution_time", "success_rate", "throughput")
LOWER_IS_BETTER = frozenset({"average_execution_time"})

# Percent change above which a difference is medium / high.
MEDIUM_CHANGE = 10.0
HIGH_CHANGE = 20.0

# Hour-over-hour moves within this many percent count as stable.
STABLE_BAND = 1.0

RECOMMENDATIONS = {
    OverallTrend.DECLINING: [
        "Investigate performance degradation",
        "Consider algorithm optimization",
    ],
    OverallTrend.IMPROVING: [
        "Monitor for continued improvement",
        "Consider updating the performance baseline",
    ],
    OverallTrend.STABLE: [],
}


def classify_change(percentage_change: float) -> ChangeSignificance:
    magnitude = abs(percentage_change)
    if magnitude > HIGH_CHANGE:
        return ChangeSignificance.HIGH
    if magnitude > MEDIUM_CHANGE:
        return ChangeSignificance.MEDIUM
    return ChangeSignificance.LOW


def metric_change(metric: str, baseline: float, current: float) -> MetricChange:
    delta = current - baseline
    pct = delta / baseline * 100 if baseline > 0 else 0.0
    if delta == 0:
        improved = None
    elif metric in LOWER_IS_BETTER:
        improved = delta < 0
    else:
        improved = delta > 0
    return MetricChange(
        metric=metric,
        baseline=baseline,
        current=current,
        absolute_change=delta,
        percentage_change=pct,
        significance=classify_change(pct),
        improved=improved,
    )


def summarize_changes(changes: list[MetricChange]) -> ComparisonSummary:
    """Overall trend from the medium and high changes; low ones are noise."""
    notable = [c for c in changes if c.significance != ChangeSignificance.LOW]
    improvements = sum(1 for c in notable if c.improved is True)
    declines = sum(1 for c in notable if c.improved is False)

    if improvements > declines:
        trend = OverallTrend.IMPROVING
    elif declines > improvements:
        trend = OverallTrend.DECLINING
    else:
        trend = OverallTrend.STABLE

    insights = [
        f"{c.metric} {'increased' if c.absolute_change > 0 else 'decreased'} by "
        f"{abs(c.percentage_change):.1f}% against baseline"
        for c in notable
    ]
    return ComparisonSummary(
        overall_trend=trend,
        key_insights=insights,
        recommendations=list(RECOMMENDATIONS[trend]),
    )


def trend_direction(change: float) -> TrendDirection:
    if change > STABLE_BAND:
        return TrendDirection.UP
    if change < -STABLE_BAND:
        return TrendDirection.DOWN
    return TrendDirection.STABLE


class AnalyticsEngine:
    """Read-only analytics on top of the registry and monitoring engines."""

    def __init__(
        self,
        monitoring: MonitoringEngine,
        registry: AlgorithmRegistry,
        top_performers: int = 5,
        trend_period: float = 3600,
    ):
        self.monitoring = monitoring
        self.registry = registry
        self.top_performers = top_performers
        self.trend_period = trend_period

    async def compare_to_baseline(self, algorithm_id: str, time_window: str = "24h") -> PerformanceComparison:
        await self.registry.get_definition(algorithm_id)
        baseline = await self.registry.get_performance_baseline(algorithm_id) or PerformanceBaseline()
        dash = await self.monitoring.get_dashboard_data(algorithm_id, time_window)

        if dash.total_executions == 0:
            return PerformanceComparison(
                algorithm_id=algorithm_id,
                time_window=time_window,
                executions=0,
                baseline=baseline,
                summary=ComparisonSummary(
                    overall_trend=OverallTrend.STABLE,
                    key_insights=[f"No executions recorded in the last {time_window}"],
                ),
            )

        current = PerformanceBaseline(
            average_execution_time=dash.average_response_time,
            success_rate=1.0 - dash.error_rate,
            throughput=dash.throughput,
        )
        changes = [
            metric_change(metric, getattr(baseline, metric), getattr(current, metric))
            for metric in COMPARED_METRICS
        ]
        summary = summarize_changes(changes)
        logger.info(
            "Compared %s against its baseline over %s: %s",
            algorithm_id, time_window, summary.overall_trend.value,
            extra={"algorithm_id": algorithm_id},
        )
        return PerformanceComparison(
            algorithm_id=algorithm_id,
            time_window=time_window,
            executions=dash.total_executions,
            baseline=baseline,
            current=current,
            changes=changes,
            summary=summary,
        )

    async def get_system_analytics(self) -> SystemAnalytics:
        performers = []
        for algorithm_id in self.monitoring.tracked_algorithms():
            dash = await self.monitoring.get_dashboard_data(algorithm_id, "1h")
            if dash.total_executions == 0:
                continue
            performers.append(PerformerScore(
                algorithm_id=algorithm_id,
                health_score=dash.health_score,
                total_executions=dash.total_executions,
            ))
        performers.sort(key=lambda p: (-p.health_score, -p.total_executions, p.algorithm_id))

        active = await self.monitoring.get_active_alerts()
        return SystemAnalytics(
            total_algorithms=len(performers),
            total_executions=sum(p.total_executions for p in performers),
            average_health_score=(
                sum(p.health_score for p in performers) / len(performers) if performers else 100.0
            ),
            critical_alerts=sum(1 for a in active if a.severity == AlertSeverity.CRITICAL),
            top_performers=performers[:self.top_performers],
            trends=self.system_trends(),
        )

    def system_trends(self) -> list[MetricTrend]:
        """Last ``trend_period`` seconds against the period before it, across all algorithms."""
        now = self.monitoring.now()
        current = self._period_totals(now - self.trend_period, math.inf)
        previous = self._period_totals(now - 2 * self.trend_period, now - self.trend_period)
        minutes = self.trend_period / 60

        trends = []
        for metric in ("success_rate", "response_time"):
            if current[0] and previous[0]:
                before, after = self._period_value(previous, metric), self._period_value(current, metric)
                change = (after - before) / before * 100 if before else 0.0
            else:
                before = self._period_value(previous, metric) if previous[0] else 0.0
                after = self._period_value(current, metric) if current[0] else 0.0
                change = 0.0
            trends.append(MetricTrend(
                metric=metric, trend=trend_direction(change), previous=before, current=after, change=change,
            ))

        before, after = previous[0] / minutes, current[0] / minutes
        if before:
            change = (after - before) / before * 100
        else:
            change = 100.0 if after else 0.0
        trends.append(MetricTrend(
            metric="throughput", trend=trend_direction(change), previous=before, current=after, change=change,
        ))
        return trends

    def _period_totals(self, start: float, end: float) -> tuple[int, int, float]:
        """(executions, failures, summed latency) over every tracked algorithm."""
        executions = failures = 0
        latency = 0.0
        for algorithm_id in self.monitoring.tracked_algorithms():
            for bucket in self.monitoring.buckets_between(algorithm_id, start, end):
                executions += bucket.throughput
                failures += bucket.failures
                latency += bucket.average_latency * bucket.throughput
        return executions, failures, latency

    @staticmethod
    def _period_value(totals: tuple[int, int, float], metric: str) -> float:
        executions, failures, latency = totals
        if metric == "success_rate":
            return 1.0 - failures / executions
        return latency / executions
