"""
Monitoring & Alerting Engine — time-bucketed real-time metrics per algorithm.

Every executor call (pipeline stage, A/B variant, deployment smoke test) is
reported through ``record_execution``. Calls land in fixed-width buckets
(10 s by default); thresholds are evaluated on each record and breaches raise
alerts. Dashboards aggregate the buckets of a time window into totals,
percentiles, a time series and a 0-100 health score.

Buckets are kept in process memory (hot path, bounded by retention);
thresholds and alerts live in KeyValueStores.
"""

import asyncio
import logging
import math
import os
import time
from collections.abc import Callable

import psutil

from app.orchestration.conditions import compare
from app.orchestration.errors import NotFoundError, ValidationError
from app.orchestration.events import EventBus, EventType
from app.orchestration.models import (
    AlertSeverity,
    AlgorithmResult,
    DashboardData,
    ExecutionContext,
    MetricBucket,
    PerformanceAlert,
    PerformanceThreshold,
    SystemMetrics,
    ThresholdMetric,
    TimeSeriesPoint,
    utcnow,
)
from app.orchestration.stats import percentile
from app.orchestration.store import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)

TIME_WINDOWS = {
    "1h": 3600,
    "24h": 86400,
    "7d": 604800,
    "30d": 2592000,
}

MAX_ALERTS_PER_ALGORITHM = 1000

# Maintained by record_execution; callers may not overwrite it.
RESERVED_CUSTOM_METRICS = frozenset({"confidence"})


def compute_health_score(
    error_rate: float,
    average_response_time: float,
    availability: float,
    active_alerts: int,
    response_time_ceiling: float = 5000.0,
) -> float:
    """
    Start at 100 and subtract penalties for errors, slow responses,
    unavailability and open alerts. Clamped to [0, 100].
    """
    score = 100.0
    score -= min(50.0, error_rate * 100)
    if average_response_time > response_time_ceiling:
        score -= min(30.0, (average_response_time - response_time_ceiling) / 100)
    score -= (100.0 - availability) * 0.5
    score -= min(20.0, active_alerts * 5)
    return max(0.0, min(100.0, score))


class MonitoringEngine:
    """Collects execution metrics, evaluates thresholds and serves dashboards."""

    def __init__(
        self,
        event_bus: EventBus,
        thresholds: KeyValueStore | None = None,
        alerts: KeyValueStore | None = None,
        bucket_seconds: int = 10,
        retention_days: int = 30,
        max_buckets: int = 10000,
        response_time_ceiling: float = 5000.0,
        alert_cooldown: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.event_bus = event_bus
        self._thresholds: KeyValueStore[list[PerformanceThreshold]] = thresholds or InMemoryStore()
        self._alerts: KeyValueStore[list[PerformanceAlert]] = alerts or InMemoryStore()
        self.bucket_seconds = bucket_seconds
        self.retention_seconds = retention_days * 86400
        self.max_buckets = max_buckets
        self.response_time_ceiling = response_time_ceiling
        self.alert_cooldown = alert_cooldown
        self._clock = clock
        self._buckets: dict[str, list[MetricBucket]] = {}
        self._lock = asyncio.Lock()
        self._process = psutil.Process(os.getpid())

    # ── Recording ────────────────────────────────────────────────────────────

    async def record_execution(
        self,
        algorithm_id: str,
        context: ExecutionContext,
        result: AlgorithmResult,
        execution_time: float,
    ) -> None:
        """Record one call. Never raises: monitoring must not break callers."""
        try:
            async with self._lock:
                bucket = self._current_bucket(algorithm_id)
                bucket.throughput += 1
                if not result.success:
                    bucket.failures += 1
                bucket.average_latency += (execution_time - bucket.average_latency) / bucket.throughput
                bucket.error_rate = bucket.failures / bucket.throughput
                if result.confidence is not None:
                    n = bucket.throughput
                    prev = bucket.custom_metrics.get("confidence", 0.0)
                    bucket.custom_metrics["confidence"] = prev + (result.confidence - prev) / n
                self._prune(algorithm_id)

            await self._check_thresholds(algorithm_id, bucket, execution_time)
            await self.event_bus.publish(
                EventType.EXECUTION_RECORDED,
                algorithm_id=algorithm_id,
                success=result.success,
                execution_time=execution_time,
                correlation_id=context.correlation_id,
                user_id=context.user_id,
            )
        except Exception:
            logger.exception("Failed to record execution for %s", algorithm_id, extra={"algorithm_id": algorithm_id})

    async def record_custom_metric(self, algorithm_id: str, name: str, value: float) -> MetricBucket:
        """Set a caller-defined gauge on the current bucket (last write in the bucket wins)."""
        if not name or name in RESERVED_CUSTOM_METRICS:
            raise ValidationError(f"Invalid custom metric name: '{name}'", reserved=sorted(RESERVED_CUSTOM_METRICS))
        async with self._lock:
            bucket = self._current_bucket(algorithm_id)
            bucket.custom_metrics[name] = value
            self._prune(algorithm_id)
            return bucket.model_copy(deep=True)

    def _current_bucket(self, algorithm_id: str) -> MetricBucket:
        start = math.floor(self._clock() / self.bucket_seconds) * self.bucket_seconds
        buckets = self._buckets.setdefault(algorithm_id, [])
        if buckets and buckets[-1].timestamp == start:
            return buckets[-1]
        bucket = MetricBucket(algorithm_id=algorithm_id, timestamp=start)
        buckets.append(bucket)
        return bucket

    def _prune(self, algorithm_id: str) -> None:
        buckets = self._buckets.get(algorithm_id)
        if not buckets:
            return
        cutoff = self._clock() - self.retention_seconds
        drop = 0
        while drop < len(buckets) and buckets[drop].timestamp < cutoff:
            drop += 1
        overflow = len(buckets) - drop - self.max_buckets
        if overflow > 0:
            drop += overflow
        if drop:
            del buckets[:drop]

    def cleanup(self) -> None:
        """Apply retention to every tracked algorithm."""
        for algorithm_id in list(self._buckets):
            self._prune(algorithm_id)

    # ── Resource sampling ────────────────────────────────────────────────────

    def sample_resources(self) -> tuple[float, float]:
        """Return (cpu percent, RSS in MB) for this process."""
        cpu = self._process.cpu_percent(interval=None)
        memory_mb = self._process.memory_info().rss / (1024 * 1024)
        return cpu, memory_mb

    async def attach_resource_sample(self) -> None:
        """Stamp the latest bucket of every tracked algorithm with a CPU/memory sample."""
        cpu, memory_mb = self.sample_resources()
        async with self._lock:
            for buckets in self._buckets.values():
                if buckets:
                    buckets[-1].cpu_usage = cpu
                    buckets[-1].memory_usage = memory_mb
            self.cleanup()

    # ── Thresholds & alerts ──────────────────────────────────────────────────

    async def set_threshold(self, threshold: PerformanceThreshold) -> PerformanceThreshold:
        """Install a threshold, replacing any existing one for the same metric."""
        if threshold.operator not in ("gt", "lt", "gte", "lte", "eq"):
            raise ValidationError(f"Unsupported threshold operator: {threshold.operator}")
        async with self._lock:
            current = await self._thresholds.get(threshold.algorithm_id) or []
            current = [t for t in current if t.metric != threshold.metric]
            current.append(threshold)
            await self._thresholds.set(threshold.algorithm_id, current)
        logger.info(
            "Threshold set for %s: %s %s %s (%s)",
            threshold.algorithm_id, threshold.metric.value, threshold.operator,
            threshold.threshold, threshold.severity.value,
        )
        return threshold

    async def get_thresholds(self, algorithm_id: str) -> list[PerformanceThreshold]:
        return list(await self._thresholds.get(algorithm_id) or [])

    async def _check_thresholds(self, algorithm_id: str, bucket: MetricBucket, execution_time: float) -> None:
        for threshold in await self.get_thresholds(algorithm_id):
            if not threshold.enabled:
                continue
            if threshold.metric == ThresholdMetric.RESPONSE_TIME:
                value = execution_time
            elif threshold.metric == ThresholdMetric.ERROR_RATE:
                value = bucket.error_rate
            else:
                value = float(bucket.throughput)
            if compare(value, threshold.operator, threshold.threshold):
                await self._raise_alert(threshold, value)

    async def _raise_alert(self, threshold: PerformanceThreshold, value: float) -> PerformanceAlert:
        now = utcnow()
        async with self._lock:
            alerts = await self._alerts.get(threshold.algorithm_id) or []
            existing = None
            if self.alert_cooldown > 0:
                existing = next(
                    (a for a in reversed(alerts)
                     if not a.resolved and a.type == threshold.metric
                     and (now - a.last_seen).total_seconds() <= self.alert_cooldown),
                    None,
                )
            if existing is not None:
                existing.occurrences += 1
                existing.current_value = value
                existing.last_seen = now
                existing.severity = threshold.severity
                await self._alerts.set(threshold.algorithm_id, alerts)
                return existing

            alert = PerformanceAlert(
                algorithm_id=threshold.algorithm_id,
                type=threshold.metric,
                severity=threshold.severity,
                message=(
                    f"{threshold.metric.value} {threshold.operator} {threshold.threshold:g} "
                    f"(current value {value:.2f})"
                ),
                threshold=threshold.threshold,
                current_value=value,
                timestamp=now,
                last_seen=now,
            )
            alerts.append(alert)
            if len(alerts) > MAX_ALERTS_PER_ALGORITHM:
                alerts = alerts[-MAX_ALERTS_PER_ALGORITHM:]
            await self._alerts.set(threshold.algorithm_id, alerts)

        logger.warning(
            "Alert %s for %s: %s [%s]",
            alert.id, alert.algorithm_id, alert.message, alert.severity.value,
            extra={"algorithm_id": alert.algorithm_id},
        )
        await self.event_bus.publish(
            EventType.ALERT_TRIGGERED,
            alert_id=alert.id,
            algorithm_id=alert.algorithm_id,
            metric=alert.type.value,
            severity=alert.severity.value,
            current_value=value,
        )
        return alert

    async def list_alerts(self, algorithm_id: str, include_resolved: bool = True) -> list[PerformanceAlert]:
        alerts = await self._alerts.get(algorithm_id) or []
        if include_resolved:
            return list(alerts)
        return [a for a in alerts if not a.resolved]

    async def get_active_alerts(self, algorithm_id: str | None = None) -> list[PerformanceAlert]:
        if algorithm_id is not None:
            return await self.list_alerts(algorithm_id, include_resolved=False)
        result = []
        for alerts in await self._alerts.values():
            result.extend(a for a in alerts if not a.resolved)
        return result

    async def resolve_alert(self, algorithm_id: str, alert_id: str) -> PerformanceAlert:
        async with self._lock:
            alerts = await self._alerts.get(algorithm_id) or []
            alert = next((a for a in alerts if a.id == alert_id), None)
            if alert is None:
                raise NotFoundError(f"Alert {alert_id} not found for {algorithm_id}")
            if not alert.resolved:
                alert.resolved = True
                alert.resolved_at = utcnow()
                await self._alerts.set(algorithm_id, alerts)
        await self.event_bus.publish(EventType.ALERT_RESOLVED, alert_id=alert_id, algorithm_id=algorithm_id)
        return alert

    # ── Queries ──────────────────────────────────────────────────────────────

    def now(self) -> float:
        return self._clock()

    def tracked_algorithms(self) -> list[str]:
        return sorted(self._buckets)

    def get_real_time_metrics(self, algorithm_id: str, window_seconds: float = 300) -> list[MetricBucket]:
        cutoff = self._clock() - window_seconds
        return [b for b in self._buckets.get(algorithm_id, []) if b.timestamp >= cutoff]

    def buckets_between(self, algorithm_id: str, start: float, end: float) -> list[MetricBucket]:
        """Copies of the buckets whose start falls in [start, end)."""
        return [b.model_copy() for b in self._buckets.get(algorithm_id, []) if start <= b.timestamp < end]

    async def get_dashboard_data(self, algorithm_id: str, time_window: str = "1h") -> DashboardData:
        window = TIME_WINDOWS.get(time_window)
        if window is None:
            raise ValidationError(
                f"Unsupported time window '{time_window}'",
                allowed=list(TIME_WINDOWS),
            )
        buckets = [b.model_copy() for b in self.get_real_time_metrics(algorithm_id, window)]
        alerts = await self.get_active_alerts(algorithm_id)

        total = sum(b.throughput for b in buckets)
        failed = sum(b.failures for b in buckets)
        successful = total - failed
        avg = sum(b.average_latency * b.throughput for b in buckets) / total if total else 0.0
        latencies = [b.average_latency for b in buckets if b.throughput]
        error_rate = failed / total if total else 0.0
        availability = successful / total * 100 if total else 100.0

        return DashboardData(
            algorithm_id=algorithm_id,
            time_window=time_window,
            total_executions=total,
            successful_executions=successful,
            failed_executions=failed,
            average_response_time=avg,
            p95_response_time=percentile(latencies, 95),
            p99_response_time=percentile(latencies, 99),
            throughput=total / (window / 60),
            error_rate=error_rate,
            availability=availability,
            time_series=self._time_series(buckets, window),
            alerts=alerts,
            health_score=compute_health_score(
                error_rate, avg, availability, len(alerts), self.response_time_ceiling,
            ),
        )

    def _time_series(self, buckets: list[MetricBucket], window: int) -> list[TimeSeriesPoint]:
        interval = max(60, window // 100)
        grouped: dict[float, list[MetricBucket]] = {}
        for b in buckets:
            grouped.setdefault(math.floor(b.timestamp / interval) * interval, []).append(b)

        points = []
        for ts in sorted(grouped):
            group = grouped[ts]
            count = sum(b.throughput for b in group)
            failures = sum(b.failures for b in group)
            latency = sum(b.average_latency * b.throughput for b in group) / count if count else 0.0
            points.append(TimeSeriesPoint(
                timestamp=ts,
                throughput=count,
                average_latency=latency,
                error_rate=failures / count if count else 0.0,
            ))
        return points

    async def get_health_score(self, algorithm_id: str, time_window: str = "1h") -> float:
        return (await self.get_dashboard_data(algorithm_id, time_window)).health_score

    async def get_system_metrics(self) -> SystemMetrics:
        scores: list[float] = []
        total_executions = 0
        weighted_latency = 0.0
        throughput = 0.0
        for algorithm_id in self.tracked_algorithms():
            try:
                dash = await self.get_dashboard_data(algorithm_id, "1h")
            except Exception:
                logger.exception("Failed to aggregate metrics for %s", algorithm_id)
                continue
            scores.append(dash.health_score)
            total_executions += dash.total_executions
            weighted_latency += dash.average_response_time * dash.total_executions
            throughput += dash.throughput

        active = await self.get_active_alerts()
        cpu, memory_mb = self.sample_resources()
        return SystemMetrics(
            total_algorithms=len(scores),
            total_executions=total_executions,
            average_health_score=sum(scores) / len(scores) if scores else 100.0,
            critical_alerts=sum(1 for a in active if a.severity == AlertSeverity.CRITICAL),
            active_alerts=len(active),
            average_response_time=weighted_latency / total_executions if total_executions else 0.0,
            total_throughput=throughput,
            cpu_usage=cpu,
            memory_usage=memory_mb,
        )
