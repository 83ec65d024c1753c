"""Tests for monitoring buckets, thresholds, alerts and dashboards."""

import pytest

from app.orchestration.errors import NotFoundError, ValidationError
from app.orchestration.events import EventBus, EventType
from app.orchestration.models import (
    AlertSeverity,
    AlgorithmResult,
    ExecutionContext,
    PerformanceThreshold,
    ThresholdMetric,
)
from app.orchestration.monitoring import MonitoringEngine, compute_health_score
from app.orchestration.store import InMemoryStore
from tests.conftest import FakeClock

CTX = ExecutionContext(user_id="u1", correlation_id="c1")
OK = AlgorithmResult(success=True, confidence=0.8)
BAD = AlgorithmResult(success=False, error="boom")


def _threshold(metric: str, operator: str, value: float, severity: str = "medium", **kwargs) -> PerformanceThreshold:
    return PerformanceThreshold(
        algorithm_id="alg", metric=metric, operator=operator, threshold=value, severity=severity, **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1_700_000_003.0)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def engine(bus, clock) -> MonitoringEngine:
    return MonitoringEngine(bus, clock=clock)


class TestHealthScore:
    def test_perfect(self):
        assert compute_health_score(0.0, 100, 100, 0) == 100

    def test_penalties(self):
        # 25% errors, 75% availability, 1 alert
        assert compute_health_score(0.25, 100, 75, 1) == pytest.approx(100 - 25 - 12.5 - 5)

    def test_latency_penalty_capped(self):
        assert compute_health_score(0.0, 7000, 100, 0) == 80
        assert compute_health_score(0.0, 60000, 100, 0) == 70

    def test_clamped_to_zero(self):
        assert compute_health_score(1.0, 10000, 0, 10) == 0


@pytest.mark.asyncio
class TestRecording:
    async def test_bucket_aligned_and_running_mean(self, engine):
        await engine.record_execution("alg", CTX, OK, 100)
        await engine.record_execution("alg", CTX, BAD, 300)

        [bucket] = engine.get_real_time_metrics("alg")
        assert bucket.timestamp == 1_700_000_000
        assert bucket.throughput == 2
        assert bucket.failures == 1
        assert bucket.average_latency == 200
        assert bucket.error_rate == 0.5
        assert bucket.custom_metrics["confidence"] == pytest.approx(0.8)

    async def test_new_bucket_per_window(self, engine, clock):
        await engine.record_execution("alg", CTX, OK, 100)
        clock.advance(10)
        await engine.record_execution("alg", CTX, OK, 100)
        assert [b.timestamp for b in engine.get_real_time_metrics("alg")] == [1_700_000_000, 1_700_000_010]

    async def test_publishes_execution_recorded(self, engine, bus):
        seen = []

        async def handler(event):
            seen.append(event.payload)

        bus.subscribe(EventType.EXECUTION_RECORDED, handler)
        await engine.record_execution("alg", CTX, OK, 42)
        assert seen[0]["algorithm_id"] == "alg"
        assert seen[0]["execution_time"] == 42
        assert seen[0]["correlation_id"] == "c1"

    async def test_failures_are_swallowed(self, bus, clock):
        class BrokenStore(InMemoryStore):
            async def get(self, key):
                raise RuntimeError("store down")

        engine = MonitoringEngine(bus, thresholds=BrokenStore(), clock=clock)
        await engine.record_execution("alg", CTX, OK, 10)
        assert engine.get_real_time_metrics("alg")[0].throughput == 1

    async def test_retention_by_count(self, bus, clock):
        engine = MonitoringEngine(bus, max_buckets=3, clock=clock)
        for _ in range(5):
            await engine.record_execution("alg", CTX, OK, 10)
            clock.advance(10)
        assert len(engine.get_real_time_metrics("alg", window_seconds=3600)) == 3

    async def test_retention_by_age(self, bus, clock):
        engine = MonitoringEngine(bus, retention_days=1, clock=clock)
        await engine.record_execution("alg", CTX, OK, 10)
        clock.advance(2 * 86400)
        await engine.record_execution("alg", CTX, OK, 10)
        assert len(engine.get_real_time_metrics("alg", window_seconds=10 * 86400)) == 1

    async def test_custom_metric_set_on_current_bucket(self, engine):
        await engine.record_execution("alg", CTX, OK, 10)
        await engine.record_custom_metric("alg", "queue_depth", 4)
        bucket = await engine.record_custom_metric("alg", "queue_depth", 7)

        assert bucket.custom_metrics == {"queue_depth": 7}
        [stored] = engine.get_real_time_metrics("alg")
        assert stored.custom_metrics["queue_depth"] == 7
        assert stored.throughput == 1

    async def test_custom_metric_without_executions_opens_bucket(self, engine):
        bucket = await engine.record_custom_metric("fresh", "backlog", 1.5)
        assert bucket.throughput == 0
        assert engine.tracked_algorithms() == ["fresh"]

    async def test_custom_metric_returns_a_copy(self, engine):
        bucket = await engine.record_custom_metric("alg", "backlog", 1)
        bucket.custom_metrics["backlog"] = 99
        assert engine.get_real_time_metrics("alg")[0].custom_metrics["backlog"] == 1

    @pytest.mark.parametrize("name", ["", "confidence"])
    async def test_custom_metric_reserved_or_empty_name(self, engine, name):
        with pytest.raises(ValidationError):
            await engine.record_custom_metric("alg", name, 1)

    async def test_buckets_between_is_half_open(self, engine, clock):
        for _ in range(3):
            await engine.record_execution("alg", CTX, OK, 10)
            clock.advance(10)

        stamps = [b.timestamp for b in engine.buckets_between("alg", 1_700_000_000, 1_700_000_020)]
        assert stamps == [1_700_000_000, 1_700_000_010]
        assert engine.buckets_between("missing", 0, clock.now) == []

    async def test_resource_sample_attached_to_latest_bucket(self, engine):
        await engine.record_execution("alg", CTX, OK, 10)
        await engine.attach_resource_sample()
        bucket = engine.get_real_time_metrics("alg")[-1]
        assert bucket.cpu_usage is not None
        assert bucket.memory_usage > 0


@pytest.mark.asyncio
class TestThresholds:
    async def test_response_time_alert(self, engine, bus):
        raised = []

        async def handler(event):
            raised.append(event.payload)

        bus.subscribe(EventType.ALERT_TRIGGERED, handler)
        await engine.set_threshold(_threshold("response_time", "gt", 2000, "high"))

        await engine.record_execution("alg", CTX, OK, 1500)
        assert await engine.get_active_alerts("alg") == []

        await engine.record_execution("alg", CTX, OK, 2500)
        [alert] = await engine.get_active_alerts("alg")
        assert alert.type == ThresholdMetric.RESPONSE_TIME
        assert alert.severity == AlertSeverity.HIGH
        assert alert.current_value == 2500
        assert alert.threshold == 2000
        assert raised[0]["severity"] == "high"

    async def test_alert_deduplicated_within_cooldown(self, engine):
        await engine.set_threshold(_threshold("response_time", "gt", 2000))
        await engine.record_execution("alg", CTX, OK, 2500)
        await engine.record_execution("alg", CTX, OK, 3000)

        [alert] = await engine.get_active_alerts("alg")
        assert alert.occurrences == 2
        assert alert.current_value == 3000

    async def test_zero_cooldown_creates_alert_per_breach(self, bus, clock):
        engine = MonitoringEngine(bus, alert_cooldown=0, clock=clock)
        await engine.set_threshold(_threshold("response_time", "gt", 2000))
        await engine.record_execution("alg", CTX, OK, 2500)
        await engine.record_execution("alg", CTX, OK, 3000)
        assert len(await engine.get_active_alerts("alg")) == 2

    async def test_error_rate_uses_bucket_value(self, engine):
        await engine.set_threshold(_threshold("error_rate", "gte", 0.5, "critical"))
        await engine.record_execution("alg", CTX, OK, 10)
        assert await engine.get_active_alerts("alg") == []
        await engine.record_execution("alg", CTX, BAD, 10)
        [alert] = await engine.get_active_alerts("alg")
        assert alert.current_value == 0.5
        assert alert.severity == AlertSeverity.CRITICAL

    async def test_throughput_threshold(self, engine):
        await engine.set_threshold(_threshold("throughput", "gt", 2))
        for _ in range(3):
            await engine.record_execution("alg", CTX, OK, 10)
        [alert] = await engine.get_active_alerts("alg")
        assert alert.current_value == 3

    async def test_disabled_threshold_ignored(self, engine):
        await engine.set_threshold(_threshold("response_time", "gt", 1, enabled=False))
        await engine.record_execution("alg", CTX, OK, 100)
        assert await engine.get_active_alerts("alg") == []

    async def test_set_threshold_replaces_same_metric(self, engine):
        await engine.set_threshold(_threshold("response_time", "gt", 2000))
        await engine.set_threshold(_threshold("response_time", "gt", 5000))
        await engine.set_threshold(_threshold("error_rate", "gt", 0.1))
        thresholds = await engine.get_thresholds("alg")
        assert sorted((t.metric.value, t.threshold) for t in thresholds) == [
            ("error_rate", 0.1), ("response_time", 5000),
        ]

    async def test_unsupported_operator(self, engine):
        with pytest.raises(ValidationError):
            await engine.set_threshold(_threshold("response_time", "regex", 1))

    async def test_resolve_alert(self, engine):
        await engine.set_threshold(_threshold("response_time", "gt", 2000))
        await engine.record_execution("alg", CTX, OK, 2500)
        [alert] = await engine.get_active_alerts("alg")

        resolved = await engine.resolve_alert("alg", alert.id)

        assert resolved.resolved is True
        assert resolved.resolved_at is not None
        assert await engine.get_active_alerts("alg") == []
        assert len(await engine.list_alerts("alg")) == 1

    async def test_resolve_unknown_alert(self, engine):
        with pytest.raises(NotFoundError):
            await engine.resolve_alert("alg", "nope")

    async def test_breach_after_resolve_opens_new_alert(self, engine):
        await engine.set_threshold(_threshold("response_time", "gt", 2000))
        await engine.record_execution("alg", CTX, OK, 2500)
        [alert] = await engine.get_active_alerts("alg")
        await engine.resolve_alert("alg", alert.id)

        await engine.record_execution("alg", CTX, OK, 2600)
        [fresh] = await engine.get_active_alerts("alg")
        assert fresh.id != alert.id


@pytest.mark.asyncio
class TestDashboard:
    async def test_totals_and_health_score(self, engine):
        for result in (OK, OK, OK, BAD):
            await engine.record_execution("alg", CTX, result, 100)

        dash = await engine.get_dashboard_data("alg", "1h")

        assert dash.total_executions == 4
        assert dash.successful_executions == 3
        assert dash.failed_executions == 1
        assert dash.average_response_time == 100
        assert dash.error_rate == 0.25
        assert dash.availability == 75
        assert dash.throughput == pytest.approx(4 / 60)
        assert dash.health_score == pytest.approx(62.5)

    async def test_nearest_rank_percentiles(self, engine, clock):
        for i in range(1, 21):
            await engine.record_execution("alg", CTX, OK, i * 10)
            clock.advance(10)

        dash = await engine.get_dashboard_data("alg", "1h")
        assert dash.p95_response_time == 190
        assert dash.p99_response_time == 200

    async def test_time_series_interval(self, engine, clock):
        for _ in range(20):
            await engine.record_execution("alg", CTX, OK, 10)
            clock.advance(10)

        dash = await engine.get_dashboard_data("alg", "1h")
        timestamps = [p.timestamp for p in dash.time_series]
        assert all(ts % 60 == 0 for ts in timestamps)
        assert sum(p.throughput for p in dash.time_series) == 20

    async def test_window_excludes_old_buckets(self, engine, clock):
        await engine.record_execution("alg", CTX, OK, 10)
        clock.advance(2 * 3600)
        await engine.record_execution("alg", CTX, OK, 10)
        assert (await engine.get_dashboard_data("alg", "1h")).total_executions == 1
        assert (await engine.get_dashboard_data("alg", "24h")).total_executions == 2

    async def test_empty_dashboard(self, engine):
        dash = await engine.get_dashboard_data("unknown", "7d")
        assert dash.total_executions == 0
        assert dash.availability == 100
        assert dash.health_score == 100

    async def test_alerts_lower_health_score(self, engine):
        await engine.set_threshold(_threshold("response_time", "gt", 50))
        await engine.record_execution("alg", CTX, OK, 100)
        assert await engine.get_health_score("alg") == 95

    async def test_invalid_window(self, engine):
        with pytest.raises(ValidationError):
            await engine.get_dashboard_data("alg", "2h")

    async def test_system_metrics(self, engine):
        await engine.record_execution("a", CTX, OK, 100)
        await engine.record_execution("b", CTX, BAD, 300)
        await engine.set_threshold(PerformanceThreshold(
            algorithm_id="b", metric="error_rate", operator="gt", threshold=0.1, severity="critical",
        ))
        await engine.record_execution("b", CTX, BAD, 300)

        system = await engine.get_system_metrics()

        assert system.total_algorithms == 2
        assert system.total_executions == 3
        assert system.critical_alerts == 1
        assert system.average_response_time == pytest.approx(700 / 3)
        assert system.memory_usage > 0
