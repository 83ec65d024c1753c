"""HTTP tests for the orchestration API, run against the app with a fake executor."""

import pytest

from app.config import settings
from tests.conftest import fail

PIPELINE = {
    "id": "score-flow",
    "name": "Score flow",
    "version": "1.0.0",
    "stages": [
        {"id": "extract", "algorithm_id": "extractor"},
        {
            "id": "score",
            "algorithm_id": "scorer",
            "dependencies": ["extract"],
            "input_mapping": {"source": "previous_stage", "path": "extract"},
        },
    ],
}

ALGORITHM = {
    "definition": {
        "id": "scorer",
        "name": "Scorer",
        "description": "Scores a document",
        "version": "1.0.0",
        "category": "analysis",
        "tags": ["nlp"],
    },
    "version": {"algorithm_id": "scorer", "version": "1.0.0", "created_by": "alice"},
}

AB_TEST = {
    "id": "ranker-test",
    "name": "Ranker comparison",
    "algorithm_id": "ranker",
    "variants": [
        {"id": "control", "name": "v1", "algorithm_id": "ranker-v1", "version": "1.0.0", "weight": 50, "is_control": True},
        {"id": "treatment", "name": "v2", "algorithm_id": "ranker-v2", "version": "2.0.0", "weight": 50},
    ],
}


@pytest.mark.asyncio
class TestPipelinesAPI:
    async def test_register_and_execute(self, client):
        resp = await client.post("/api/pipelines", json=PIPELINE)
        assert resp.status_code == 201

        resp = await client.post("/api/pipelines/score-flow/execute", json={"input": {"doc": "x"}, "user_id": "u1"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert set(body["stage_results"]) == {"extract", "score"}
        assert body["data"]["score"]["algorithm"] == "scorer"

        metrics = (await client.get("/api/pipelines/score-flow/metrics")).json()
        assert metrics["total_executions"] == 1

        stored = await client.get(f"/api/pipelines/executions/{body['execution_id']}")
        assert stored.json()["status"] == "completed"

    async def test_request_id_becomes_correlation_id(self, client):
        await client.post("/api/pipelines", json=PIPELINE)
        resp = await client.post(
            "/api/pipelines/score-flow/execute", json={"input": {}}, headers={"X-Request-ID": "req-123"},
        )
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["correlation_id"] == "req-123"

    async def test_correlation_header_accepted(self, client):
        await client.post("/api/pipelines", json=PIPELINE)
        resp = await client.post(
            "/api/pipelines/score-flow/execute", json={"input": {}}, headers={"X-Correlation-ID": "corr-9"},
        )
        assert resp.json()["correlation_id"] == "corr-9"

    async def test_stage_failure_returns_failed_result(self, client, executor):
        executor.script("scorer", lambda input_data, context: fail("model offline"))
        await client.post("/api/pipelines", json=PIPELINE)

        body = (await client.post("/api/pipelines/score-flow/execute", json={"input": {}})).json()

        assert body["status"] == "failed"
        assert "model offline" in body["error"]
        assert body["metadata"]["failed_stages"] == ["score"]

    async def test_unknown_pipeline(self, client):
        resp = await client.post(
            "/api/pipelines/missing/execute", json={"input": {}}, headers={"X-Request-ID": "req-404"},
        )
        assert resp.status_code == 404
        body = resp.json()
        assert body["error_type"] == "NotFoundError"
        assert body["correlation_id"] == "req-404"

    async def test_cycle_rejected(self, client):
        cyclic = {
            "id": "loop",
            "name": "Loop",
            "version": "1.0.0",
            "stages": [
                {"id": "a", "algorithm_id": "x", "dependencies": ["b"]},
                {"id": "b", "algorithm_id": "y", "dependencies": ["a"]},
            ],
        }
        resp = await client.post("/api/pipelines", json=cyclic)
        assert resp.status_code == 400
        assert resp.json()["error_type"] == "ValidationError"

    async def test_reregistration_replaces_definition(self, client):
        await client.post("/api/pipelines", json=PIPELINE)
        await client.post("/api/pipelines", json={**PIPELINE, "version": "1.1.0"})
        pipelines = (await client.get("/api/pipelines")).json()
        assert [(p["id"], p["version"]) for p in pipelines] == [("score-flow", "1.1.0")]

    async def test_unknown_execution(self, client):
        assert (await client.get("/api/pipelines/executions/nope")).status_code == 404
        resp = await client.post("/api/pipelines/executions/nope/cancel")
        assert resp.json() == {"execution_id": "nope", "cancelled": False}

    async def test_active_executions_empty(self, client):
        assert (await client.get("/api/pipelines/executions/active")).json() == {"active": [], "queued": []}


@pytest.mark.asyncio
class TestAlgorithmsAPI:
    async def test_register_deploy_rollback(self, client):
        assert (await client.post("/api/algorithms", json=ALGORITHM)).status_code == 201
        v2 = {**ALGORITHM, "version": {"algorithm_id": "scorer", "version": "1.1.0", "created_by": "alice"}}
        assert (await client.post("/api/algorithms", json=v2)).status_code == 201

        deployed = await client.post(
            "/api/algorithms/scorer/deploy", json={"version": "1.1.0", "environment": "production", "actor": "bob"},
        )
        assert deployed.status_code == 200
        assert deployed.json()["status"] == "active"
        assert [c["name"] for c in deployed.json()["health_checks"]] == [
            "Dependency Check", "Configuration Validation", "Performance Test",
        ]

        rolled = await client.post(
            "/api/algorithms/scorer/rollback", json={"environment": "production", "to_version": "1.0.0"},
        )
        assert rolled.json()["version"] == "1.0.0"
        assert rolled.json()["rollback_version"] == "1.1.0"

        history = (await client.get("/api/algorithms/scorer/deployments")).json()
        assert [d["status"] for d in history if d["environment"] == "production"] == ["rolled_back", "active"]

    async def test_duplicate_version_conflicts(self, client):
        await client.post("/api/algorithms", json=ALGORITHM)
        resp = await client.post("/api/algorithms", json=ALGORITHM)
        assert resp.status_code == 409

    async def test_search_and_filter(self, client):
        await client.post("/api/algorithms", json=ALGORITHM)
        assert [a["id"] for a in (await client.get("/api/algorithms", params={"q": "NLP"})).json()] == ["scorer"]
        assert (await client.get("/api/algorithms", params={"category": "detection"})).json() == []

    async def test_details_and_statistics(self, client):
        await client.post("/api/algorithms", json=ALGORITHM)
        details = (await client.get("/api/algorithms/scorer")).json()
        assert details["active_version"]["version"] == "1.0.0"
        stats = (await client.get("/api/algorithms/statistics")).json()
        assert stats["total_algorithms"] == 1

    async def test_unknown_algorithm(self, client):
        assert (await client.get("/api/algorithms/nope")).status_code == 404
        resp = await client.post(
            "/api/algorithms/nope/deploy", json={"version": "1.0.0", "environment": "staging"},
        )
        assert resp.status_code == 404

    async def test_rollback_without_active_deployment(self, client):
        await client.post("/api/algorithms", json=ALGORITHM)
        resp = await client.post(
            "/api/algorithms/scorer/rollback", json={"environment": "staging", "to_version": "1.0.0"},
        )
        assert resp.status_code == 404

    async def test_baseline_read_and_replace(self, client):
        await client.post("/api/algorithms", json=ALGORITHM)
        baseline = {"average_execution_time": 80.0, "success_rate": 0.97, "throughput": 12.0}

        resp = await client.put("/api/algorithms/scorer/baseline", json=baseline)
        assert resp.status_code == 200
        assert (await client.get("/api/algorithms/scorer/baseline")).json() == baseline
        assert (await client.put("/api/algorithms/nope/baseline", json=baseline)).status_code == 404

    async def test_comparison_against_baseline(self, client, executor):
        await client.post("/api/algorithms", json=ALGORITHM)
        await client.put(
            "/api/algorithms/scorer/baseline",
            json={"average_execution_time": 0.5, "success_rate": 1.0, "throughput": 0.0},
        )
        await client.post("/api/pipelines", json=PIPELINE)
        await client.post("/api/pipelines/score-flow/execute", json={"input": {}})

        body = (await client.get("/api/algorithms/scorer/comparison", params={"window": "1h"})).json()
        assert body["executions"] == 1
        assert [c["metric"] for c in body["changes"]] == ["average_execution_time", "success_rate", "throughput"]
        assert body["summary"]["overall_trend"] in ("improving", "declining", "stable")

        assert (await client.get("/api/algorithms/nope/comparison")).status_code == 404
        bad = await client.get("/api/algorithms/scorer/comparison", params={"window": "5m"})
        assert bad.status_code == 400

    async def test_system_analytics(self, client):
        await client.post("/api/pipelines", json=PIPELINE)
        await client.post("/api/pipelines/score-flow/execute", json={"input": {}})

        body = (await client.get("/api/algorithms/analytics/system")).json()
        assert body["total_algorithms"] == 2
        assert body["total_executions"] == 2
        assert {p["algorithm_id"] for p in body["top_performers"]} == {"extractor", "scorer"}
        assert [t["metric"] for t in body["trends"]] == ["success_rate", "response_time", "throughput"]


@pytest.mark.asyncio
class TestMonitoringAPI:
    async def test_dashboard_after_pipeline_run(self, client):
        await client.post("/api/pipelines", json=PIPELINE)
        await client.post("/api/pipelines/score-flow/execute", json={"input": {}})

        dash = (await client.get("/api/monitoring/scorer/dashboard", params={"window": "24h"})).json()
        assert dash["total_executions"] == 1
        assert dash["health_score"] == 100

        system = (await client.get("/api/monitoring/system")).json()
        assert system["total_algorithms"] == 2

    async def test_invalid_window(self, client):
        resp = await client.get("/api/monitoring/scorer/dashboard", params={"window": "5m"})
        assert resp.status_code == 400

    async def test_threshold_alert_and_resolve(self, client, executor):
        threshold = {"algorithm_id": "scorer", "metric": "error_rate", "operator": "gt", "threshold": 0.1}
        assert (await client.put("/api/monitoring/scorer/thresholds", json=threshold)).status_code == 200
        assert len((await client.get("/api/monitoring/scorer/thresholds")).json()) == 1

        executor.script("scorer", lambda input_data, context: fail())
        await client.post("/api/pipelines", json={**PIPELINE, "halt_on_stage_failure": False})
        await client.post("/api/pipelines/score-flow/execute", json={"input": {}})

        [alert] = (await client.get("/api/monitoring/scorer/alerts")).json()
        resolved = await client.post(f"/api/monitoring/scorer/alerts/{alert['id']}/resolve")
        assert resolved.json()["resolved"] is True
        assert (await client.get("/api/monitoring/scorer/alerts")).json() == []
        everything = await client.get("/api/monitoring/scorer/alerts", params={"include_resolved": True})
        assert len(everything.json()) == 1

    async def test_threshold_path_mismatch(self, client):
        threshold = {"algorithm_id": "other", "metric": "error_rate", "operator": "gt", "threshold": 0.1}
        resp = await client.put("/api/monitoring/scorer/thresholds", json=threshold)
        assert resp.status_code == 400

    async def test_realtime_buckets(self, client):
        await client.post("/api/pipelines", json=PIPELINE)
        await client.post("/api/pipelines/score-flow/execute", json={"input": {}})

        buckets = (await client.get("/api/monitoring/scorer/realtime", params={"window_seconds": 60})).json()
        assert len(buckets) == 1
        assert buckets[0]["throughput"] == 1
        assert (await client.get("/api/monitoring/nope/realtime")).json() == []

    async def test_custom_metric(self, client):
        resp = await client.post("/api/monitoring/scorer/custom-metrics", json={"name": "queue_depth", "value": 3})
        assert resp.status_code == 201
        assert resp.json()["custom_metrics"] == {"queue_depth": 3.0}

        reserved = await client.post("/api/monitoring/scorer/custom-metrics", json={"name": "confidence", "value": 1})
        assert reserved.status_code == 400
        empty = await client.post("/api/monitoring/scorer/custom-metrics", json={"name": "", "value": 1})
        assert empty.status_code == 422


@pytest.mark.asyncio
class TestABTestsAPI:
    async def test_lifecycle_and_execute(self, client):
        assert (await client.post("/api/abtests", json=AB_TEST)).status_code == 201
        assert (await client.post("/api/abtests/ranker-test/start")).json()["status"] == "running"

        resp = await client.post("/api/abtests/ranker-test/execute", json={"input": {"q": 1}, "user_id": "u1"})
        body = resp.json()
        assert body["status"] == "completed"
        assert body["variant_id"] in ("control", "treatment")

        again = (await client.post("/api/abtests/ranker-test/execute", json={"input": {}, "user_id": "u1"})).json()
        assert again["variant_id"] == body["variant_id"]

        stats = (await client.get("/api/abtests/ranker-test/statistics")).json()
        assert sum(s["total_executions"] for s in stats) == 2

        rec = (await client.get("/api/abtests/ranker-test/recommendation")).json()
        assert rec["recommendation"] in ("continue", "extend")

        stopped = await client.post("/api/abtests/ranker-test/stop", json={"reason": "done"})
        assert stopped.json()["status"] == "completed"
        assert stopped.json()["stop_reason"] == "done"

    async def test_not_eligible_is_a_response(self, client):
        excluded = {**AB_TEST, "targeting": {"exclude_users": ["mallory"]}}
        await client.post("/api/abtests", json=excluded)
        await client.post("/api/abtests/ranker-test/start")

        resp = await client.post("/api/abtests/ranker-test/execute", json={"input": {}, "user_id": "mallory"})

        assert resp.status_code == 200
        assert resp.json()["status"] == "not_eligible"
        assert resp.json()["reason"] == "excluded"

    async def test_execute_draft_test_is_state_error(self, client):
        await client.post("/api/abtests", json=AB_TEST)
        resp = await client.post("/api/abtests/ranker-test/execute", json={"input": {}})
        assert resp.status_code == 409
        assert resp.json()["error_type"] == "StateError"

    async def test_invalid_weights(self, client):
        bad = {**AB_TEST, "variants": [{**AB_TEST["variants"][0], "weight": 70}, AB_TEST["variants"][1]]}
        resp = await client.post("/api/abtests", json=bad)
        assert resp.status_code == 400
        assert "sum to 100" in resp.json()["detail"]

    async def test_list_by_status(self, client):
        await client.post("/api/abtests", json=AB_TEST)
        assert (await client.get("/api/abtests", params={"status": "running"})).json() == []
        assert len((await client.get("/api/abtests", params={"status": "draft"})).json()) == 1

    async def test_results_log(self, client):
        await client.post("/api/abtests", json=AB_TEST)
        await client.post("/api/abtests/ranker-test/start")
        for user in ("u1", "u2", "u3"):
            await client.post("/api/abtests/ranker-test/execute", json={"input": {}, "user_id": user})

        results = (await client.get("/api/abtests/ranker-test/results")).json()
        assert [r["user_id"] for r in results] == ["u1", "u2", "u3"]
        latest = (await client.get("/api/abtests/ranker-test/results", params={"limit": 1})).json()
        assert [r["user_id"] for r in latest] == ["u3"]
        assert (await client.get("/api/abtests/ranker-test/results", params={"limit": 0})).status_code == 422
        assert (await client.get("/api/abtests/missing/results")).status_code == 404


@pytest.mark.asyncio
class TestServiceEndpoints:
    async def test_health(self, client):
        body = (await client.get("/api/health")).json()
        assert body["status"] == "healthy"
        assert body["components"]["store"] == {"status": "connected", "backend": "memory"}
        assert body["components"]["pipelines"]["max_concurrent"] == 50

    async def test_prometheus_metrics(self, client):
        await client.post("/api/pipelines", json=PIPELINE)
        await client.post("/api/pipelines/score-flow/execute", json={"input": {}})

        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert 'pipeline_runs_total{pipeline="score-flow",status="completed"}' in resp.text
        assert "algorithm_executions_total" in resp.text

    async def test_cors_preflight_allows_correlation_header(self, client):
        origin = settings.allowed_origins.split(",")[0].strip()
        resp = await client.options(
            "/api/pipelines/score-flow/execute",
            headers={
                "Origin": origin,
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "X-Correlation-ID",
            },
        )
        assert resp.status_code == 200
        assert "x-correlation-id" in resp.headers["access-control-allow-headers"].lower()
