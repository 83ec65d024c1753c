"""Tests for the HTTP executor client."""

import json

import httpx
import pytest

from app.orchestration.executor import HttpAlgorithmExecutor
from app.orchestration.models import ExecutionContext

CTX = ExecutionContext(user_id="u1", correlation_id="corr-1", version="2.0.0")


def _executor(handler) -> HttpAlgorithmExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpAlgorithmExecutor("http://executor/", client=client)


@pytest.mark.asyncio
class TestHttpAlgorithmExecutor:
    async def test_posts_payload_and_parses_result(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["request_id"] = request.headers["X-Request-ID"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "success": True,
                "data": {"score": 0.9},
                "execution_time": 12.5,
                "algorithm_version": "2.0.0",
                "confidence": 0.9,
            })

        executor = _executor(handler)
        result = await executor.execute("scorer", {"doc": "x"}, CTX)
        await executor.close()

        assert result.success is True
        assert result.data == {"score": 0.9}
        assert result.confidence == 0.9
        assert seen["url"] == "http://executor/execute"
        assert seen["request_id"] == "corr-1"
        assert seen["body"]["algorithm_id"] == "scorer"
        assert seen["body"]["input"] == {"doc": "x"}
        assert seen["body"]["context"]["version"] == "2.0.0"

    async def test_http_error_status_becomes_failed_result(self):
        executor = _executor(lambda request: httpx.Response(503, json={"detail": "busy"}))
        result = await executor.execute("scorer", {}, CTX)
        assert result.success is False
        assert result.error == "Executor returned 503 for scorer"
        assert result.algorithm_version == "2.0.0"

    async def test_transport_error_becomes_failed_result(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        result = await _executor(handler).execute("scorer", {}, CTX)
        assert result.success is False
        assert result.error.startswith("Executor unreachable: ConnectError")

    async def test_malformed_body(self):
        executor = _executor(lambda request: httpx.Response(200, text="not json"))
        result = await executor.execute("scorer", {}, CTX)
        assert result.success is False
        assert result.error.startswith("Malformed executor response")
