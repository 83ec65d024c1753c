"""Shared test fixtures for backend tests."""

import asyncio
import inspect
import random
from collections.abc import Callable
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.config import Settings
from app.main import app
from app.orchestration.events import EventBus
from app.orchestration.executor import AlgorithmExecutor
from app.orchestration.models import AlgorithmResult, ExecutionContext
from app.orchestration.monitoring import MonitoringEngine
from app.orchestration.services import OrchestrationServices


class FakeExecutor(AlgorithmExecutor):
    """
    Scripted executor. By default every call succeeds and echoes its input;
    ``script(algorithm_id, handler)`` installs a per-algorithm behaviour.

    A handler receives (input, context) and may return an AlgorithmResult,
    raise, return a plain value (wrapped as a successful result) or be async.
    """

    def __init__(self):
        self.calls: list[tuple[str, Any, ExecutionContext]] = []
        self._handlers: dict[str, Callable] = {}

    def script(self, algorithm_id: str, handler: Callable) -> None:
        self._handlers[algorithm_id] = handler

    def calls_for(self, algorithm_id: str) -> list[tuple[str, Any, ExecutionContext]]:
        return [c for c in self.calls if c[0] == algorithm_id]

    async def execute(self, algorithm_id: str, input_data: Any, context: ExecutionContext) -> AlgorithmResult:
        self.calls.append((algorithm_id, input_data, context))
        handler = self._handlers.get(algorithm_id)
        if handler is None:
            return AlgorithmResult(
                success=True,
                data={"algorithm": algorithm_id, "input": input_data},
                execution_time=1.0,
                algorithm_version=context.version or "1.0.0",
            )
        out = handler(input_data, context)
        if inspect.isawaitable(out):
            out = await out
        if isinstance(out, AlgorithmResult):
            return out
        return AlgorithmResult(success=True, data=out, execution_time=1.0, algorithm_version="1.0.0")


class FakeClock:
    """Manually advanced epoch clock for bucket arithmetic."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fail(error: str = "boom") -> AlgorithmResult:
    return AlgorithmResult(success=False, error=error, algorithm_version="1.0.0")


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="test",
        log_format="text",
        store_backend="memory",
        max_concurrent_pipelines=50,
        queue_poll_interval=0.01,
        deployment_environment="production",
    )


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def monitoring(event_bus: EventBus, clock: FakeClock) -> MonitoringEngine:
    return MonitoringEngine(event_bus, clock=clock)


@pytest_asyncio.fixture
async def services(test_settings: Settings, executor: FakeExecutor, clock: FakeClock) -> AsyncGenerator[OrchestrationServices, None]:
    svc = OrchestrationServices(test_settings, executor=executor, rng=random.Random(42), clock=clock)
    yield svc
    await svc.stop()


@pytest_asyncio.fixture
async def client(services: OrchestrationServices) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test service container installed."""
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    del app.state.services
