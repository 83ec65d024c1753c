"""
Single-algorithm executor interface.

The orchestration layer never runs algorithm code itself: every stage and
every A/B variant call goes through an ``AlgorithmExecutor``. The default
implementation talks to a remote executor service over HTTP.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from app.orchestration.models import AlgorithmResult, ExecutionContext

logger = logging.getLogger(__name__)


class AlgorithmExecutor(ABC):
    """Runs one algorithm call and reports the outcome as an AlgorithmResult."""

    @abstractmethod
    async def execute(self, algorithm_id: str, input_data: Any, context: ExecutionContext) -> AlgorithmResult:
        ...

    async def close(self) -> None:
        return None


class HttpAlgorithmExecutor(AlgorithmExecutor):
    """
    Calls ``POST {base_url}/execute`` on the executor service.

    Transport errors, non-2xx responses and malformed bodies are turned into
    unsuccessful results so a stage failure never escapes as an exception.
    """

    def __init__(self, base_url: str, timeout: float = 60.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def execute(self, algorithm_id: str, input_data: Any, context: ExecutionContext) -> AlgorithmResult:
        payload = {
            "algorithm_id": algorithm_id,
            "input": input_data,
            "context": context.model_dump(mode="json"),
        }
        start = time.perf_counter()
        try:
            resp = await self._client.post(
                f"{self.base_url}/execute",
                json=payload,
                headers={"X-Request-ID": context.correlation_id},
            )
            resp.raise_for_status()
            return AlgorithmResult.model_validate(resp.json())
        except httpx.HTTPStatusError as e:
            error = f"Executor returned {e.response.status_code} for {algorithm_id}"
        except httpx.HTTPError as e:
            error = f"Executor unreachable: {type(e).__name__}: {e}"
        except ValueError as e:
            error = f"Malformed executor response: {e}"

        elapsed = (time.perf_counter() - start) * 1000
        logger.warning("Executor call failed for %s (%s): %s", algorithm_id, context.correlation_id, error)
        return AlgorithmResult(
            success=False,
            error=error,
            execution_time=elapsed,
            algorithm_version=context.version or "unknown",
        )

    async def close(self) -> None:
        await self._client.aclose()
