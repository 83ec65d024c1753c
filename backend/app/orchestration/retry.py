"""
Per-stage timeout and retry wrapper around executor calls.

Each attempt runs under ``asyncio.wait_for``; tenacity drives the attempts
and the fixed, linear or exponential backoff between them.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    wait_incrementing,
)
from tenacity.wait import wait_base

from app.orchestration.models import AlgorithmResult, BackoffStrategy, RetryPolicy

logger = logging.getLogger(__name__)


def wait_strategy(policy: RetryPolicy) -> wait_base:
    """Tenacity wait for the policy's backoff kind, in seconds, capped at max_delay."""
    initial = policy.initial_delay / 1000
    ceiling = policy.max_delay / 1000
    if policy.backoff_strategy == BackoffStrategy.FIXED:
        return wait_fixed(min(initial, ceiling))
    if policy.backoff_strategy == BackoffStrategy.LINEAR:
        return wait_incrementing(start=initial, increment=initial, max=ceiling)
    return wait_exponential(multiplier=initial, max=ceiling)


def is_retryable(policy: RetryPolicy, error: str | None) -> bool:
    if not policy.retryable_errors:
        return True
    error = error or ""
    return any(fragment in error for fragment in policy.retryable_errors)


def describe_error(exc: BaseException, timeout_ms: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"Timeout after {timeout_ms:.0f}ms"
    return f"{type(exc).__name__}: {exc}"


async def call_with_retry(
    call: Callable[[], Awaitable[AlgorithmResult]],
    policy: RetryPolicy,
    timeout_ms: float,
    label: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> tuple[AlgorithmResult, int]:
    """
    Run *call* under a timeout, retrying on timeout, exception or an
    unsuccessful result whose error matches the policy.

    Returns the last result and the number of attempts made. Never raises
    for call failures; the final failure is reported as an unsuccessful
    AlgorithmResult.
    """
    attempts = 0
    started = 0.0

    async def attempt() -> AlgorithmResult:
        nonlocal attempts, started
        attempts += 1
        started = time.perf_counter()
        return await asyncio.wait_for(call(), timeout=timeout_ms / 1000)

    def failure(exc: BaseException) -> AlgorithmResult:
        return AlgorithmResult(
            success=False,
            error=describe_error(exc, timeout_ms),
            execution_time=(time.perf_counter() - started) * 1000,
        )

    def log_retry(state: RetryCallState) -> None:
        outcome = state.outcome
        error = describe_error(outcome.exception(), timeout_ms) if outcome.failed else outcome.result().error
        logger.info(
            "Retrying %s after failure (attempt %d/%d, %.0fms): %s",
            label, state.attempt_number, policy.max_retries + 1,
            state.next_action.sleep * 1000 if state.next_action else 0, error,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=wait_strategy(policy),
        retry=(
            retry_if_result(lambda r: not r.success and is_retryable(policy, r.error))
            | retry_if_exception(
                lambda e: isinstance(e, Exception) and is_retryable(policy, describe_error(e, timeout_ms))
            )
        ),
        before_sleep=log_retry,
        sleep=sleep,
    )

    try:
        result = await retrying(attempt)
    except RetryError as e:
        last = e.last_attempt
        result = failure(last.exception()) if last.failed else last.result()
    except Exception as e:
        # Raised by an attempt the policy does not retry.
        result = failure(e)
    return result, attempts
