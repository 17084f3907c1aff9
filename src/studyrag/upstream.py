"""Retry and timeout policy for calls into model-serving backends."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from studyrag.errors import OperationTimeoutError, StudyRAGError, UpstreamModelError
from studyrag.metrics.observability import PipelineMetrics, get_logger

T = TypeVar("T")

_logger = get_logger("upstream")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for idempotent upstream calls."""

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    call_timeout_seconds: float | None = 60.0


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        PipelineMetrics.upstream_retries.labels(operation=operation).inc()
        _logger.warning(
            "upstream.retry",
            operation=operation,
            attempt=state.attempt_number,
            error=str(exc),
            error_type=type(exc).__name__ if exc else None,
        )

    return _before_sleep


async def _invoke(operation: str, func: Callable[..., T], args: tuple, kwargs: dict, timeout: float | None) -> T:
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(f"{operation} timed out after {timeout}s") from exc
    except StudyRAGError:
        raise
    except Exception as exc:
        raise UpstreamModelError(f"{operation} failed: {exc}") from exc


async def call_upstream(
    operation: str,
    func: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    **kwargs: Any,
) -> T:
    """Run blocking ``func`` off the event loop with timeout and retries.

    Only ``UpstreamModelError`` and ``OperationTimeoutError`` are retried; any
    other ``StudyRAGError`` raised by ``func`` propagates on the first attempt.
    Cancellation of the awaiting task is never swallowed.
    """

    policy = policy or RetryPolicy()
    async for attempt in AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait_exponential(multiplier=policy.backoff_seconds, max=policy.max_backoff_seconds),
        retry=retry_if_exception_type((UpstreamModelError, OperationTimeoutError)),
        before_sleep=_log_retry(operation),
    ):
        with attempt:
            return await _invoke(operation, func, args, kwargs, policy.call_timeout_seconds)
    # unreachable due to reraise=True, but keeps type checkers happy
    raise UpstreamModelError(f"{operation} retries exhausted")
