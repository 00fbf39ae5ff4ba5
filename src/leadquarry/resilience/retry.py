"""
Backoff-with-jitter retry executor built on tenacity.

The delay before retry ``n`` (0-based) is ``min(base * 2**n, max)`` plus up to 10%
jitter. Rate-limit errors are never retried; the caller falls back to another
source instead.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from leadquarry.exceptions import is_retryable_error

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ShouldRetry = Callable[[BaseException], bool]
OnRetry = Callable[[BaseException, int], None]


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: float = 0.1) -> float:
    """Seconds to wait before retry ``attempt`` (0-based)."""
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + delay * jitter * random.random()


class RetryPolicy:
    """Runs an async operation with bounded retries."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        should_retry: ShouldRetry = is_retryable_error,
        on_retry: Optional[OnRetry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.should_retry = should_retry
        self.on_retry = on_retry
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Any, **overrides: Any) -> RetryPolicy:
        """Build from a ``RetryConfig`` (delays are configured in milliseconds)."""
        params: Dict[str, Any] = {
            "max_retries": config.max_retries,
            "base_delay": config.base_delay_ms / 1000.0,
            "max_delay": config.max_delay_ms / 1000.0,
        }
        params.update(overrides)
        return cls(**params)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        should_retry: Optional[ShouldRetry] = None,
        on_retry: Optional[OnRetry] = None,
        name: str = "operation",
    ) -> T:
        """
        Call ``operation`` until it succeeds, ``max_retries`` is exhausted or
        ``should_retry`` rejects the error. The last error is re-raised unchanged.
        """
        retries = self.max_retries if max_retries is None else max_retries
        base = self.base_delay if base_delay is None else base_delay
        ceiling = self.max_delay if max_delay is None else max_delay
        predicate = should_retry or self.should_retry
        callback = on_retry or self.on_retry

        def _retryable(error: BaseException) -> bool:
            if isinstance(error, asyncio.CancelledError):
                return False
            return predicate(error)

        def _wait(retry_state: RetryCallState) -> float:
            return backoff_delay(retry_state.attempt_number - 1, base, ceiling)

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.debug(
                "Retrying after failure",
                operation=name,
                attempt=retry_state.attempt_number,
                max_retries=retries,
                error=str(error),
            )
            if callback is not None and error is not None:
                callback(error, retry_state.attempt_number)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=_wait,
            retry=retry_if_exception(_retryable),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(operation)


async def with_timeout(awaitable: Awaitable[T], seconds: float, message: str = "Operation timed out") -> T:
    """Await with a deadline, raising ``asyncio.TimeoutError(message)`` on expiry."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(f"{message} after {seconds:.1f}s") from None


@dataclass
class PartialResults:
    data: Dict[str, Any] = field(default_factory=dict)
    total_sources: int = 0
    successful_sources: List[str] = field(default_factory=list)
    failed_sources: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed_sources) and bool(self.successful_sources)


async def with_partial_results(operations: Dict[str, Callable[[], Awaitable[Any]]]) -> PartialResults:
    """Run named operations concurrently; one failing never discards the others' data."""
    names = list(operations)
    outcomes = await asyncio.gather(*(operations[name]() for name in names), return_exceptions=True)

    result = PartialResults(total_sources=len(names))
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            result.failed_sources.append(name)
            result.errors[name] = str(outcome)
            logger.warning("Partial operation failed", source=name, error=str(outcome))
        else:
            result.successful_sources.append(name)
            result.data[name] = outcome
    return result
