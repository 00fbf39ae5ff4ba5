"""Retry, timeout and circuit-breaking helpers shared by every outbound call."""

from .circuit_breaker import CircuitBreaker, CircuitBreakerManager, CircuitState
from .retry import PartialResults, RetryPolicy, backoff_delay, with_partial_results, with_timeout

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerManager",
    "CircuitState",
    "PartialResults",
    "RetryPolicy",
    "backoff_delay",
    "with_partial_results",
    "with_timeout",
]
