"""
Circuit breaker for failing sources.

A source that fails ``failure_threshold`` times in a row is short-circuited for
``reset_timeout`` seconds. After the cool-down exactly one trial call is admitted;
its outcome closes the circuit again or re-opens it for another full window.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from leadquarry.exceptions import CircuitOpenError
from leadquarry.observability.metrics import METRICS

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, blocking requests
    HALF_OPEN = "half_open"  # One trial call in flight


class CircuitBreaker:
    """Consecutive-failure circuit breaker for a single source."""

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._last_failure_time: Optional[float] = None
        self._last_success_time: Optional[float] = None

        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.info("Circuit state change", source=self.name, old=self._state.value, new=new_state.value)
        self._state = new_state
        METRICS["circuit_transitions"].labels(source=self.name, state=new_state.value).inc()

    def retry_in(self) -> float:
        """Seconds until an open circuit admits its trial call."""
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self._opened_at))

    async def can_execute(self) -> bool:
        """Check whether a call may go through. Claims the trial slot when half-opening."""
        async with self._lock:
            if self._state is CircuitState.CLOSED:
                return True

            if self._state is CircuitState.OPEN:
                if self.retry_in() > 0:
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return True

            # HALF_OPEN: only the single trial call is admitted
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    async def record_success(self) -> None:
        async with self._lock:
            self._last_success_time = self._clock()
            self._failure_count = 0
            self._trial_in_flight = False
            if self._state is not CircuitState.CLOSED:
                self._opened_at = None
                self._transition(CircuitState.CLOSED)

    async def record_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            self._last_failure_time = now
            self._trial_in_flight = False

            if self._state is CircuitState.HALF_OPEN:
                self._opened_at = now
                self._transition(CircuitState.OPEN)
                return

            self._failure_count += 1
            if self._state is CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                logger.warning("Circuit opening", source=self.name, failures=self._failure_count)
                self._opened_at = now
                self._transition(CircuitState.OPEN)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker, raising ``CircuitOpenError`` when short-circuited."""
        if not await self.can_execute():
            raise CircuitOpenError(self.name, self.retry_in())
        try:
            result = await operation()
        except asyncio.CancelledError:
            async with self._lock:
                self._trial_in_flight = False
            raise
        except Exception:
            await self.record_failure()
            raise
        await self.record_success()
        return result

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state for monitoring."""
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "retry_in": round(self.retry_in(), 1),
            "last_failure_time": self._last_failure_time,
            "last_success_time": self._last_success_time,
        }

    async def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        async with self._lock:
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False
            self._last_failure_time = None
            self._last_success_time = None
            self._transition(CircuitState.CLOSED)

    async def force_open(self) -> None:
        """Manually force the circuit breaker to open state."""
        async with self._lock:
            logger.warning("Circuit manually forced open", source=self.name)
            self._opened_at = self._clock()
            self._transition(CircuitState.OPEN)


class CircuitBreakerManager:
    """Keeps one circuit breaker per source id."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._circuit_breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_config(cls, config: Any) -> CircuitBreakerManager:
        return cls(failure_threshold=config.failure_threshold, reset_timeout=config.reset_timeout_seconds)

    def get(self, source: str) -> CircuitBreaker:
        """Get or create the breaker for a source."""
        breaker = self._circuit_breakers.get(source)
        if breaker is None:
            breaker = CircuitBreaker(
                name=source,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                clock=self._clock,
            )
            self._circuit_breakers[source] = breaker
        return breaker

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        return {source: cb.get_state() for source, cb in self._circuit_breakers.items()}

    async def reset_all(self) -> None:
        for cb in self._circuit_breakers.values():
            await cb.reset()
        logger.info("All circuit breakers reset", count=len(self._circuit_breakers))
