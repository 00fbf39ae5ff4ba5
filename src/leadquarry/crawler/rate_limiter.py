"""
Per-domain request pacing.

Requests to one domain are serialized FIFO, spaced by at least
``max(min_delay, robots crawl-delay)`` and capped at a requests-per-minute
window. Different domains never wait on each other. State is mirrored to the
shared store so that several processes approximate one limiter.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple
from urllib.parse import urlparse

import structlog

from leadquarry.config.config import RateLimitConfig
from leadquarry.exceptions import QueueFullError, QueueTimeoutError
from leadquarry.observability.metrics import METRICS
from leadquarry.shared_state import SharedStateMirror, rate_key

from .robots_parser import RobotsCache

logger = structlog.get_logger(__name__)

TIMING_JITTER = 0.3


@dataclass
class DomainRateState:
    """Rate limiting state for a specific domain."""

    last_request_time: float = 0.0
    request_count: int = 0
    window_start: float = 0.0
    total_requests: int = 0
    rejected: int = 0
    hydrated: bool = False

    def to_mirror(self) -> Dict[str, Any]:
        return {
            "lastRequest": self.last_request_time,
            "requestCount": self.request_count,
            "windowStart": self.window_start,
        }


def extract_domain(url: str) -> str:
    """Lower-cased host of ``url`` (bare hosts are accepted too)."""
    parsed = urlparse(url if "//" in url else f"//{url}")
    return (parsed.hostname or url).lower()


class DomainRateLimiter:
    """
    Serializes and spaces requests per normalized domain.

    ``acquire(url)`` suspends the caller until its request may go out. Callers
    beyond ``max_queue_size`` waiting on one domain get ``QueueFullError``;
    callers that wait longer than ``queue_timeout_seconds`` for their turn get
    ``QueueTimeoutError``.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        robots: Optional[RobotsCache] = None,
        mirror: Optional[SharedStateMirror] = None,
        timing_randomization: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RateLimitConfig()
        self.robots = robots
        self.mirror = mirror
        self.timing_randomization = timing_randomization
        self._clock = clock
        self._sleep = sleep

        self._states: Dict[str, DomainRateState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiting: Dict[str, int] = {}
        self._pending_writes: Set[asyncio.Task] = set()

    def normalize_domain(self, domain: str) -> str:
        """Collapse a subdomain onto its registrable root when that root has a preset."""
        domain = domain.lower().rstrip(".")
        if domain.startswith("www."):
            domain = domain[4:]
        parts = domain.split(".")
        if len(parts) > 2:
            root = ".".join(parts[-2:])
            if root in self.config.domain_presets:
                return root
        return domain

    def _get_domain_lock(self, domain: str) -> asyncio.Lock:
        if domain not in self._locks:
            self._locks[domain] = asyncio.Lock()
        return self._locks[domain]

    def _get_domain_state(self, domain: str) -> DomainRateState:
        if domain not in self._states:
            self._states[domain] = DomainRateState()
        return self._states[domain]

    def get_domain_settings(self, domain: str) -> Tuple[int, int]:
        """(requests per minute, minimum delay in ms) for a normalized domain."""
        for key, preset in self.config.domain_presets.items():
            if domain == key or domain.endswith("." + key):
                return preset.requests_per_minute, preset.min_delay_ms
        return self.config.per_domain, self.config.min_delay_ms

    async def _crawl_delay_ms(self, domain: str) -> float:
        if not self.config.respect_robots or self.robots is None:
            return 0.0
        delay = await self.robots.get_crawl_delay(domain)
        return delay * 1000.0 if delay else 0.0

    def _effective_min_delay_ms(self, min_delay_ms: int, crawl_delay_ms: float) -> float:
        delay = float(min_delay_ms)
        if self.timing_randomization and delay > 0:
            delay *= 1 + random.uniform(-TIMING_JITTER, TIMING_JITTER)
        return max(delay, crawl_delay_ms)

    async def _hydrate(self, domain: str, state: DomainRateState) -> None:
        state.hydrated = True
        if self.mirror is None:
            return
        remote = await self.mirror.get_json(rate_key(domain))
        if not remote:
            return
        try:
            last_request = float(remote.get("lastRequest", 0))
            window_start = float(remote.get("windowStart", 0))
            request_count = int(remote.get("requestCount", 0))
        except (TypeError, ValueError):
            return
        if last_request > state.last_request_time:
            state.last_request_time = last_request
            state.window_start = window_start
            state.request_count = request_count
            logger.debug("Hydrated rate state from mirror", domain=domain, request_count=request_count)

    def _mirror_state(self, domain: str, state: DomainRateState) -> None:
        if self.mirror is None or not self.mirror.enabled:
            return
        task = asyncio.create_task(
            self.mirror.set_json(rate_key(domain), state.to_mirror(), int(self.config.window_seconds * 2))
        )
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def acquire(self, url: str) -> float:
        """
        Wait until a request to ``url`` is permitted.

        Returns:
            Seconds spent waiting (queue plus pacing).
        """
        if not self.config.enabled:
            return 0.0

        domain = self.normalize_domain(extract_domain(url))
        state = self._get_domain_state(domain)
        lock = self._get_domain_lock(domain)
        depth_gauge = METRICS["rate_limit_queue_depth"].labels(domain=domain)

        waiting = self._waiting.get(domain, 0)
        if waiting >= self.config.max_queue_size:
            state.rejected += 1
            METRICS["rate_limit_rejections"].labels(domain=domain, reason="queue_full").inc()
            logger.warning("Rate limiter queue full", domain=domain, waiting=waiting)
            raise QueueFullError(domain, waiting)

        started = self._clock()
        self._waiting[domain] = waiting + 1
        depth_gauge.set(self._waiting[domain])
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.config.queue_timeout_seconds)
            except asyncio.TimeoutError:
                state.rejected += 1
                METRICS["rate_limit_rejections"].labels(domain=domain, reason="queue_timeout").inc()
                raise QueueTimeoutError(domain, self._clock() - started) from None
        finally:
            self._waiting[domain] -= 1
            depth_gauge.set(self._waiting[domain])

        try:
            if not state.hydrated:
                await self._hydrate(domain, state)

            rpm, min_delay_ms = self.get_domain_settings(domain)
            crawl_delay_ms = await self._crawl_delay_ms(domain)

            now = self._clock()
            if now - state.window_start >= self.config.window_seconds:
                state.window_start = now
                state.request_count = 0

            if state.request_count >= rpm:
                window_wait = state.window_start + self.config.window_seconds - now
                if window_wait > 0:
                    logger.debug("Window exhausted, waiting", domain=domain, wait=round(window_wait, 2))
                    await self._sleep(window_wait)
                now = self._clock()
                state.window_start = now
                state.request_count = 0

            min_interval = self._effective_min_delay_ms(min_delay_ms, crawl_delay_ms) / 1000.0
            if state.last_request_time:
                spacing_wait = state.last_request_time + min_interval - now
                if spacing_wait > 0:
                    await self._sleep(spacing_wait)

            now = self._clock()
            state.last_request_time = now
            state.request_count += 1
            state.total_requests += 1
            self._mirror_state(domain, state)
        finally:
            lock.release()

        waited = self._clock() - started
        METRICS["rate_limit_wait_seconds"].labels(domain=domain).observe(waited)
        return waited

    def get_domain_stats(self, domain: str) -> Dict[str, Any]:
        """Get statistics for a specific domain."""
        domain = self.normalize_domain(domain)
        if domain not in self._states:
            return {"exists": False}

        state = self._states[domain]
        rpm, min_delay_ms = self.get_domain_settings(domain)
        now = self._clock()
        return {
            "exists": True,
            "requests_per_minute": rpm,
            "min_delay_ms": min_delay_ms,
            "requests_in_window": state.request_count,
            "total_requests": state.total_requests,
            "rejected": state.rejected,
            "queue_depth": self._waiting.get(domain, 0),
            "time_since_last_request": now - state.last_request_time if state.last_request_time else None,
        }

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {domain: self.get_domain_stats(domain) for domain in self._states}

    def reset_domain(self, domain: str) -> None:
        """Reset rate limiting state for a domain."""
        domain = self.normalize_domain(domain)
        self._states.pop(domain, None)
        self._waiting.pop(domain, None)
        lock = self._locks.get(domain)
        if lock is not None and not lock.locked():
            del self._locks[domain]
        logger.info("Reset rate limiting for domain", domain=domain)

    async def reset(self) -> None:
        """Drop all local state, including cached robots.txt entries."""
        await self.flush()
        self._states.clear()
        self._waiting.clear()
        self._locks = {d: lock for d, lock in self._locks.items() if lock.locked()}
        if self.robots is not None:
            self.robots.reset()

    async def flush(self) -> None:
        """Wait for outstanding mirror writes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        if self.robots is not None:
            await self.robots.close()
