"""
Source orchestration.

A run classifies the query, builds the category's prioritized source list
(plus API sources when keys are configured) and walks it tier by tier. Within
a tier, parallel sources are issued together behind a bounded worker pool and
sequential ones one at a time afterwards. Every call is wrapped, from the
outside in, by the source's circuit breaker and the retry policy; inside an
attempt the source is admitted by the rate limiter first and only the network
half runs under the per-kind timeout. One source failing never fails the run.

Cached ``Source`` transports are shared between concurrent runs, so a run
reads priority, thresholds and parallelism from its own ``DataSource``.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import structlog
from structlog.contextvars import bound_contextvars

from leadquarry.config.config import OrchestratorConfig
from leadquarry.emails.scoring import ConfidenceScorer, EmailScoreInput
from leadquarry.emails.verifier import EmailVerifier, SmtpOutcome
from leadquarry.exceptions import CircuitOpenError, JobProcessingError, QuotaExhaustedError
from leadquarry.observability.metrics import METRICS
from leadquarry.protocols import DataSource, MergedBusinessRecord, RunResult, RunStatus, SearchRequest, SourceStats
from leadquarry.resilience.circuit_breaker import CircuitBreakerManager, CircuitState
from leadquarry.resilience.retry import RetryPolicy, with_timeout
from leadquarry.sources.base import Source
from leadquarry.sources.catalog import (
    filter_sources_by_result_count,
    get_prioritized_sources,
    group_sources_by_priority,
    resolve_category,
    with_api_sources,
)
from leadquarry.sources.registry import SourceRegistry

from .events import EventType, RunEvents
from .filters import apply_b2b_filters
from .merge import RecordMerger

logger = structlog.get_logger(__name__)

OVERFETCH_FACTOR = 1.5


@dataclass
class _RunState:
    request: SearchRequest
    events: RunEvents
    merger: RecordMerger
    category: str = ""
    stats: Dict[str, SourceStats] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    exhausted: Set[str] = field(default_factory=set)
    deadline_hit: bool = False
    checks: Dict[Tuple[str, str], "asyncio.Future[Any]"] = field(default_factory=dict)

    def stats_for(self, source_id: str) -> SourceStats:
        return self.stats.setdefault(source_id, SourceStats())

    def emit(self, type: EventType, **data) -> None:
        self.events.emit(type, self.request.run_id, **data)


@dataclass
class RunHandle:
    """A run started in the background: iterate ``events``, await ``result()`` or ``cancel()``."""

    events: RunEvents
    task: "asyncio.Task[RunResult]"

    async def result(self) -> RunResult:
        return await self.task

    def cancel(self) -> None:
        self.task.cancel()


class SourceOrchestrator:
    def __init__(
        self,
        registry: SourceRegistry,
        breakers: Optional[CircuitBreakerManager] = None,
        retry: Optional[RetryPolicy] = None,
        scorer: Optional[ConfidenceScorer] = None,
        config: Optional[OrchestratorConfig] = None,
        api_enabled: bool = True,
        prefer_apis: bool = True,
        verifier: Optional[EmailVerifier] = None,
    ):
        self.registry = registry
        self.breakers = breakers or CircuitBreakerManager()
        self.retry = retry or RetryPolicy()
        self.scorer = scorer or ConfidenceScorer()
        self.config = config or OrchestratorConfig()
        self.api_enabled = api_enabled
        self.prefer_apis = prefer_apis
        self.verifier = verifier
        self._pool = asyncio.Semaphore(self.config.worker_pool_size)

    # --- planning ---

    def plan(self, request: SearchRequest) -> Tuple[str, List[DataSource]]:
        """The category and its full source list, API sources included."""
        category = resolve_category(request.query, request.has_location, request.industry)
        sources = get_prioritized_sources(category)
        if self.api_enabled:
            sources = with_api_sources(sources, self.registry.api_providers(), self.prefer_apis)
        return category, sources

    # --- entry points ---

    def start(self, request: SearchRequest) -> RunHandle:
        events = RunEvents(self.config.event_buffer_size)
        return RunHandle(events, asyncio.ensure_future(self.run(request, events)))

    async def run(self, request: SearchRequest, events: Optional[RunEvents] = None) -> RunResult:
        """Execute one run. Never raises except on cancellation."""
        with bound_contextvars(run_id=request.run_id):
            return await self._run(request, events or RunEvents(self.config.event_buffer_size))

    async def _run(self, request: SearchRequest, events: RunEvents) -> RunResult:
        state = _RunState(request, events, RecordMerger(self.config.name_match_threshold))
        started = time.perf_counter()

        try:
            state.category, definitions = self.plan(request)
            state.emit(EventType.RUN_STARTED, category=state.category, sources=[s.id for s in definitions])
            logger.info("Run started", query=request.query, category=state.category, sources=len(definitions))

            deadline = self.config.run_deadline_seconds
            if deadline:
                try:
                    await asyncio.wait_for(self._execute(state, definitions), timeout=deadline)
                except asyncio.TimeoutError:
                    state.deadline_hit = True
                    state.errors["run"] = f"Run deadline of {deadline:.0f}s reached"
                    logger.warning("Run deadline reached", deadline=deadline, records=len(state.merger))
            else:
                await self._execute(state, definitions)

            records = await self._finalize(state)
            status = self._status(state)
        except asyncio.CancelledError:
            events.close()
            raise
        except Exception as e:  # noqa: BLE001
            error = JobProcessingError(request.run_id, f"Run failed: {e}", e)
            logger.error("Run failed", error=str(e), exc_info=True)
            state.errors["run"] = error.message
            records = list(state.merger.records)[: request.count]
            status = RunStatus.FAILED

        result = RunResult(
            request=request,
            category=state.category,
            status=status,
            records=records,
            source_stats=state.stats,
            errors=state.errors,
            duration_seconds=time.perf_counter() - started,
        )
        METRICS["runs"].labels(status=status.value).inc()
        state.emit(
            EventType.RUN_COMPLETED,
            status=status.value,
            records=len(records),
            succeeded=result.succeeded_sources,
            failed=result.failed_sources,
        )
        events.close()
        logger.info("Run completed", status=status.value, records=len(records), duration=round(result.duration_seconds, 2))
        return result

    # --- execution ---

    async def _execute(self, state: _RunState, definitions: List[DataSource]) -> None:
        request = state.request
        for priority, tier in group_sources_by_priority(definitions).items():
            if len(state.merger) >= request.count:
                break

            eligible = filter_sources_by_result_count(tier, len(state.merger))
            for definition in tier:
                if definition not in eligible:
                    self._skip(state, definition.id, "enough_results")
            bound = self.registry.bind(eligible)
            if not bound:
                continue

            state.emit(EventType.TIER_STARTED, priority=priority, sources=[d.id for d, _ in bound])
            remaining = request.count - len(state.merger)
            per_source = min(math.ceil(remaining * OVERFETCH_FACTOR / len(bound)), request.count)

            parallel = [(d, s) for d, s in bound if d.parallel]
            sequential = [(d, s) for d, s in bound if not d.parallel]

            if parallel:
                await asyncio.gather(*(self._run_source(state, d, s, per_source) for d, s in parallel))

            for definition, source in sequential:
                needed = request.count - len(state.merger)
                if needed <= 0:
                    break
                await self._run_source(state, definition, source, needed)

    def _skip_reason(self, state: _RunState, definition: DataSource, source: Source) -> Optional[str]:
        if source.id in state.exhausted:
            return "quota_exhausted"
        min_results = definition.min_results
        if min_results and len(state.merger) >= min_results:
            return "enough_results"
        breaker = self.breakers.get(source.id)
        if breaker.state is CircuitState.OPEN and breaker.retry_in() > 0:
            return "circuit_open"
        if not source.is_available():
            if source.kind == "api":
                state.exhausted.add(source.id)
            return "unavailable"
        return None

    def _skip(self, state: _RunState, source_id: str, reason: str) -> None:
        state.stats_for(source_id).skipped += 1
        METRICS["source_calls"].labels(source=source_id, outcome="skipped").inc()
        state.emit(EventType.SOURCE_SKIPPED, source=source_id, reason=reason)
        logger.debug("Source skipped", source=source_id, reason=reason)

    def timeout_for(self, source: Source) -> float:
        return self.registry.timeout_for(source)

    async def _run_source(self, state: _RunState, definition: DataSource, source: Source, limit: int) -> None:
        reason = self._skip_reason(state, definition, source)
        if reason is not None:
            self._skip(state, source.id, reason)
            return

        async with self._pool:
            # The tier may have filled up while this call waited for a worker.
            reason = self._skip_reason(state, definition, source)
            if reason is not None:
                self._skip(state, source.id, reason)
                return

            stats = state.stats_for(source.id)
            request = state.request
            timeout = self.timeout_for(source)
            breaker = self.breakers.get(source.id)

            async def attempt():
                # Limiter backpressure raises its own queue errors outside the call timeout.
                await source.admit(request)
                return await with_timeout(source.retrieve(request, limit), timeout, f"{source.id} timed out")

            async def guarded():
                return await self.retry.execute(attempt, name=source.id)

            state.emit(EventType.SOURCE_STARTED, source=source.id, kind=source.kind, limit=limit)
            stats.attempts += 1
            started = time.perf_counter()
            try:
                candidates = await breaker.call(guarded)
            except CircuitOpenError:
                stats.attempts -= 1
                self._skip(state, source.id, "circuit_open")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                elapsed = time.perf_counter() - started
                if isinstance(e, QuotaExhaustedError):
                    state.exhausted.add(source.id)
                stats.failures += 1
                stats.total_latency += elapsed
                stats.last_error = str(e) or type(e).__name__
                state.errors[source.id] = stats.last_error
                METRICS["source_calls"].labels(source=source.id, outcome="failure").inc()
                METRICS["source_latency_seconds"].labels(source=source.id).observe(elapsed)
                state.emit(EventType.SOURCE_FAILED, source=source.id, error=stats.last_error, error_type=type(e).__name__)
                logger.warning("Source failed", source=source.id, error=stats.last_error, error_type=type(e).__name__)
                return

            elapsed = time.perf_counter() - started
            created = state.merger.add_all(candidates)
            stats.successes += 1
            stats.results += len(candidates)
            stats.total_latency += elapsed
            METRICS["source_calls"].labels(source=source.id, outcome="success").inc()
            METRICS["source_latency_seconds"].labels(source=source.id).observe(elapsed)
            if source.kind != "api" and self.registry.api is not None:
                self.registry.api.tracker.record(source.id, len(candidates), elapsed * 1000, False)
            state.emit(
                EventType.SOURCE_COMPLETED,
                source=source.id,
                results=len(candidates),
                new_records=created,
                total=len(state.merger),
                latency=round(elapsed, 3),
            )
            logger.info("Source completed", source=source.id, results=len(candidates), new_records=created)

    # --- results ---

    def _check(
        self, state: _RunState, kind: str, key: str, factory: Callable[[], Awaitable[Any]]
    ) -> "asyncio.Future[Any]":
        """One verifier call per email or domain for the whole run."""
        task = state.checks.get((kind, key))
        if task is None:
            task = asyncio.ensure_future(factory())
            state.checks[(kind, key)] = task
        return task

    async def _score(self, state: _RunState, record: MergedBusinessRecord) -> None:
        if not record.email:
            return
        email = record.email
        checks = {}
        if self.verifier is not None:
            domain = email.rsplit("@", 1)[-1].lower()
            verdict = await self._check(state, "email", email.lower(), lambda: self.verifier.verify_email(email))
            catch_all = await self._check(state, "domain", domain, lambda: self.verifier.detect_catch_all(domain))
            checks = dict(
                mx_valid=verdict.has_mx,
                smtp_verified=verdict.smtp_check is SmtpOutcome.PASSED and not catch_all,
                is_catch_all=catch_all,
                is_guessed=record.email_guessed,
            )
        record.score = await self.scorer.score(
            EmailScoreInput(
                email=email,
                source=record.email_source or (record.sources[0] if record.sources else ""),
                business_id=record.id,
                cross_reference_count=state.merger.cross_references(record),
                years_in_business=record.years_in_business,
                review_count=record.review_count,
                rating=record.rating,
                **checks,
            )
        )

    async def _finalize(self, state: _RunState) -> List[MergedBusinessRecord]:
        records = apply_b2b_filters(list(state.merger.records), state.request)
        await asyncio.gather(*(self._score(state, r) for r in records))
        records.sort(key=lambda r: r.best_confidence, reverse=True)
        return records[: state.request.count]

    def _status(self, state: _RunState) -> RunStatus:
        if state.deadline_hit:
            return RunStatus.DEGRADED
        if not any(stats.successes for stats in state.stats.values()):
            return RunStatus.DEGRADED
        return RunStatus.COMPLETED

    async def close(self) -> None:
        await self.registry.close()
