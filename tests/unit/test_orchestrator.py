"""Tests for record merging, the event stream, B2B filters and orchestrated runs."""

import asyncio
from dataclasses import replace
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog

from leadquarry.apis import ApiUsageTracker
from leadquarry.config import OrchestratorConfig, RateLimitConfig
from leadquarry.crawler.rate_limiter import DomainRateLimiter
from leadquarry.emails.scoring import ConfidenceScorer
from leadquarry.emails.verifier import SmtpOutcome, VerificationResult
from leadquarry.exceptions import QuotaExhaustedError, SourceBlockedError
from leadquarry.orchestrator import (
    EventType,
    RecordMerger,
    RunEvents,
    SourceOrchestrator,
    apply_b2b_filters,
    estimate_company_size,
)
from leadquarry.orchestrator.filters import estimate_from_reviews, estimate_from_years
from leadquarry.protocols import (
    BusinessCandidate,
    DataSource,
    MergedBusinessRecord,
    RunStatus,
    SearchRequest,
    SourceType,
)
from leadquarry.resilience.circuit_breaker import CircuitBreakerManager
from leadquarry.resilience.retry import RetryPolicy
from leadquarry.sources import Source, SourceRegistry, get_prioritized_sources

ANIMALS = [
    "Aardvark", "Buffalo", "Cheetah", "Dolphin", "Eagle", "Falcon", "Gazelle", "Heron",
    "Iguana", "Jaguar", "Koala", "Lemur", "Mongoose", "Narwhal", "Ocelot", "Panther",
    "Quokka", "Raven", "Salmon", "Tiger", "Urchin", "Vulture", "Walrus", "Yak", "Zebra",
    "Badger", "Coyote", "Donkey", "Ferret", "Gorilla", "Hyena", "Ibis", "Jackal",
]


async def _no_sleep(_: float) -> None:
    return None


def _businesses(names: List[str], source: str, **fields) -> List[BusinessCandidate]:
    return [BusinessCandidate(name=name, source=source, **fields) for name in names]


class FakeSource(Source):
    """Scripted source: returns ``results``, raising queued ``errors`` first."""

    def __init__(
        self,
        definition: DataSource,
        results: Optional[List[BusinessCandidate]] = None,
        errors: Optional[List[BaseException]] = None,
        delay: float = 0.0,
        available: bool = True,
        kind: str = "directory",
    ):
        super().__init__(definition)
        self.results = results or []
        self.errors = list(errors or [])
        self.delay = delay
        self.available = available
        self.kind = kind
        self.calls: List[int] = []

    def is_available(self) -> bool:
        return self.available

    async def retrieve(self, request: SearchRequest, limit: int) -> List[BusinessCandidate]:
        self.calls.append(limit)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return [replace(c) for c in self.results[:limit]]


class ThrottledSource(FakeSource):
    """Admission goes through a real limiter before the scripted call."""

    def __init__(self, definition: DataSource, limiter: DomainRateLimiter, url: str, **kwargs):
        super().__init__(definition, **kwargs)
        self.limiter = limiter
        self.url = url

    async def admit(self, request: SearchRequest) -> None:
        await self.limiter.acquire(self.url)


def _verifier(no_mx=(), catch_all=(), smtp=SmtpOutcome.PASSED) -> MagicMock:
    def verify(email: str) -> VerificationResult:
        has_mx = email.rsplit("@", 1)[-1] not in no_mx
        return VerificationResult(email, has_mx, has_mx, smtp if has_mx else SmtpOutcome.SKIPPED, 0.9)

    verifier = MagicMock()
    verifier.verify_email = AsyncMock(side_effect=verify)
    verifier.detect_catch_all = AsyncMock(side_effect=lambda domain: domain in catch_all)
    return verifier


class Harness:
    def __init__(
        self, category: str = "medical", config: Optional[OrchestratorConfig] = None, api_providers=(), verifier=None
    ):
        self.registry = SourceRegistry(DomainRateLimiter(RateLimitConfig(enabled=False)))
        if api_providers:
            api = MagicMock()
            api.clients = [MagicMock(provider=p) for p in api_providers]
            api.tracker = ApiUsageTracker()
            self.registry.api = api
        self.breakers = CircuitBreakerManager(failure_threshold=3)
        self.orchestrator = SourceOrchestrator(
            self.registry,
            breakers=self.breakers,
            retry=RetryPolicy(max_retries=1, sleep=_no_sleep),
            scorer=ConfidenceScorer(),
            config=config or OrchestratorConfig(),
            verifier=verifier,
        )
        self.sources = {}
        for definition in get_prioritized_sources(category):
            self.add(FakeSource(definition))
        for provider in api_providers:
            definition = DataSource(id=f"{provider}_api", type=SourceType.API, priority=0)
            self.add(FakeSource(definition, kind="api"))

    def add(self, source: FakeSource) -> FakeSource:
        self.sources[source.id] = source
        self.registry.register(source)
        return source

    def script(self, source_id: str, **kwargs) -> FakeSource:
        current = self.sources[source_id]
        for key, value in kwargs.items():
            setattr(current, key, list(value) if key == "errors" else value)
        return current


@pytest.fixture
def harness():
    return Harness()


def _request(count: int = 10, **kwargs) -> SearchRequest:
    return SearchRequest(query="dentist", location="Austin, TX", count=count, **kwargs)


# ============================================================================
# Merge
# ============================================================================


@pytest.mark.unit
class TestRecordMerger:
    def test_variants_of_one_business_merge(self, sample_candidates):
        merger = RecordMerger()
        assert merger.add_all(sample_candidates) == 2

        record = merger.records[0]
        assert record.name == "Bright Smiles Dental"
        assert record.phone == "(512) 555-0100"
        assert record.website == "https://brightsmiles.example"
        assert record.email == "info@brightsmiles.example"
        assert record.email_source == "healthgrades"
        assert record.rating == 4.6
        assert record.review_count == 300
        assert record.sources == ["yelp", "healthgrades"]

    def test_fuzzy_match_respects_threshold(self):
        loose = RecordMerger(threshold=90)
        loose.add_all(_businesses(["Bright Smiles Dental", "Bright Smile Dental"], "yelp"))
        assert len(loose) == 1

        strict = RecordMerger(threshold=100)
        strict.add_all(_businesses(["Bright Smiles Dental", "Bright Smile Dental"], "yelp"))
        assert len(strict) == 2

    def test_higher_confidence_email_wins(self):
        merger = RecordMerger()
        merger.add(BusinessCandidate(name="Heron Dental", source="manta", email="a@heron.example", email_confidence=0.4))
        merger.add(BusinessCandidate(name="Heron Dental", source="bbb", email="b@heron.example", email_confidence=0.9))
        merger.add(BusinessCandidate(name="Heron Dental", source="yelp", email="c@heron.example", email_confidence=0.5))

        record = merger.records[0]
        assert record.email == "b@heron.example"
        assert record.email_source == "bbb"

    def test_first_values_are_kept(self):
        merger = RecordMerger()
        merger.add(BusinessCandidate(name="Heron Dental", source="yelp", phone="111", rating=4.0, review_count=10))
        merger.add(BusinessCandidate(name="Heron Dental", source="bbb", phone="222", rating=3.0, review_count=5))

        record = merger.records[0]
        assert (record.phone, record.rating, record.review_count) == ("111", 4.0, 10)

    def test_cross_references_count_sources_per_email(self):
        merger = RecordMerger()
        for source in ("yelp", "bbb", "yelp"):
            merger.add(BusinessCandidate(name="Heron Dental", source=source, email="Info@Heron.example"))

        record = merger.records[0]
        assert merger.cross_references(record) == 2

    def test_blank_names_are_ignored(self):
        merger = RecordMerger()
        assert merger.add_all(_businesses(["", "   "], "yelp")) == 0
        assert len(merger) == 0


# ============================================================================
# Events
# ============================================================================


@pytest.mark.unit
class TestRunEvents:
    @pytest.mark.asyncio
    async def test_iteration_stops_at_close(self):
        events = RunEvents()
        events.emit(EventType.RUN_STARTED, "run-1", category="medical")
        events.emit(EventType.RUN_COMPLETED, "run-1", status="completed")
        events.close()

        received = [event async for event in events]
        assert [e.type for e in received] == [EventType.RUN_STARTED, EventType.RUN_COMPLETED]
        assert received[0].to_dict()["category"] == "medical"

    @pytest.mark.asyncio
    async def test_full_buffer_drops_oldest(self):
        events = RunEvents(maxsize=3)
        for n in range(4):
            events.emit(EventType.SOURCE_STARTED, "run-1", n=n)
        assert events.dropped == 1

        events.close()
        received = [event.data["n"] async for event in events]
        assert received == [2, 3]
        assert events.dropped == 2

    @pytest.mark.asyncio
    async def test_emit_after_close_is_ignored(self):
        events = RunEvents()
        events.close()
        events.emit(EventType.SOURCE_STARTED, "run-1")

        assert events.closed
        assert [event async for event in events] == []


# ============================================================================
# Filters
# ============================================================================


@pytest.mark.unit
class TestCompanySizeFilters:
    def test_review_tiers(self):
        assert estimate_from_reviews(5).employee_count == 3
        assert estimate_from_reviews(5).confidence == 0.3
        assert estimate_from_reviews(120).employee_count == 8
        assert estimate_from_reviews(20000).employee_count == 300
        assert estimate_from_reviews(20000).confidence == 0.4
        assert estimate_from_reviews(None).employee_count is None

    def test_years_tiers(self):
        assert estimate_from_years(1.5).employee_count == 3
        assert estimate_from_years(7).employee_count == 15
        assert estimate_from_years(0).employee_count is None

    def test_combined_estimate_is_confidence_weighted(self):
        record = MergedBusinessRecord(name="Heron", normalized_name="heron", review_count=120, years_in_business=12)
        estimate = estimate_company_size(record)

        assert estimate.employee_count == 14
        assert estimate.confidence == pytest.approx(0.375)

    def test_filters_keep_unknowns(self):
        small = MergedBusinessRecord(name="Small", normalized_name="small", review_count=20, address="Austin, TX")
        large = MergedBusinessRecord(name="Large", normalized_name="large", review_count=1500, address="Dallas, TX")
        unknown = MergedBusinessRecord(name="Unknown", normalized_name="unknown")
        elsewhere = MergedBusinessRecord(name="Elsewhere", normalized_name="elsewhere", review_count=1500, address="Reno, NV")

        request = _request(company_size_min=10, state="TX")
        kept = apply_b2b_filters([small, large, unknown, elsewhere], request)

        assert [r.name for r in kept] == ["Large", "Unknown"]

    def test_no_filters_is_identity(self):
        records = [MergedBusinessRecord(name="A", normalized_name="a")]
        assert apply_b2b_filters(records, _request()) is records


# ============================================================================
# Orchestrated runs
# ============================================================================


@pytest.mark.unit
class TestSourceOrchestrator:
    @pytest.mark.asyncio
    async def test_stops_once_count_is_reached(self, harness):
        tier_one = ["google_maps", "google_serp", "bing_places", "healthgrades", "zocdoc"]
        for i, source_id in enumerate(tier_one):
            harness.script(source_id, results=_businesses(ANIMALS[i * 2 : i * 2 + 2], source_id))

        result = await harness.orchestrator.run(_request(count=5))

        assert result.status is RunStatus.COMPLETED
        assert result.category == "medical"
        assert len(result.records) == 5
        assert all(harness.sources[s].calls == [2] for s in tier_one)
        assert harness.sources["yelp"].calls == []
        assert harness.sources["bbb"].calls == []

    @pytest.mark.asyncio
    async def test_min_results_skips_and_sequential_tail(self, harness):
        harness.script("google_maps", results=_businesses(ANIMALS[:9], "google_maps"))
        harness.script("healthgrades", results=_businesses(ANIMALS[9:12], "healthgrades"))

        result = await harness.orchestrator.run(_request(count=30))

        assert harness.sources["google_maps"].calls == [9]
        assert harness.sources["yelp"].calls == []
        assert result.source_stats["yelp"].skipped == 1
        assert harness.sources["manta"].calls != []
        assert harness.sources["bbb"].calls == [18]
        assert len(result.records) == 12

    @pytest.mark.asyncio
    async def test_failed_sources_do_not_fail_the_run(self, harness):
        harness.script("google_maps", errors=[SourceBlockedError("google_maps", "captcha")])
        harness.script("zocdoc", errors=[RuntimeError("boom")])
        harness.script("healthgrades", results=_businesses(ANIMALS[:3], "healthgrades"))

        result = await harness.orchestrator.run(_request(count=10))

        assert result.status is RunStatus.COMPLETED
        assert [r.name for r in result.records] == ANIMALS[:3]
        assert set(result.failed_sources) == {"google_maps", "zocdoc"}
        assert "captcha" in result.errors["google_maps"]
        # blocks are not retried
        assert harness.sources["google_maps"].calls == [3]

    @pytest.mark.asyncio
    async def test_nothing_succeeding_is_degraded(self, harness):
        for source in harness.sources.values():
            source.errors = [RuntimeError("down")] * 4

        result = await harness.orchestrator.run(_request(count=3))

        assert result.status is RunStatus.DEGRADED
        assert result.records == []
        assert result.succeeded_sources == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, harness):
        harness.script("google_maps", errors=[ConnectionError("ECONNRESET")], results=_businesses(ANIMALS[:2], "google_maps"))

        result = await harness.orchestrator.run(_request(count=2))

        assert len(harness.sources["google_maps"].calls) == 2
        assert result.source_stats["google_maps"].successes == 1
        assert result.source_stats["google_maps"].attempts == 1

    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped(self, harness):
        await harness.breakers.get("google_maps").force_open()
        harness.script("healthgrades", results=_businesses(ANIMALS[:2], "healthgrades"))

        result = await harness.orchestrator.run(_request(count=2))

        assert harness.sources["google_maps"].calls == []
        assert result.source_stats["google_maps"].skipped == 1
        assert result.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_per_call_timeout(self):
        harness = Harness(config=OrchestratorConfig(directory_timeout_seconds=0.05, rendered_timeout_seconds=0.05))
        harness.script("zocdoc", delay=1.0)
        harness.script("healthgrades", results=_businesses(ANIMALS[:2], "healthgrades"))

        result = await harness.orchestrator.run(_request(count=2))

        assert "timed out" in result.errors["zocdoc"]
        assert result.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_deadline_keeps_partial_results(self):
        harness = Harness(config=OrchestratorConfig(run_deadline_seconds=0.1))
        harness.script("zocdoc", delay=5.0)
        harness.script("healthgrades", results=_businesses(ANIMALS[:2], "healthgrades"))

        result = await harness.orchestrator.run(_request(count=5))

        assert result.status is RunStatus.DEGRADED
        assert "deadline" in result.errors["run"]
        assert len(result.records) == 2

    @pytest.mark.asyncio
    async def test_unavailable_api_source_is_skipped(self):
        harness = Harness(api_providers=["here"])
        harness.sources["here_api"].available = False
        harness.script("healthgrades", results=_businesses(ANIMALS[:2], "healthgrades"))

        result = await harness.orchestrator.run(_request(count=2))

        assert harness.sources["here_api"].calls == []
        assert result.source_stats["here_api"].skipped == 1

    @pytest.mark.asyncio
    async def test_api_tier_runs_first_and_quota_errors_are_failures(self):
        harness = Harness(api_providers=["here"])
        harness.script("here_api", errors=[QuotaExhaustedError("here")])
        harness.script("healthgrades", results=_businesses(ANIMALS[:2], "healthgrades"))

        handle = harness.orchestrator.start(_request(count=2))
        tiers = [e.data["priority"] async for e in handle.events if e.type is EventType.TIER_STARTED]
        result = await handle.result()

        assert tiers[0] == 0
        assert harness.sources["here_api"].calls == [2]
        assert "here_api" in result.failed_sources

    @pytest.mark.asyncio
    async def test_records_sorted_by_confidence(self, harness):
        harness.script(
            "google_maps",
            results=[
                BusinessCandidate(name="Heron", source="google_maps"),
                BusinessCandidate(name="Jaguar", source="google_maps", email="info@jaguar.example"),
            ],
        )
        harness.script("healthgrades", results=[BusinessCandidate(name="Koala", source="healthgrades", email="k@koala.example")])

        result = await harness.orchestrator.run(_request(count=10))

        confidences = [r.best_confidence for r in result.records]
        assert confidences == sorted(confidences, reverse=True)
        assert result.records[-1].name == "Heron"
        assert result.records[-1].score is None
        assert all(r.score is not None for r in result.records[:2])

    @pytest.mark.asyncio
    async def test_same_business_from_two_sources_merges(self, harness):
        harness.script("google_maps", results=[BusinessCandidate(name="Heron Dental", source="google_maps", phone="1")])
        harness.script(
            "healthgrades",
            results=[BusinessCandidate(name="Heron Dental LLC", source="healthgrades", email="x@heron.example")],
        )

        result = await harness.orchestrator.run(_request(count=1))

        assert len(result.records) == 1
        assert set(result.records[0].sources) == {"google_maps", "healthgrades"}

    @pytest.mark.asyncio
    async def test_event_stream(self, harness):
        harness.script("healthgrades", results=_businesses(ANIMALS[:2], "healthgrades"))

        handle = harness.orchestrator.start(_request(count=2))
        events = [event async for event in handle.events]
        result = await handle.result()

        types = [e.type for e in events]
        assert types[0] is EventType.RUN_STARTED
        assert types[-1] is EventType.RUN_COMPLETED
        assert EventType.SOURCE_COMPLETED in types
        assert all(e.run_id == result.request.run_id for e in events)
        assert events[-1].data["status"] == "completed"

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_the_run(self, harness, monkeypatch):
        monkeypatch.setattr(harness.orchestrator, "plan", MagicMock(side_effect=RuntimeError("planner exploded")))

        result = await harness.orchestrator.run(_request())

        assert result.status is RunStatus.FAILED
        assert "planner exploded" in result.errors["run"]

    @pytest.mark.asyncio
    async def test_cancel_closes_event_stream(self, harness):
        harness.script("zocdoc", delay=5.0)
        handle = harness.orchestrator.start(_request(count=5))
        await asyncio.sleep(0.01)

        handle.cancel()
        with pytest.raises(asyncio.CancelledError):
            await handle.result()
        assert handle.events.closed

    @pytest.mark.asyncio
    async def test_concurrent_runs_keep_their_own_source_plans(self):
        harness = Harness("medical")
        for definition in get_prioritized_sources("legal"):
            if definition.id not in harness.sources:
                harness.add(FakeSource(definition))
        harness.script("google_maps", results=_businesses(ANIMALS[:12], "google_maps"), delay=0.05)

        medical, legal = await asyncio.gather(
            harness.orchestrator.run(SearchRequest(query="dentist", location="Austin, TX", count=30)),
            harness.orchestrator.run(SearchRequest(query="lawyer", location="Austin, TX", count=30)),
        )

        assert medical.category == "medical" and legal.category == "legal"
        assert len(harness.sources["yelp"].calls) == 1
        assert medical.source_stats["yelp"].skipped == 1
        assert legal.source_stats["yelp"].successes == 1
        assert harness.sources["yelp"].definition.min_results == 10

    @pytest.mark.asyncio
    async def test_limiter_backpressure_is_not_reported_as_a_call_timeout(self):
        harness = Harness(config=OrchestratorConfig(directory_timeout_seconds=0.01))
        limiter = DomainRateLimiter(
            RateLimitConfig(queue_timeout_seconds=0.05, domain_presets={}, respect_robots=False),
            timing_randomization=False,
        )
        zocdoc = harness.sources["zocdoc"].definition
        harness.add(ThrottledSource(zocdoc, limiter, "https://zocdoc.com/search"))
        harness.script("healthgrades", results=_businesses(ANIMALS[:2], "healthgrades"))
        events = RunEvents()

        held = limiter._get_domain_lock("zocdoc.com")
        await held.acquire()
        try:
            result = await harness.orchestrator.run(_request(count=2), events)
        finally:
            held.release()

        assert "waiting for rate limiter slot" in result.errors["zocdoc"]
        failed = [e async for e in events if e.type is EventType.SOURCE_FAILED]
        assert [e.data["error_type"] for e in failed] == ["QueueTimeoutError"]
        assert result.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_guessed_email_on_catch_all_domain_is_capped(self):
        verifier = _verifier(catch_all={"catchall.example"})
        harness = Harness(verifier=verifier)
        rich = dict(rating=4.8, review_count=2000, years_in_business=30)
        harness.script(
            "healthgrades",
            results=[
                BusinessCandidate(
                    name="Aardvark", source="healthgrades", email="info@catchall.example", email_guessed=True, **rich
                ),
                BusinessCandidate(name="Buffalo", source="healthgrades", email="hello@found.example", **rich),
            ],
        )
        harness.orchestrator.scorer.score = AsyncMock(wraps=harness.orchestrator.scorer.score)

        result = await harness.orchestrator.run(_request(count=2))

        inputs = {call.args[0].email: call.args[0] for call in harness.orchestrator.scorer.score.await_args_list}
        guessed = inputs["info@catchall.example"]
        assert guessed.is_catch_all and guessed.is_guessed
        assert guessed.smtp_verified is False
        assert inputs["hello@found.example"].smtp_verified is True

        records = {r.name: r for r in result.records}
        assert records["Aardvark"].score.overall <= 65
        assert records["Buffalo"].score.overall > records["Aardvark"].score.overall

    @pytest.mark.asyncio
    async def test_missing_mx_loses_verification_credit(self):
        verifier = _verifier(no_mx={"nomx.example"}, smtp=SmtpOutcome.TIMEOUT)
        harness = Harness(verifier=verifier)
        harness.script(
            "healthgrades",
            results=[
                BusinessCandidate(name="Aardvark", source="healthgrades", email="a@clinic.example"),
                BusinessCandidate(name="Buffalo", source="healthgrades", email="b@nomx.example"),
                BusinessCandidate(name="Cheetah", source="healthgrades", email="c@clinic.example"),
            ],
        )

        result = await harness.orchestrator.run(_request(count=3))

        records = {r.name: r for r in result.records}
        assert records["Aardvark"].score.breakdown["verification"] == 5
        assert records["Buffalo"].score.breakdown["verification"] == 0
        assert verifier.verify_email.await_count == 3
        assert sorted(call.args[0] for call in verifier.detect_catch_all.await_args_list) == [
            "clinic.example",
            "nomx.example",
        ]

    @pytest.mark.asyncio
    async def test_run_id_is_bound_for_the_whole_run(self, harness):
        seen = []

        class Recording(FakeSource):
            async def retrieve(self, request, limit):
                seen.append(structlog.contextvars.get_contextvars().get("run_id"))
                return await super().retrieve(request, limit)

        harness.add(Recording(harness.sources["zocdoc"].definition))
        request = _request(count=2)

        await harness.orchestrator.run(request)

        assert seen == [request.run_id]
        assert "run_id" not in structlog.contextvars.get_contextvars()
