"""Tests for email pattern learning, confidence scoring and MX/SMTP verification."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import dns.resolver
import pytest

from leadquarry.config import SQLiteConfig
from leadquarry.emails import (
    ConfidenceScorer,
    EmailScoreInput,
    EmailVerifier,
    PatternStore,
    SmtpOutcome,
    adjust_confidence_for_catch_all,
    apply_hard_bounce_penalty,
    detect_pattern,
    explain_score,
    find_similar_domains,
    generate_email,
    generate_generic_patterns,
    learn_pattern,
)
from leadquarry.emails.patterns import get_industry_patterns, size_bucket
from leadquarry.emails.scoring import ScoringFactors, confidence_level, score_factors
from leadquarry.protocols import ConfidenceLevel
from leadquarry.storage import SQLiteManager


def _resolver(*records, error=None) -> MagicMock:
    resolver = MagicMock()
    if error is not None:
        resolver.resolve = AsyncMock(side_effect=error)
    else:
        answers = [SimpleNamespace(exchange=host, preference=pref) for host, pref in records]
        resolver.resolve = AsyncMock(return_value=answers)
    return resolver


class ScriptedProbe:
    def __init__(self, *outcomes: SmtpOutcome):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, email: str, host: str) -> SmtpOutcome:
        self.calls.append((email, host))
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


# ============================================================================
# Patterns
# ============================================================================


@pytest.mark.unit
class TestPatternDetection:
    @pytest.mark.parametrize(
        "email,expected",
        [
            ("john.smith@acme.com", "first.last"),
            ("johnsmith@acme.com", "firstlast"),
            ("jsmith@acme.com", "flast"),
            ("j.smith@acme.com", "f.last"),
            ("smith.john@acme.com", "last.first"),
            ("john@acme.com", "first"),
            ("info@acme.com", "info"),
            ("xyz123@acme.com", "unknown"),
        ],
    )
    def test_detect_pattern(self, email, expected):
        assert detect_pattern(email, "John", "Smith") == expected

    def test_learn_pattern_majority(self):
        samples = [
            ("john.smith@acme.com", "John", "Smith"),
            ("jane.doe@acme.com", "Jane", "Doe"),
            ("bjones@acme.com", "Bob", "Jones"),
            ("sales@acme.com", "", ""),
        ]
        assert learn_pattern(samples) == ("first.last", 2)

    def test_learn_pattern_without_samples(self):
        assert learn_pattern([]) == ("first.last", 0)

    def test_generate_email(self):
        assert generate_email("first.last", "Bob", "Jones", "Acme.com") == "bob.jones@acme.com"
        assert generate_email("flast", "Mary Ann", "Lee", "acme.com") == "mlee@acme.com"
        assert generate_email("info", "", "", "acme.com") == "info@acme.com"
        assert generate_email("bogus", "Bob", "Jones", "acme.com") == "bob.jones@acme.com"

    def test_generate_email_needs_names(self):
        with pytest.raises(ValueError):
            generate_email("first.last", "Bob", "", "acme.com")

    def test_generic_patterns(self):
        emails = generate_generic_patterns("Acme.com")
        assert emails[0] == "info@acme.com"
        assert "sales@acme.com" in emails

    def test_catch_all_caps_guesses_only(self):
        assert adjust_confidence_for_catch_all(0.9, is_catch_all=True, is_guessed=True) == 0.65
        assert adjust_confidence_for_catch_all(0.9, is_catch_all=True, is_guessed=False) == 0.9
        assert adjust_confidence_for_catch_all(0.5, is_catch_all=True, is_guessed=True) == 0.5

    def test_industry_and_size_preferences(self):
        assert get_industry_patterns("Dental Practice") == ["first.last", "first", "flast"]
        assert get_industry_patterns("aerospace")[0] == "first.last"
        assert size_bucket(3) == "micro"
        assert size_bucket(40) == "small"
        assert size_bucket(120) == "medium"
        assert size_bucket(900) == "enterprise"

    def test_find_similar_domains(self):
        known = ["acmedentistry.com", "zeta.org", "acmedental.com", "acmedent.net"]
        similar = find_similar_domains("acmedental.com", known)
        assert similar[0] == "acmedentistry.com"
        assert "zeta.org" not in similar
        assert "acmedental.com" not in similar


@pytest.mark.unit
class TestPatternStore:
    @pytest.mark.asyncio
    async def test_confirmations_follow_upsert_rules_in_memory(self):
        store = PatternStore()

        first = await store.record_confirmed_pattern("john.smith@acme.com", "John", "Smith")
        assert (first.pattern, first.confidence, first.sample_count) == ("first.last", 0.6, 1)

        second = await store.record_confirmed_pattern("jane.doe@acme.com", "Jane", "Doe")
        assert second.confidence == pytest.approx(0.65)

        # fewer than three samples: a disagreeing sample replaces the pattern
        third = await store.record_confirmed_pattern("bjones@acme.com", "Bob", "Jones")
        assert third.pattern == "flast"
        assert third.confidence == pytest.approx(0.65)

        # stable now: the pattern stays and confidence drops
        fourth = await store.record_confirmed_pattern("mary.major@acme.com", "Mary", "Major")
        assert fourth.pattern == "flast"
        assert fourth.confidence == pytest.approx(0.6)
        assert fourth.sample_count == 4

    @pytest.mark.asyncio
    async def test_unclassifiable_confirmation_is_ignored(self):
        store = PatternStore()
        result = await store.record_confirmed_pattern("zz99@acme.com", "John", "Smith")
        assert result.pattern == "unknown"
        assert await store.get_learned_pattern("acme.com") is None

    @pytest.mark.asyncio
    async def test_persisted_pattern_is_read_back(self, db):
        await PatternStore(db).record_confirmed_pattern("john.smith@acme.com", "John", "Smith")
        await PatternStore(db).record_confirmed_pattern("jane.doe@acme.com", "Jane", "Doe")

        learned = await PatternStore(db).get_learned_pattern("ACME.com")
        assert learned.pattern == "first.last"
        assert learned.confidence == pytest.approx(0.65)
        assert learned.sample_count == 2

    @pytest.mark.asyncio
    async def test_database_outage_falls_back_to_cache(self, temp_dir):
        closed = SQLiteManager(SQLiteConfig(db_path=temp_dir / "never-opened.db"))
        store = PatternStore(closed)

        learned = await store.record_confirmed_pattern("john.smith@acme.com", "John", "Smith")
        assert learned.pattern == "first.last"
        assert (await store.get_learned_pattern("acme.com")).pattern == "first.last"

    @pytest.mark.asyncio
    async def test_cache_entries_expire(self, fake_clock):
        store = PatternStore(ttl=60, clock=fake_clock)
        await store.record_confirmed_pattern("john.smith@acme.com", "John", "Smith")

        fake_clock.advance(61)
        assert await store.get_learned_pattern("acme.com") is None

    @pytest.mark.asyncio
    async def test_smart_variations_lead_with_learned_pattern(self):
        store = PatternStore()
        await store.record_confirmed_pattern("jsmith@acme.com", "John", "Smith")

        variations = await store.get_smart_email_variations("Bob", "Jones", "acme.com")

        assert variations[0].pattern == "flast"
        assert variations[0].email == "bjones@acme.com"
        assert variations[0].confidence == pytest.approx(0.98)
        assert len({v.email for v in variations}) == len(variations)
        assert len(variations) == 10

    @pytest.mark.asyncio
    async def test_match_boost_needs_two_samples(self):
        store = PatternStore()
        await store.record_confirmed_pattern("john.smith@acme.com", "John", "Smith")
        assert store.get_pattern_match_boost("acme.com") == 0.0

        await store.record_confirmed_pattern("jane.doe@acme.com", "Jane", "Doe")
        assert store.get_pattern_match_boost("acme.com") == 0.10

    @pytest.mark.asyncio
    async def test_pattern_stats(self):
        store = PatternStore()
        store.learn("acme.com", [("john.smith@acme.com", "John", "Smith")])
        store.learn("beta.io", [("jsmith@beta.io", "John", "Smith")])
        store.learn("gamma.io", [("jane.doe@gamma.io", "Jane", "Doe")])

        stats = await store.get_pattern_stats()
        assert stats["cached_domains"] == 3
        assert stats["top_patterns"][0] == {"pattern": "first.last", "count": 2, "percentage": 66.7}

        store.reset()
        assert (await store.get_pattern_stats())["cached_domains"] == 0


# ============================================================================
# Scoring
# ============================================================================


@pytest.mark.unit
class TestConfidenceScoring:
    def test_levels(self):
        assert confidence_level(90) is ConfidenceLevel.VERY_HIGH
        assert confidence_level(70) is ConfidenceLevel.HIGH
        assert confidence_level(55) is ConfidenceLevel.MEDIUM
        assert confidence_level(30) is ConfidenceLevel.LOW
        assert confidence_level(10) is ConfidenceLevel.VERY_LOW

    def test_hard_bounce_penalty_floors_at_zero(self):
        assert apply_hard_bounce_penalty(80) == 55
        assert apply_hard_bounce_penalty(10) == 0

    def test_breakdown_sums_to_overall(self):
        factors = ScoringFactors(source_reliability=0.9, smtp_verified=True, review_count=300, rating=4.6)
        score = score_factors(factors)

        assert score.overall == sum(score.breakdown.values())
        assert set(score.breakdown) == {"base", "pattern", "reputation", "verification", "business", "penalties"}

    def test_score_is_clamped(self):
        factors = ScoringFactors(
            pattern_match=0.0,
            domain_reputation=0.0,
            source_reliability=0.0,
            mx_valid=False,
            bounce_history=True,
            disposable=True,
            negative_feedback=True,
        )
        assert score_factors(factors).overall == 0

        best = ScoringFactors(
            pattern_match=1.0,
            source_reliability=1.0,
            smtp_verified=True,
            user_verified=True,
            cross_reference_count=5,
            years_in_business=20,
            review_count=5000,
            rating=5.0,
        )
        top = score_factors(best)
        assert 90 <= top.overall <= 100
        assert top.confidence_level is ConfidenceLevel.VERY_HIGH

    @pytest.mark.asyncio
    async def test_disposable_domain_is_penalised(self):
        scorer = ConfidenceScorer()
        normal = await scorer.score(EmailScoreInput(email="info@acme.com", source="bbb"))
        throwaway = await scorer.score(EmailScoreInput(email="info@mailinator.com", source="bbb"))

        assert throwaway.breakdown["penalties"] == -20
        assert normal.overall - throwaway.overall == 20

    @pytest.mark.asyncio
    async def test_guessed_email_on_catch_all_is_capped(self):
        scorer = ConfidenceScorer()
        item = EmailScoreInput(
            email="bob.jones@acme.com",
            source="google_places_api",
            smtp_verified=True,
            cross_reference_count=4,
            years_in_business=15,
            review_count=900,
            rating=4.8,
            is_catch_all=True,
            is_guessed=True,
        )
        assert (await scorer.score(item)).overall == 65

    @pytest.mark.asyncio
    async def test_learned_pattern_mismatch_lowers_score(self):
        patterns = PatternStore()
        patterns.learn("acme.com", [("john.smith@acme.com", "John", "Smith")])
        scorer = ConfidenceScorer(patterns=patterns)

        matching = await scorer.score(EmailScoreInput(email="bob.jones@acme.com", source="yelp"))
        mismatching = await scorer.score(EmailScoreInput(email="bjones@acme.com", source="yelp"))

        assert matching.breakdown["pattern"] == 15
        assert mismatching.breakdown["pattern"] == 4

    @pytest.mark.asyncio
    async def test_bounce_history_from_storage(self, db):
        scorer = ConfidenceScorer(db)
        before = await scorer.score(EmailScoreInput(email="bob@acme.com", source="yelp"))

        await db.record_bounce("bob@acme.com", "hard")
        after = await scorer.score(EmailScoreInput(email="bob@acme.com", source="yelp"))

        assert after.breakdown["penalties"] == -25
        assert after.overall <= before.overall - 25
        assert "bounced previously" in " ".join(after.recommendations)

    @pytest.mark.asyncio
    async def test_user_verified_business_scores_higher(self, db):
        scorer = ConfidenceScorer(db)
        item = EmailScoreInput(email="info@acme.com", source="yelp", business_id="biz-1")
        before = await scorer.score(item)

        await db.record_feedback("biz-1", "email_correct", 0.15, email_verified=True)
        after = await scorer.score(item)

        assert after.breakdown["verification"] > before.breakdown["verification"]

    @pytest.mark.asyncio
    async def test_storage_outage_scores_with_neutral_values(self, temp_dir):
        scorer = ConfidenceScorer(SQLiteManager(SQLiteConfig(db_path=temp_dir / "down.db")))
        factors = await scorer.gather_factors(EmailScoreInput(email="info@acme.com", source="yelp", business_id="b"))

        assert factors.degraded == ["bounces", "business"]
        assert factors.bounce_history is False

    def test_explain_score(self):
        score = score_factors(ScoringFactors(bounce_history=True))
        text = explain_score(score)

        assert text.startswith(f"Overall Confidence: {score.overall}/100")
        assert "Penalties: -25" in text
        assert "Recommendations:" in text


# ============================================================================
# Verification
# ============================================================================


@pytest.mark.unit
class TestEmailVerifier:
    @pytest.mark.asyncio
    async def test_mx_records_sorted_and_cached(self):
        resolver = _resolver(("mx2.acme.com.", 20), ("mx1.acme.com.", 10))
        verifier = EmailVerifier(resolver=resolver)

        assert await verifier.get_mx_records("Acme.com") == ["mx1.acme.com", "mx2.acme.com"]
        assert await verifier.get_mx_records("acme.com") == ["mx1.acme.com", "mx2.acme.com"]
        resolver.resolve.assert_awaited_once_with("acme.com", "MX")

    @pytest.mark.asyncio
    async def test_dns_failure_means_no_mx(self):
        verifier = EmailVerifier(resolver=_resolver(error=dns.resolver.NXDOMAIN()))

        assert await verifier.get_mx_records("nowhere.example") == []
        assert await verifier.can_receive_email("nowhere.example") is False

    @pytest.mark.asyncio
    async def test_accepted_recipient(self):
        probe = ScriptedProbe(SmtpOutcome.PASSED)
        verifier = EmailVerifier(resolver=_resolver(("mx1.acme.com.", 10)), probe=probe)

        result = await verifier.verify_email("Bob@Acme.com")

        assert result.is_valid and result.has_mx
        assert result.smtp_check is SmtpOutcome.PASSED
        assert result.confidence == 0.95
        assert probe.calls == [("bob@acme.com", "mx1.acme.com")]

    @pytest.mark.asyncio
    async def test_rejected_recipient(self):
        verifier = EmailVerifier(resolver=_resolver(("mx1.acme.com.", 10)), probe=ScriptedProbe(SmtpOutcome.FAILED))

        result = await verifier.verify_email("bob@acme.com")

        assert result.is_valid is False
        assert result.confidence == 0.2

    @pytest.mark.asyncio
    async def test_inconclusive_probe_tries_second_host(self):
        probe = ScriptedProbe(SmtpOutcome.TIMEOUT)
        resolver = _resolver(("mx1.acme.com.", 10), ("mx2.acme.com.", 20), ("mx3.acme.com.", 30))
        verifier = EmailVerifier(resolver=resolver, probe=probe)

        personal = await verifier.verify_email("bob@acme.com")
        business = await verifier.verify_email("info@acme.com")

        assert [host for _, host in probe.calls[:2]] == ["mx1.acme.com", "mx2.acme.com"]
        assert personal.is_valid and personal.confidence == 0.7
        assert business.confidence == 0.85

    @pytest.mark.asyncio
    async def test_no_mx_or_malformed(self):
        verifier = EmailVerifier(resolver=_resolver())

        no_mx = await verifier.verify_email("bob@acme.com")
        assert (no_mx.is_valid, no_mx.smtp_check, no_mx.confidence) == (False, SmtpOutcome.SKIPPED, 0.1)

        malformed = await verifier.verify_email("not-an-email")
        assert malformed.confidence == 0.0

    @pytest.mark.asyncio
    async def test_catch_all_detection_is_cached(self):
        probe = ScriptedProbe(SmtpOutcome.PASSED)
        verifier = EmailVerifier(resolver=_resolver(("mx1.acme.com.", 10)), probe=probe)

        assert await verifier.detect_catch_all("acme.com") is True
        assert await verifier.detect_catch_all("acme.com") is True
        assert len(probe.calls) == 1
        assert probe.calls[0][0].startswith("test_")

        verifier.reset()
        await verifier.detect_catch_all("acme.com")
        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_generic_pattern_fallback(self):
        verifier = EmailVerifier(resolver=_resolver(("mx1.acme.com.", 10)), handshake=lambda host: True)

        result = await verifier.find_email_by_generic_pattern("www.acme.com")

        assert result.email == "info@acme.com"
        assert result.source == "pattern-smtp-verified"
        assert result.confidence == 0.75
        assert await verifier.find_email_by_generic_pattern("abc") is None

    @pytest.mark.asyncio
    async def test_generic_pattern_without_smtp_answer(self):
        verifier = EmailVerifier(resolver=_resolver(("mx1.acme.com.", 10)), handshake=lambda host: False)

        result = await verifier.find_email_by_generic_pattern("acme.com")

        assert result.source == "pattern-mx-only"
        assert result.confidence == 0.5
