"""Tests for the SQLite store and the feedback service built on it."""

from datetime import datetime, timedelta, timezone

import pytest

from leadquarry.config import SQLiteConfig
from leadquarry.emails import FeedbackService
from leadquarry.emails.feedback import confidence_impact
from leadquarry.exceptions import DatabaseConnectionError
from leadquarry.storage import SQLiteManager


@pytest.mark.unit
class TestSQLiteManager:
    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, db):
        await db.initialize()
        assert await db.get_domain_pattern("acme.com") is None

    @pytest.mark.asyncio
    async def test_operations_require_initialize(self, temp_dir):
        manager = SQLiteManager(SQLiteConfig(db_path=temp_dir / "cold.db"))
        with pytest.raises(DatabaseConnectionError):
            await manager.get_domain_pattern("acme.com")

    @pytest.mark.asyncio
    async def test_pattern_upsert_rules(self, db):
        row = await db.upsert_domain_pattern("Acme.com", "first.last")
        assert (row["email_pattern"], row["pattern_confidence"], row["sample_count"]) == ("first.last", 0.6, 1)

        row = await db.upsert_domain_pattern("acme.com", "first.last")
        assert row["pattern_confidence"] == pytest.approx(0.65)

        row = await db.upsert_domain_pattern("acme.com", "flast")
        assert row["email_pattern"] == "flast"
        assert row["pattern_confidence"] == pytest.approx(0.65)

        row = await db.upsert_domain_pattern("acme.com", "first")
        assert row["email_pattern"] == "flast"
        assert row["pattern_confidence"] == pytest.approx(0.6)
        assert row["sample_count"] == 4

    @pytest.mark.asyncio
    async def test_pattern_confidence_has_a_ceiling(self, db):
        for _ in range(12):
            row = await db.upsert_domain_pattern("acme.com", "first")
        assert row["pattern_confidence"] == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_pattern_stats(self, db):
        await db.upsert_domain_pattern("acme.com", "first.last")
        await db.upsert_domain_pattern("beta.io", "first.last")
        await db.upsert_domain_pattern("gamma.io", "flast")

        stats = await db.get_pattern_stats()
        assert stats["domains"] == 3
        assert stats["samples"] == 3
        assert stats["by_pattern"] == {"first.last": 2, "flast": 1}

        await db.delete_domain_patterns()
        assert (await db.get_pattern_stats())["domains"] == 0

    @pytest.mark.asyncio
    async def test_verification_score_is_clamped(self, db):
        row = await db.record_feedback("biz-1", "business_closed", -0.5, is_closed=True)
        assert row["verification_score"] == 0
        assert row["is_closed"] == 1

        row = await db.record_feedback("biz-1", "spam", -0.4)
        assert row["verification_score"] == 0
        assert row["negative_reports"] == 2
        assert row["total_reports"] == 2

        for _ in range(8):
            row = await db.record_feedback("biz-1", "email_correct", 0.15, email_verified=True)
        assert row["verification_score"] == 100
        assert row["positive_reports"] == 8
        assert row["is_closed"] == 1

    @pytest.mark.asyncio
    async def test_feedback_rows_are_kept(self, db):
        await db.record_feedback("biz-1", "wrong_address", -0.2, field="address", corrected_value="2 Elm St")
        await db.record_feedback("biz-1", "phone_correct", 0.1, phone_verified=True)

        rows = await db.get_feedback_for_business("biz-1")
        assert [r["feedback_type"] for r in rows] == ["phone_correct", "wrong_address"]
        assert rows[1]["corrected_value"] == "2 Elm St"

    @pytest.mark.asyncio
    async def test_bounces(self, db):
        await db.record_bounce("Bob@Acme.com", "hard", reason="550 no such user")
        await db.record_bounce("sue@acme.com", "soft")
        await db.record_bounce("old@acme.com", "hard", bounced_at=datetime.now(timezone.utc) - timedelta(days=200))

        assert await db.has_hard_bounce("bob@acme.com") is True
        assert await db.has_hard_bounce("sue@acme.com") is False

        stats = await db.get_domain_bounce_stats("acme.com")
        assert stats == {"total": 2, "hard": 1, "bounce_rate": 0.5}

    @pytest.mark.asyncio
    async def test_unknown_bounce_type(self, db):
        with pytest.raises(ValueError):
            await db.record_bounce("bob@acme.com", "bogus")


@pytest.mark.unit
class TestFeedbackService:
    def test_impacts(self):
        assert confidence_impact("email_correct") == 0.15
        assert confidence_impact("business_closed") == -0.5
        with pytest.raises(ValueError):
            confidence_impact("loved_it")

    @pytest.mark.asyncio
    async def test_record_feedback_moves_score(self, db):
        service = FeedbackService(db)

        assert await service.get_verification_score("biz-1") == 50
        await service.record_feedback("biz-1", "email_correct")
        assert await service.get_verification_score("biz-1") == 65
        await service.record_feedback("biz-1", "wrong_address", field="address")
        assert await service.get_verification_score("biz-1") == 45

    @pytest.mark.asyncio
    async def test_confirm_email_teaches_the_domain(self, db):
        service = FeedbackService(db)

        learned = await service.confirm_email("biz-1", "john.smith@acme.com", "John", "Smith")

        assert learned.pattern == "first.last"
        assert (await db.get_domain_pattern("acme.com"))["sample_count"] == 1
        assert (await db.get_verified_business("biz-1"))["email_verified"] == 1

    @pytest.mark.asyncio
    async def test_hard_bounce_counts_against_the_business(self, db):
        service = FeedbackService(db)

        await service.record_bounce("bob@acme.com", "hard", business_id="biz-1")
        await service.record_bounce("sue@acme.com", "soft", business_id="biz-1")

        assert await service.get_verification_score("biz-1") == 20
        assert await db.has_hard_bounce("bob@acme.com")

    @pytest.mark.asyncio
    async def test_bounce_without_business_only_logs_the_bounce(self, db):
        service = FeedbackService(db)
        await service.record_bounce("bob@acme.com")

        assert await db.get_verified_business("biz-1") is None
        assert await db.has_hard_bounce("bob@acme.com")

    @pytest.mark.asyncio
    async def test_aggregated_stats(self, db):
        service = FeedbackService(db)
        await service.record_feedback("biz-1", "email_correct")
        await service.record_feedback("biz-2", "spam")
        await service.record_bounce("bob@acme.com", "hard")
        await service.record_bounce("sue@acme.com", "complaint")
        await service.confirm_email("biz-3", "jsmith@acme.com", "John", "Smith")

        stats = await service.get_aggregated_stats()

        assert stats["feedback_by_type"] == {"email_correct": 2, "spam": 1}
        assert stats["total_feedback"] == 3
        assert stats["businesses_tracked"] == 3
        assert stats["bounce_rate"] == 0.5
        assert stats["patterns"]["by_pattern"] == {"flast": 1}
