"""
Feedback loop: user reports and bounces adjust per-business verification scores.

Every report appends an immutable row and moves ``verification_score`` by a
fixed, type-specific delta (impact x 100, clamped to 0..100). Those scores and
the bounce history are read back by the confidence scorer.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from leadquarry.emails.patterns import LearnedPattern, PatternStore
from leadquarry.observability.metrics import METRICS
from leadquarry.storage.schema import BOUNCE_TYPES
from leadquarry.storage.sqlite_manager import DEFAULT_VERIFICATION_SCORE, SQLiteManager

logger = structlog.get_logger(__name__)

FEEDBACK_IMPACTS: Dict[str, float] = {
    "email_correct": 0.15,
    "phone_correct": 0.10,
    "email_invalid": -0.25,
    "email_bounced": -0.30,
    "phone_invalid": -0.15,
    "business_closed": -0.50,
    "wrong_address": -0.20,
    "wrong_category": -0.05,
    "duplicate": -0.10,
    "spam": -0.40,
    "other": 0.0,
}


def confidence_impact(feedback_type: str) -> float:
    try:
        return FEEDBACK_IMPACTS[feedback_type]
    except KeyError:
        raise ValueError(f"Unknown feedback type: {feedback_type}") from None


class FeedbackService:
    def __init__(self, db: SQLiteManager, patterns: Optional[PatternStore] = None):
        self.db = db
        self.patterns = patterns or PatternStore(db)

    async def record_feedback(
        self,
        business_id: str,
        feedback_type: str,
        field: Optional[str] = None,
        original_value: Optional[str] = None,
        corrected_value: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append one report and return the business's updated verification record."""
        impact = confidence_impact(feedback_type)
        record = await self.db.record_feedback(
            business_id,
            feedback_type,
            impact,
            field=field,
            original_value=original_value,
            corrected_value=corrected_value,
            email_verified=True if feedback_type == "email_correct" else None,
            phone_verified=True if feedback_type == "phone_correct" else None,
            is_closed=feedback_type == "business_closed",
        )
        METRICS["feedback_events"].labels(feedback_type=feedback_type).inc()
        logger.info(
            "Feedback recorded",
            business_id=business_id,
            feedback_type=feedback_type,
            impact=impact,
            verification_score=record.get("verification_score"),
        )
        return record

    async def confirm_email(
        self, business_id: str, email: str, first_name: str = "", last_name: str = ""
    ) -> LearnedPattern:
        """A user confirmed ``email``: credit the business and teach the domain its pattern."""
        await self.record_feedback(business_id, "email_correct", field="email", original_value=email)
        return await self.patterns.record_confirmed_pattern(email, first_name, last_name)

    async def record_bounce(
        self,
        email: str,
        bounce_type: str = "hard",
        reason: Optional[str] = None,
        business_id: Optional[str] = None,
    ) -> None:
        """Append a bounce. Hard bounces tied to a business also count as ``email_bounced`` feedback."""
        if bounce_type not in BOUNCE_TYPES:
            raise ValueError(f"Unknown bounce type: {bounce_type}")
        await self.db.record_bounce(email, bounce_type, reason=reason, business_id=business_id)
        logger.info("Bounce recorded", email=email, bounce_type=bounce_type, business_id=business_id)
        if bounce_type == "hard" and business_id:
            await self.record_feedback(business_id, "email_bounced", field="email", original_value=email)

    async def get_verification_score(self, business_id: str) -> int:
        record = await self.db.get_verified_business(business_id)
        if record is None:
            return DEFAULT_VERIFICATION_SCORE
        return int(record["verification_score"])

    async def get_aggregated_stats(self, days: int = 90) -> Dict[str, Any]:
        stats = await self.db.get_feedback_stats(days)
        bounces = stats["bounces_by_type"]
        total_bounces = stats["total_bounces"]
        stats["bounce_rate"] = bounces.get("hard", 0) / total_bounces if total_bounces else 0.0
        stats["patterns"] = await self.db.get_pattern_stats()
        return stats
