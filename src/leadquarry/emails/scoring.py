"""
Multi-signal confidence scoring for discovered emails.

The overall score is the clamped sum of six named terms:

    base + pattern + reputation + verification + business + penalties

Signals that come from storage (learned pattern, bounce history, user reports)
fall back to neutral values when the database is unavailable, so a storage
outage lowers precision but never fails a run.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from leadquarry.emails.patterns import (
    CATCH_ALL_CONFIDENCE_CEILING,
    GENERIC_EMAIL_PATTERNS,
    UNKNOWN,
    PatternStore,
    detect_pattern,
)
from leadquarry.exceptions import DatabaseError
from leadquarry.observability.metrics import METRICS
from leadquarry.protocols import ConfidenceLevel, ConfidenceScore
from leadquarry.storage.sqlite_manager import SQLiteManager

logger = structlog.get_logger(__name__)

WEIGHT_BASE = 20
WEIGHT_PATTERN = 15
WEIGHT_REPUTATION = 20
WEIGHT_VERIFICATION = 25
WEIGHT_BUSINESS = 10

HARD_BOUNCE_PENALTY = 25
DISPOSABLE_PENALTY = 20
NEGATIVE_FEEDBACK_PENALTY = 15

NEUTRAL_PATTERN_MATCH = 0.5
PATTERN_MISMATCH = 0.3
DEFAULT_SOURCE_RELIABILITY = 0.5

SOURCE_RELIABILITY: Dict[str, float] = {
    "google_places_api": 0.95,
    "yelp_fusion_api": 0.90,
    "foursquare_api": 0.85,
    "here_api": 0.80,
    "tomtom_api": 0.75,
    "bbb": 0.90,
    "healthgrades": 0.85,
    "zocdoc": 0.85,
    "google_maps": 0.75,
    "yelp": 0.70,
    "yellow_pages": 0.65,
    "tripadvisor": 0.70,
    "angi": 0.70,
    "homeadvisor": 0.70,
    "thumbtack": 0.65,
    "manta": 0.60,
    "instagram": 0.55,
    "hunter": 0.80,
    "whoisxml": 0.75,
    "website_scrape": 0.60,
    "pattern_guess": 0.40,
}

DISPOSABLE_DOMAINS = frozenset(
    {
        "tempmail.com",
        "temp-mail.org",
        "guerrillamail.com",
        "mailinator.com",
        "maildrop.cc",
        "throwaway.email",
        "yopmail.com",
        "sharklasers.com",
        "10minutemail.com",
        "fakeinbox.com",
        "tempinbox.com",
        "trashmail.com",
        "getnada.com",
        "mohmal.com",
        "emailfake.com",
        "burnermail.io",
    }
)

# Shape checks used when the person's name is not known.
_PATTERN_SHAPES = {
    "first.last": re.compile(r"^[a-z]+\.[a-z]+$"),
    "last.first": re.compile(r"^[a-z]+\.[a-z]+$"),
    "f.last": re.compile(r"^[a-z]\.[a-z]{2,}$"),
    "first_last": re.compile(r"^[a-z]+_[a-z]+$"),
    "firstlast": re.compile(r"^[a-z]{4,}$"),
    "lastfirst": re.compile(r"^[a-z]{4,}$"),
    "flast": re.compile(r"^[a-z]{3,}$"),
    "firstl": re.compile(r"^[a-z]{3,}$"),
    "lastf": re.compile(r"^[a-z]{3,}$"),
    "first": re.compile(r"^[a-z]{2,}$"),
    "last": re.compile(r"^[a-z]{2,}$"),
    "fl": re.compile(r"^[a-z]{2}$"),
}


def is_disposable_domain(domain: str) -> bool:
    return domain.lower() in DISPOSABLE_DOMAINS


def source_reliability(source: str) -> float:
    return SOURCE_RELIABILITY.get(source, DEFAULT_SOURCE_RELIABILITY)


def matches_pattern(
    email: str, pattern: str, first_name: Optional[str] = None, last_name: Optional[str] = None
) -> bool:
    local = email.split("@", 1)[0].lower()
    if pattern in GENERIC_EMAIL_PATTERNS:
        return local == pattern
    if first_name and last_name:
        return detect_pattern(email, first_name, last_name) == pattern
    shape = _PATTERN_SHAPES.get(pattern)
    return bool(shape.match(local)) if shape else True


def confidence_level(score: float) -> ConfidenceLevel:
    if score >= 85:
        return ConfidenceLevel.VERY_HIGH
    if score >= 70:
        return ConfidenceLevel.HIGH
    if score >= 50:
        return ConfidenceLevel.MEDIUM
    if score >= 30:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.VERY_LOW


def apply_hard_bounce_penalty(score: int) -> int:
    return max(0, score - HARD_BOUNCE_PENALTY)


def _clamp(value: float) -> int:
    return int(max(0, min(100, round(value))))


@dataclass
class EmailScoreInput:
    email: str
    source: str
    business_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    cross_reference_count: int = 1
    years_in_business: Optional[float] = None
    review_count: Optional[int] = None
    rating: Optional[float] = None
    mx_valid: Optional[bool] = None
    smtp_verified: Optional[bool] = None
    is_catch_all: bool = False
    is_guessed: bool = False


@dataclass
class ScoringFactors:
    pattern_match: float = NEUTRAL_PATTERN_MATCH
    domain_reputation: float = 1.0
    source_reliability: float = DEFAULT_SOURCE_RELIABILITY
    cross_reference_count: int = 1
    mx_valid: bool = True
    smtp_verified: bool = False
    user_verified: bool = False
    bounce_history: bool = False
    disposable: bool = False
    negative_feedback: bool = False
    years_in_business: Optional[float] = None
    review_count: Optional[int] = None
    rating: Optional[float] = None
    degraded: List[str] = field(default_factory=list)


def calculate_breakdown(factors: ScoringFactors) -> Dict[str, int]:
    pattern = WEIGHT_PATTERN * factors.pattern_match
    reputation = WEIGHT_REPUTATION * (0.5 * factors.domain_reputation + 0.5 * factors.source_reliability)

    verification = 0.0
    if factors.smtp_verified:
        verification += WEIGHT_VERIFICATION * 0.6
    if factors.mx_valid:
        verification += WEIGHT_VERIFICATION * 0.2
    if factors.user_verified:
        verification += WEIGHT_VERIFICATION * 0.3
    verification += min(WEIGHT_VERIFICATION * 0.2, max(0, factors.cross_reference_count - 1) * 3)

    business = 0.0
    if factors.years_in_business is not None:
        business += min(WEIGHT_BUSINESS * 0.4, factors.years_in_business * 0.5)
    if factors.review_count is not None:
        business += min(WEIGHT_BUSINESS * 0.3, math.log10(factors.review_count + 1) * 2)
    if factors.rating is not None and factors.rating >= 4.0:
        business += WEIGHT_BUSINESS * 0.3

    penalties = 0
    if factors.bounce_history:
        penalties -= HARD_BOUNCE_PENALTY
    if factors.disposable:
        penalties -= DISPOSABLE_PENALTY
    if factors.negative_feedback:
        penalties -= NEGATIVE_FEEDBACK_PENALTY

    return {
        "base": WEIGHT_BASE,
        "pattern": round(pattern),
        "reputation": round(reputation),
        "verification": round(verification),
        "business": round(business),
        "penalties": penalties,
    }


def generate_recommendations(factors: ScoringFactors, score: int) -> List[str]:
    recommendations: List[str] = []
    if score >= 85:
        recommendations.append("Email is highly likely to be valid and deliverable")
    elif score >= 70:
        recommendations.append("Good confidence - suitable for outreach")
    if not factors.smtp_verified and score < 80:
        recommendations.append("Consider verifying via SMTP for higher confidence")
    if factors.bounce_history:
        recommendations.append("Warning: This email has bounced previously")
    if factors.disposable:
        recommendations.append("Warning: Disposable email domain detected")
    if factors.negative_feedback:
        recommendations.append("Note: Recent negative feedback on this business")
    if factors.cross_reference_count > 2:
        recommendations.append(f"Verified by {factors.cross_reference_count} independent sources")
    if factors.user_verified:
        recommendations.append("Email confirmed by user feedback")
    if score < 50:
        recommendations.append("Low confidence - verify before sending important emails")
    return recommendations


def score_factors(factors: ScoringFactors, cap: Optional[int] = None) -> ConfidenceScore:
    breakdown = calculate_breakdown(factors)
    overall = _clamp(sum(breakdown.values()))
    if cap is not None:
        overall = min(overall, cap)
    return ConfidenceScore(
        overall=overall,
        breakdown=breakdown,
        confidence_level=confidence_level(overall),
        recommendations=generate_recommendations(factors, overall),
    )


def explain_score(score: ConfidenceScore) -> str:
    b = score.breakdown
    lines = [
        f"Overall Confidence: {score.overall}/100 ({score.confidence_level.value.replace('_', ' ')})",
        "",
        "Score Breakdown:",
        f"  Base Score: +{b['base']}",
        f"  Pattern Match: +{b['pattern']}",
        f"  Reputation: +{b['reputation']}",
        f"  Verification: +{b['verification']}",
        f"  Business Signals: +{b['business']}",
    ]
    if b["penalties"]:
        lines.append(f"  Penalties: {b['penalties']}")
    if score.recommendations:
        lines.append("")
        lines.append("Recommendations:")
        lines.extend(f"  - {rec}" for rec in score.recommendations)
    return "\n".join(lines)


class ConfidenceScorer:
    """Gathers stored signals for an email and fuses them into a ``ConfidenceScore``."""

    def __init__(self, db: Optional[SQLiteManager] = None, patterns: Optional[PatternStore] = None):
        self.db = db
        self.patterns = patterns or PatternStore(db)

    async def gather_factors(self, item: EmailScoreInput) -> ScoringFactors:
        email = item.email.strip().lower()
        domain = email.rsplit("@", 1)[-1] if "@" in email else ""

        factors = ScoringFactors(
            source_reliability=source_reliability(item.source),
            cross_reference_count=max(1, item.cross_reference_count),
            mx_valid=True if item.mx_valid is None else item.mx_valid,
            smtp_verified=bool(item.smtp_verified),
            disposable=is_disposable_domain(domain),
            years_in_business=item.years_in_business,
            review_count=item.review_count,
            rating=item.rating,
        )

        if domain:
            learned = await self.patterns.get_learned_pattern(domain)
            if learned is not None and learned.pattern != UNKNOWN:
                if matches_pattern(email, learned.pattern, item.first_name, item.last_name):
                    factors.pattern_match = learned.confidence
                else:
                    factors.pattern_match = PATTERN_MISMATCH

        if self.db is None:
            return factors

        try:
            if domain:
                stats = await self.db.get_domain_bounce_stats(domain)
                factors.domain_reputation = max(0.0, 1 - stats["bounce_rate"] * 2)
            factors.bounce_history = await self.db.has_hard_bounce(email)
        except DatabaseError as e:
            factors.degraded.append("bounces")
            logger.warning("Bounce history unavailable, scoring with neutral values", email=email, error=str(e))

        if item.business_id:
            try:
                business = await self.db.get_verified_business(item.business_id)
            except DatabaseError as e:
                factors.degraded.append("business")
                logger.warning("Business feedback unavailable", business_id=item.business_id, error=str(e))
            else:
                if business is not None:
                    factors.user_verified = bool(business["email_verified"])
                    factors.negative_feedback = business["negative_reports"] > business["positive_reports"]

        return factors

    async def score(self, item: EmailScoreInput) -> ConfidenceScore:
        factors = await self.gather_factors(item)
        cap = None
        if item.is_catch_all and item.is_guessed:
            cap = int(CATCH_ALL_CONFIDENCE_CEILING * 100)
        result = score_factors(factors, cap)
        METRICS["confidence_score"].observe(result.overall)
        return result
