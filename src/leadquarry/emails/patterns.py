"""
Email pattern detection, learning and generation.

The pure functions (``detect_pattern``, ``learn_pattern``, ``generate_email``)
hold no state. ``PatternStore`` owns the per-domain cache and persists confirmed
samples to the ``domain_patterns`` table through ``SQLiteManager``; it keeps
working from its cache when the database is unavailable.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import structlog

from leadquarry.exceptions import DatabaseError
from leadquarry.storage.sqlite_manager import (
    PATTERN_CONFIDENCE_CEILING,
    PATTERN_CONFIDENCE_FLOOR,
    PATTERN_CONFIDENCE_STEP,
    PATTERN_INITIAL_CONFIDENCE,
    PATTERN_STABLE_SAMPLES,
    SQLiteManager,
)

logger = structlog.get_logger(__name__)

UNKNOWN = "unknown"
DEFAULT_PATTERN = "first.last"

# Name templates in detection order. Earlier templates win when a local-part
# matches several, e.g. single-letter names.
NAME_TEMPLATES: Tuple[str, ...] = (
    "first.last",
    "firstlast",
    "first_last",
    "flast",
    "firstl",
    "f.last",
    "first",
    "last",
    "lastfirst",
    "last.first",
    "lastf",
    "fl",
)

GENERIC_EMAIL_PATTERNS: Tuple[str, ...] = (
    "info",
    "contact",
    "hello",
    "sales",
    "support",
    "admin",
    "mail",
    "office",
    "enquiries",
    "team",
)

INDUSTRY_PATTERN_PREFERENCES: Dict[str, List[str]] = {
    "law": ["first.last", "firstl", "f.last"],
    "accounting": ["first.last", "firstl", "f.last"],
    "consulting": ["first.last", "flast", "firstlast"],
    "finance": ["first.last", "flast", "f.last"],
    "technology": ["first", "flast", "first.last"],
    "software": ["first", "flast", "firstlast"],
    "startup": ["first", "firstlast", "flast"],
    "healthcare": ["first.last", "flast", "firstl"],
    "medical": ["first.last", "flast", "f.last"],
    "dental": ["first.last", "first", "flast"],
    "construction": ["first", "firstlast", "first.last"],
    "plumbing": ["first", "firstlast", "info"],
    "electrical": ["first", "firstlast", "info"],
    "restaurant": ["info", "contact", "first"],
    "retail": ["info", "first", "first.last"],
    "hotel": ["first.last", "flast", "first"],
    "default": ["first.last", "flast", "firstlast", "first"],
}

SIZE_PATTERN_PREFERENCES: Dict[str, List[str]] = {
    "enterprise": ["first.last", "flast", "f.last"],
    "medium": ["first.last", "flast", "firstlast"],
    "small": ["first", "firstlast", "first.last"],
    "micro": ["first", "info", "contact"],
}

VARIATION_ORDER: Tuple[str, ...] = (
    "first.last",
    "firstlast",
    "flast",
    "first",
    "f.last",
    "firstl",
    "last.first",
    "lastfirst",
    "lastf",
    "first_last",
    "fl",
    "last",
)

CATCH_ALL_CONFIDENCE_CEILING = 0.65
PATTERN_MATCH_BOOST = 0.10
PATTERN_CACHE_TTL = 30 * 24 * 3600.0


class EmailSample(NamedTuple):
    email: str
    first_name: str
    last_name: str


def _local_part(email: str) -> str:
    return email.split("@", 1)[0].strip().lower()


def _render(template: str, first: str, last: str) -> str:
    f, l = first[:1], last[:1]
    return {
        "first.last": f"{first}.{last}",
        "firstlast": f"{first}{last}",
        "first_last": f"{first}_{last}",
        "flast": f"{f}{last}",
        "firstl": f"{first}{l}",
        "f.last": f"{f}.{last}",
        "first": first,
        "last": last,
        "lastfirst": f"{last}{first}",
        "last.first": f"{last}.{first}",
        "lastf": f"{last}{f}",
        "fl": f"{f}{l}",
    }[template]


def detect_pattern(email: str, first_name: str, last_name: str) -> str:
    """Classify the local-part of ``email`` against the known templates."""
    local = _local_part(email)
    first = first_name.strip().lower()
    last = last_name.strip().lower()

    if first and last:
        for template in NAME_TEMPLATES:
            if local == _render(template, first, last):
                return template
    if local in GENERIC_EMAIL_PATTERNS:
        return local
    return UNKNOWN


def learn_pattern(samples: Iterable[Sequence[str]]) -> Tuple[str, int]:
    """
    Majority template over ``(email, first_name, last_name)`` samples.

    Returns the template and how many samples voted for it. Ties keep the
    template seen first. With no classifiable samples the default
    ``first.last`` is returned with zero votes.
    """
    counts: Counter = Counter()
    for email, first_name, last_name in samples:
        if not first_name or not last_name:
            continue
        pattern = detect_pattern(email, first_name, last_name)
        if pattern != UNKNOWN:
            counts[pattern] += 1

    if not counts:
        return DEFAULT_PATTERN, 0
    pattern, votes = counts.most_common(1)[0]
    return pattern, votes


def generate_email(pattern: str, first_name: str, last_name: str, domain: str) -> str:
    """The inverse of ``detect_pattern``. Unknown templates fall back to ``first.last``."""
    domain = domain.strip().lower()
    if pattern in GENERIC_EMAIL_PATTERNS:
        return f"{pattern}@{domain}"

    first = "".join(first_name.split()).lower()
    last = "".join(last_name.split()).lower()
    if not first or not last:
        raise ValueError("first and last name are required for name-based patterns")
    template = pattern if pattern in NAME_TEMPLATES else DEFAULT_PATTERN
    return f"{_render(template, first, last)}@{domain}"


def generate_generic_patterns(domain: str) -> List[str]:
    return [f"{prefix}@{domain.lower()}" for prefix in GENERIC_EMAIL_PATTERNS]


def adjust_confidence_for_catch_all(confidence: float, is_catch_all: bool, is_guessed: bool) -> float:
    """Cap guessed emails on catch-all domains. Confirmed emails are untouched."""
    if is_catch_all and is_guessed:
        return min(confidence, CATCH_ALL_CONFIDENCE_CEILING)
    return confidence


def get_industry_patterns(industry: str) -> List[str]:
    normalized = industry.strip().lower()
    if normalized in INDUSTRY_PATTERN_PREFERENCES:
        return INDUSTRY_PATTERN_PREFERENCES[normalized]
    for key, patterns in INDUSTRY_PATTERN_PREFERENCES.items():
        if key == "default":
            continue
        if key in normalized or normalized in key:
            return patterns
    return INDUSTRY_PATTERN_PREFERENCES["default"]


def size_bucket(employee_count: int) -> str:
    if employee_count >= 500:
        return "enterprise"
    if employee_count >= 50:
        return "medium"
    if employee_count >= 10:
        return "small"
    return "micro"


def get_size_patterns(employee_count: int) -> List[str]:
    return SIZE_PATTERN_PREFERENCES[size_bucket(employee_count)]


def find_similar_domains(domain: str, known_domains: Iterable[str], limit: int = 5) -> List[str]:
    """Domains sharing TLD, name length and prefix with ``domain``, best first."""
    parts = domain.lower().split(".")
    tld, name = parts[-1], parts[0]

    scored: List[Tuple[float, str]] = []
    for other in known_domains:
        if other.lower() == domain.lower():
            continue
        other_parts = other.lower().split(".")
        other_tld, other_name = other_parts[-1], other_parts[0]

        score = 0.0
        if tld == other_tld:
            score += 1
        if abs(len(name) - len(other_name)) <= 3:
            score += 1
        for a, b in zip(name, other_name):
            if a != b:
                break
            score += 0.1

        if score > 1:
            scored.append((score, other))

    scored.sort(key=lambda item: item[0], reverse=True)
    return [d for _, d in scored[:limit]]


@dataclass
class EmailVariation:
    email: str
    pattern: str
    confidence: float


@dataclass
class LearnedPattern:
    pattern: str
    confidence: float
    sample_count: int = 1
    examples: List[str] = field(default_factory=list)
    cached_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern,
            "confidence": round(self.confidence, 3),
            "sample_count": self.sample_count,
            "examples": list(self.examples),
        }


class PatternStore:
    """Per-domain learned patterns: an in-memory cache in front of ``domain_patterns``."""

    def __init__(
        self,
        db: Optional[SQLiteManager] = None,
        ttl: float = PATTERN_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.ttl = ttl
        self._clock = clock
        self._cache: Dict[str, LearnedPattern] = {}

    def _fresh(self, domain: str) -> Optional[LearnedPattern]:
        entry = self._cache.get(domain)
        if entry is None:
            return None
        if self._clock() - entry.cached_at >= self.ttl:
            del self._cache[domain]
            return None
        return entry

    def learn(self, domain: str, samples: Sequence[Sequence[str]]) -> str:
        """Learn from a batch of samples and cache the result. A fresh cache entry wins."""
        domain = domain.lower()
        cached = self._fresh(domain)
        if cached is not None:
            return cached.pattern

        pattern, votes = learn_pattern(samples)
        self._cache[domain] = LearnedPattern(
            pattern=pattern,
            confidence=votes / len(samples) if samples and votes else 0.0,
            sample_count=max(votes, 1),
            examples=[sample[0] for sample in samples],
            cached_at=self._clock(),
        )
        return pattern

    def _apply_locally(self, domain: str, pattern: str, email: str) -> LearnedPattern:
        entry = self._fresh(domain)
        if entry is None:
            entry = LearnedPattern(pattern, PATTERN_INITIAL_CONFIDENCE, 1, [email], self._clock())
            self._cache[domain] = entry
            return entry

        if entry.pattern == pattern:
            entry.confidence = min(PATTERN_CONFIDENCE_CEILING, entry.confidence + PATTERN_CONFIDENCE_STEP)
        elif entry.sample_count < PATTERN_STABLE_SAMPLES:
            entry.pattern = pattern
        else:
            entry.confidence = max(PATTERN_CONFIDENCE_FLOOR, entry.confidence - PATTERN_CONFIDENCE_STEP)
        entry.sample_count += 1
        if email not in entry.examples:
            entry.examples.append(email)
        entry.cached_at = self._clock()
        return entry

    async def record_confirmed_pattern(
        self,
        email: str,
        first_name: str,
        last_name: str,
        domain: Optional[str] = None,
    ) -> LearnedPattern:
        """
        Record one confirmed address.

        The database applies the upsert rules and its row becomes the cached
        entry. Without a database, or when it fails, the same rules run against
        the cache alone.
        """
        email = email.strip().lower()
        domain = (domain or email.rsplit("@", 1)[-1]).lower()
        pattern = detect_pattern(email, first_name, last_name)
        if pattern == UNKNOWN:
            logger.debug("Confirmed email matches no known pattern", domain=domain)
            return LearnedPattern(UNKNOWN, 0.0, 0)

        if self.db is not None:
            try:
                row = await self.db.upsert_domain_pattern(domain, pattern)
            except DatabaseError as e:
                logger.warning("Pattern persistence failed, using cache only", domain=domain, error=str(e))
            else:
                previous = self._cache.get(domain)
                examples = list(previous.examples) if previous else []
                if email not in examples:
                    examples.append(email)
                entry = LearnedPattern(
                    pattern=row["email_pattern"],
                    confidence=float(row["pattern_confidence"]),
                    sample_count=int(row["sample_count"]),
                    examples=examples,
                    cached_at=self._clock(),
                )
                self._cache[domain] = entry
                return entry

        return self._apply_locally(domain, pattern, email)

    async def get_learned_pattern(self, domain: str) -> Optional[LearnedPattern]:
        """Cache first, then the database. None when nothing is known or the database is down."""
        domain = domain.lower()
        cached = self._fresh(domain)
        if cached is not None:
            return cached
        if self.db is None:
            return None

        try:
            row = await self.db.get_domain_pattern(domain)
        except DatabaseError as e:
            logger.warning("Pattern lookup failed", domain=domain, error=str(e))
            return None
        if row is None:
            return None

        entry = LearnedPattern(
            pattern=row["email_pattern"],
            confidence=float(row["pattern_confidence"]),
            sample_count=int(row["sample_count"]),
            cached_at=self._clock(),
        )
        self._cache[domain] = entry
        return entry

    def get_pattern_match_boost(self, domain: str) -> float:
        entry = self._fresh(domain.lower())
        if entry is not None and entry.sample_count >= 2:
            return PATTERN_MATCH_BOOST
        return 0.0

    async def get_smart_email_variations(
        self,
        first_name: str,
        last_name: str,
        domain: str,
        industry: Optional[str] = None,
        employee_count: Optional[int] = None,
        limit: int = 10,
    ) -> List[EmailVariation]:
        """Candidate addresses ranked by learned pattern, then industry and size tendencies."""
        learned = await self.get_learned_pattern(domain)
        industry_patterns = get_industry_patterns(industry) if industry else INDUSTRY_PATTERN_PREFERENCES["default"]
        size_patterns = get_size_patterns(employee_count) if employee_count else SIZE_PATTERN_PREFERENCES["small"]

        scores: Dict[str, float] = {}
        if learned is not None:
            scores[learned.pattern] = 10.0
        for index, pattern in enumerate(industry_patterns):
            scores[pattern] = scores.get(pattern, 0.0) + (5 - index)
        for index, pattern in enumerate(size_patterns):
            scores[pattern] = scores.get(pattern, 0.0) + (3 - index * 0.5)

        ordered = sorted(scores, key=lambda p: scores[p], reverse=True)
        ordered.extend(p for p in VARIATION_ORDER if p not in scores)

        variations: List[EmailVariation] = []
        seen = set()
        for index, pattern in enumerate(ordered):
            email = generate_email(pattern, first_name, last_name, domain)
            if email in seen:
                continue
            seen.add(email)
            confidence = max(0.1, 0.8 - index * 0.1)
            if learned is not None and learned.pattern == pattern:
                confidence = min(1.0, confidence + learned.confidence * 0.3)
            variations.append(EmailVariation(email, pattern, round(confidence, 3)))

        return variations[:limit]

    async def get_pattern_from_similar_companies(
        self, domain: str, industry: str, known_domains: Iterable[str]
    ) -> Tuple[str, float, str]:
        """Borrow a confident pattern from a look-alike domain, else the industry favourite."""
        for similar in find_similar_domains(domain, known_domains):
            learned = await self.get_learned_pattern(similar)
            if learned is not None and learned.confidence >= 0.7:
                return learned.pattern, learned.confidence * 0.8, similar
        return get_industry_patterns(industry)[0], 0.5, f"industry:{industry}"

    async def get_pattern_stats(self) -> Dict[str, Any]:
        now = self._clock()
        distribution: Counter = Counter(
            entry.pattern for entry in self._cache.values() if now - entry.cached_at < self.ttl
        )
        total = sum(distribution.values())
        stats: Dict[str, Any] = {
            "cached_domains": total,
            "pattern_distribution": dict(distribution),
            "top_patterns": [
                {"pattern": p, "count": n, "percentage": round(n / total * 100, 1)}
                for p, n in distribution.most_common(5)
            ],
        }
        if self.db is not None:
            try:
                stats["persisted"] = await self.db.get_pattern_stats()
            except DatabaseError as e:
                logger.warning("Pattern stats unavailable", error=str(e))
        return stats

    def reset(self) -> None:
        self._cache.clear()
