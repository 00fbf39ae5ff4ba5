"""
Core data structures and contracts for the discovery engine.

A ``SearchRequest`` starts one orchestration run. Sources turn it into
``BusinessCandidate``s, the orchestrator folds candidates into
``MergedBusinessRecord``s and attaches a ``ConfidenceScore`` to each email.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from leadquarry.exceptions import InvalidCountError, InvalidLocationError, InvalidQueryError

MAX_RESULT_COUNT = 500

# ============================================================================
# Enums
# ============================================================================


class SourceType(Enum):
    """How a source is reached."""

    API = "api"
    DIRECTORY = "directory"
    SEARCH_ENGINE = "search_engine"
    SOCIAL = "social"


class RunStatus(Enum):
    COMPLETED = "completed"
    DEGRADED = "degraded"
    FAILED = "failed"


class ConfidenceLevel(Enum):
    VERY_HIGH = "very_high"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very_low"


class BlockKind(Enum):
    NONE = "none"
    CAPTCHA = "captcha"
    RATE_LIMIT = "rate_limit"
    ACCESS_DENIED = "access_denied"
    BOT_DETECTION = "bot_detection"


# ============================================================================
# Request and sources
# ============================================================================


@dataclass(frozen=True)
class SearchRequest:
    """One discovery run. Validated on construction and immutable afterwards."""

    query: str
    location: Optional[str] = None
    count: int = 25
    priority: str = "normal"
    industry: Optional[str] = None
    company_size_min: Optional[int] = None
    company_size_max: Optional[int] = None
    state: Optional[str] = None
    run_id: str = field(default_factory=lambda: uuid4().hex)

    def __post_init__(self) -> None:
        query = (self.query or "").strip()
        if not 2 <= len(query) <= 200:
            raise InvalidQueryError(self.query or "")
        object.__setattr__(self, "query", query)

        location = (self.location or "").strip() or None
        if location is not None and not 2 <= len(location) <= 200:
            raise InvalidLocationError(location)
        object.__setattr__(self, "location", location)

        if not 1 <= self.count <= MAX_RESULT_COUNT:
            raise InvalidCountError(self.count, MAX_RESULT_COUNT)

    @property
    def has_location(self) -> bool:
        return self.location is not None


@dataclass(frozen=True)
class DataSource:
    """A place businesses can be found, with its scheduling hints."""

    id: str
    type: SourceType
    priority: int
    reliability: float = 0.5
    min_results: Optional[int] = None
    domain: Optional[str] = None
    description: str = ""
    parallel: bool = True


# ============================================================================
# Results
# ============================================================================


@dataclass
class BusinessCandidate:
    """Raw fields one source call produced for one business."""

    name: str
    source: str
    website: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    email: Optional[str] = None
    email_confidence: float = 0.5
    email_guessed: bool = False  # generated from a pattern rather than found
    years_in_business: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


_NAME_NOISE = re.compile(r"[^a-z0-9 ]+")
_LEGAL_SUFFIXES = re.compile(r"\b(inc|llc|ltd|co|corp|corporation|company|pllc|pc|dds|md)\b")


def normalize_business_name(name: str) -> str:
    lowered = name.lower().replace("&", " and ")
    lowered = _NAME_NOISE.sub(" ", lowered)
    lowered = _LEGAL_SUFFIXES.sub(" ", lowered)
    return " ".join(lowered.split())


@dataclass
class ConfidenceScore:
    overall: int
    breakdown: Dict[str, int]
    confidence_level: ConfidenceLevel
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall,
            "breakdown": dict(self.breakdown),
            "confidence_level": self.confidence_level.value,
            "recommendations": list(self.recommendations),
        }


@dataclass
class MergedBusinessRecord:
    """The union of every candidate believed to be the same business within a run."""

    name: str
    normalized_name: str
    website: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    email: Optional[str] = None
    email_confidence: float = 0.0
    email_source: Optional[str] = None
    email_guessed: bool = False
    years_in_business: Optional[int] = None
    sources: List[str] = field(default_factory=list)
    score: Optional[ConfidenceScore] = None
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def best_confidence(self) -> int:
        return self.score.overall if self.score else -1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "website": self.website,
            "phone": self.phone,
            "address": self.address,
            "rating": self.rating,
            "review_count": self.review_count,
            "email": self.email,
            "email_source": self.email_source,
            "sources": list(self.sources),
            "confidence": self.score.to_dict() if self.score else None,
        }


@dataclass
class SourceStats:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    results: int = 0
    total_latency: float = 0.0
    last_error: Optional[str] = None

    @property
    def avg_latency(self) -> float:
        calls = self.successes + self.failures
        return self.total_latency / calls if calls else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "skipped": self.skipped,
            "results": self.results,
            "avg_latency": round(self.avg_latency, 3),
            "last_error": self.last_error,
        }


@dataclass
class RunResult:
    request: SearchRequest
    category: str
    status: RunStatus
    records: List[MergedBusinessRecord] = field(default_factory=list)
    source_stats: Dict[str, SourceStats] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def succeeded_sources(self) -> List[str]:
        return [s for s, stats in self.source_stats.items() if stats.successes]

    @property
    def failed_sources(self) -> List[str]:
        return [s for s, stats in self.source_stats.items() if stats.failures and not stats.successes]


# ============================================================================
# Collaborator contracts
# ============================================================================


class PageParser(Protocol):
    """Turns a fetched page (HTML or rendered text) into raw candidates."""

    def __call__(self, content: str, source: str) -> List[BusinessCandidate]: ...
