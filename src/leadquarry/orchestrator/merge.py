"""
Folding raw candidates into merged business records.

Candidates match an existing record by exact or fuzzy normalized name
(rapidfuzz ``token_sort_ratio`` at ``threshold``). On a match, fields combine
with fixed per-field precedence:

* website, phone, address, years_in_business: first non-empty value wins
* email: the higher-confidence candidate wins
* rating: first non-null wins
* review_count: maximum wins
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog
from rapidfuzz import fuzz, process

from leadquarry.protocols import BusinessCandidate, MergedBusinessRecord, normalize_business_name

logger = structlog.get_logger(__name__)

DEFAULT_NAME_THRESHOLD = 90


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def record_from_candidate(candidate: BusinessCandidate, normalized: str) -> MergedBusinessRecord:
    email = _clean(candidate.email)
    return MergedBusinessRecord(
        name=candidate.name.strip(),
        normalized_name=normalized,
        website=_clean(candidate.website),
        phone=_clean(candidate.phone),
        address=_clean(candidate.address),
        rating=candidate.rating,
        review_count=candidate.review_count,
        email=email.lower() if email else None,
        email_confidence=candidate.email_confidence if email else 0.0,
        email_source=candidate.source if email else None,
        email_guessed=bool(email) and candidate.email_guessed,
        years_in_business=candidate.years_in_business,
        sources=[candidate.source],
    )


def merge_into(record: MergedBusinessRecord, candidate: BusinessCandidate) -> None:
    """Combine ``candidate`` into ``record`` in place."""
    for attr in ("website", "phone", "address"):
        if getattr(record, attr) is None:
            setattr(record, attr, _clean(getattr(candidate, attr)))

    email = _clean(candidate.email)
    if email and (record.email is None or candidate.email_confidence > record.email_confidence):
        record.email = email.lower()
        record.email_confidence = candidate.email_confidence
        record.email_source = candidate.source
        record.email_guessed = candidate.email_guessed

    if record.rating is None:
        record.rating = candidate.rating
    if candidate.review_count is not None:
        record.review_count = max(record.review_count or 0, candidate.review_count)
    if record.years_in_business is None:
        record.years_in_business = candidate.years_in_business

    if candidate.source not in record.sources:
        record.sources.append(candidate.source)


class RecordMerger:
    """Accumulates one run's merged records."""

    def __init__(self, threshold: int = DEFAULT_NAME_THRESHOLD):
        self.threshold = threshold
        self.records: List[MergedBusinessRecord] = []
        self._by_name: Dict[str, MergedBusinessRecord] = {}
        self._email_sources: Dict[Tuple[str, str], Set[str]] = {}

    def __len__(self) -> int:
        return len(self.records)

    def find_match(self, normalized: str) -> Optional[MergedBusinessRecord]:
        record = self._by_name.get(normalized)
        if record is not None:
            return record
        if not self._by_name:
            return None
        match = process.extractOne(
            normalized,
            list(self._by_name),
            scorer=fuzz.token_sort_ratio,
            score_cutoff=self.threshold,
        )
        return self._by_name[match[0]] if match else None

    def add(self, candidate: BusinessCandidate) -> Tuple[MergedBusinessRecord, bool]:
        """Merge one candidate; returns the record and whether it was created."""
        normalized = normalize_business_name(candidate.name) or candidate.name.strip().lower()
        record = self.find_match(normalized)
        created = record is None
        if record is None:
            record = record_from_candidate(candidate, normalized)
            self.records.append(record)
            self._by_name[normalized] = record
        else:
            merge_into(record, candidate)

        email = _clean(candidate.email)
        if email:
            self._email_sources.setdefault((record.id, email.lower()), set()).add(candidate.source)
        return record, created

    def add_all(self, candidates: Iterable[BusinessCandidate]) -> int:
        """Merge a batch; returns how many new records it created."""
        created = 0
        for candidate in candidates:
            if not candidate.name or not candidate.name.strip():
                continue
            _, is_new = self.add(candidate)
            created += is_new
        return created

    def cross_references(self, record: MergedBusinessRecord) -> int:
        """Independent sources that reported the record's chosen email."""
        if record.email is None:
            return 0
        return len(self._email_sources.get((record.id, record.email), ())) or 1
