"""
B2B targeting filters applied to merged records.

Employee counts are rough estimates from review volume and years in business,
combined by confidence weight. Records with no estimate are kept.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from leadquarry.protocols import MergedBusinessRecord, SearchRequest

# (max reviews, estimated employees)
REVIEW_TIERS = [(50, 3), (150, 8), (500, 25), (2000, 75), (10000, 150)]
REVIEW_TIER_CEILING = 300
ESTIMATE_CONFIDENCE_CAP = 0.7


@dataclass
class CompanySizeEstimate:
    employee_count: Optional[int]
    confidence: float
    source: str


def estimate_from_reviews(review_count: Optional[int]) -> CompanySizeEstimate:
    if not review_count or review_count < 1:
        return CompanySizeEstimate(None, 0.0, "review_heuristic")
    confidence = 0.3 if review_count < 10 else 0.4 if review_count > 5000 else 0.5
    for max_reviews, employees in REVIEW_TIERS:
        if review_count <= max_reviews:
            return CompanySizeEstimate(employees, confidence, "review_heuristic")
    return CompanySizeEstimate(REVIEW_TIER_CEILING, confidence, "review_heuristic")


def estimate_from_years(years: Optional[float]) -> CompanySizeEstimate:
    if not years or years < 1:
        return CompanySizeEstimate(None, 0.0, "years_heuristic")
    if years < 2:
        return CompanySizeEstimate(3, 0.2, "years_heuristic")
    if years < 5:
        return CompanySizeEstimate(8, 0.25, "years_heuristic")
    if years < 10:
        return CompanySizeEstimate(15, 0.3, "years_heuristic")
    return CompanySizeEstimate(25, 0.25, "years_heuristic")


def estimate_company_size(record: MergedBusinessRecord) -> CompanySizeEstimate:
    estimates = [
        e
        for e in (estimate_from_reviews(record.review_count), estimate_from_years(record.years_in_business))
        if e.employee_count is not None and e.confidence > 0
    ]
    if not estimates:
        return CompanySizeEstimate(None, 0.0, "combined")
    total_weight = sum(e.confidence for e in estimates)
    weighted = sum(e.employee_count * e.confidence for e in estimates)  # type: ignore[operator]
    return CompanySizeEstimate(
        employee_count=round(weighted / total_weight),
        confidence=min(total_weight / len(estimates), ESTIMATE_CONFIDENCE_CAP),
        source=", ".join(e.source for e in estimates),
    )


def matches_company_size(estimate: CompanySizeEstimate, minimum: Optional[int], maximum: Optional[int]) -> bool:
    if estimate.employee_count is None:
        return True
    if minimum is not None and estimate.employee_count < minimum:
        return False
    if maximum is not None and estimate.employee_count > maximum:
        return False
    return True


def matches_state(record: MergedBusinessRecord, state: Optional[str]) -> bool:
    """Address mentions ``state`` as a word. Records without an address are kept."""
    if not state or not record.address:
        return True
    return re.search(rf"\b{re.escape(state.strip())}\b", record.address, re.IGNORECASE) is not None


def apply_b2b_filters(records: List[MergedBusinessRecord], request: SearchRequest) -> List[MergedBusinessRecord]:
    if request.company_size_min is None and request.company_size_max is None and not request.state:
        return records
    kept = []
    for record in records:
        if not matches_state(record, request.state):
            continue
        estimate = estimate_company_size(record)
        if not matches_company_size(estimate, request.company_size_min, request.company_size_max):
            continue
        kept.append(record)
    return kept
