"""
Query categories and the prioritized source lists behind them.

Lower priority numbers run first. Sources sharing a priority form one tier and
are issued together; a source with ``min_results`` is skipped once the run
already holds that many results.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote_plus

import structlog

from leadquarry.emails.scoring import source_reliability
from leadquarry.protocols import DataSource, SourceType

logger = structlog.get_logger(__name__)

GENERAL_LOCAL = "general_local"
GENERAL_ONLINE = "general_online"
ONLINE_BRAND = "online_brand"


@dataclass(frozen=True)
class SourceProfile:
    type: SourceType
    domain: str
    rendered: bool
    seconds: int
    description: str


SOURCE_PROFILES: Dict[str, SourceProfile] = {
    "google_maps": SourceProfile(SourceType.DIRECTORY, "maps.google.com", True, 15, "Google Maps listings"),
    "google_serp": SourceProfile(SourceType.SEARCH_ENGINE, "google.com", True, 10, "Google local results"),
    "bing_places": SourceProfile(SourceType.DIRECTORY, "bing.com", True, 10, "Bing Places listings"),
    "yelp": SourceProfile(SourceType.DIRECTORY, "yelp.com", False, 12, "Yelp business pages"),
    "yellow_pages": SourceProfile(SourceType.DIRECTORY, "yellowpages.com", False, 10, "Yellow Pages directory"),
    "manta": SourceProfile(SourceType.DIRECTORY, "manta.com", False, 12, "Manta small business directory"),
    "bbb": SourceProfile(SourceType.DIRECTORY, "bbb.org", False, 12, "Better Business Bureau"),
    "chamber_of_commerce": SourceProfile(
        SourceType.DIRECTORY, "chamberofcommerce.com", False, 15, "Chamber of Commerce directory"
    ),
    "healthgrades": SourceProfile(SourceType.DIRECTORY, "healthgrades.com", False, 12, "Healthgrades providers"),
    "zocdoc": SourceProfile(SourceType.DIRECTORY, "zocdoc.com", True, 12, "Zocdoc providers"),
    "angi": SourceProfile(SourceType.DIRECTORY, "angi.com", True, 12, "Angi service pros"),
    "homeadvisor": SourceProfile(SourceType.DIRECTORY, "homeadvisor.com", True, 12, "HomeAdvisor pros"),
    "thumbtack": SourceProfile(SourceType.DIRECTORY, "thumbtack.com", True, 12, "Thumbtack pros"),
    "houzz": SourceProfile(SourceType.DIRECTORY, "houzz.com", False, 12, "Houzz professionals"),
    "tripadvisor": SourceProfile(SourceType.DIRECTORY, "tripadvisor.com", False, 12, "Tripadvisor listings"),
    "avvo": SourceProfile(SourceType.DIRECTORY, "avvo.com", False, 10, "Avvo attorney directory"),
    "google_search": SourceProfile(SourceType.SEARCH_ENGINE, "google.com", True, 8, "Google web search"),
    "instagram": SourceProfile(SourceType.SOCIAL, "instagram.com", True, 10, "Instagram business profiles"),
}

API_SOURCE_SECONDS = 3

# Checked in order; the first category with a matching keyword wins.
CATEGORY_PATTERNS: "OrderedDict[str, Tuple[str, ...]]" = OrderedDict(
    [
        (
            "medical",
            (
                "doctor", "dentist", "physician", "surgeon", "dermatologist", "orthodontist",
                "pediatrician", "therapist", "psychiatrist", "cardiologist", "optometrist",
                "chiropractor", "physical therapy", "medical", "clinic", "healthcare", "dental",
                "hospital", "urgent care", "pharmacy", "veterinarian", "vet clinic", "psychologist",
                "counselor", "ophthalmologist", "podiatrist", "neurologist", "oncologist",
            ),
        ),
        (
            "legal",
            (
                "lawyer", "attorney", "law firm", "law office", "legal", "paralegal",
                "divorce", "personal injury", "immigration law", "bankruptcy",
            ),
        ),
        (
            "home_services",
            (
                "plumber", "electrician", "contractor", "roofer", "painter", "landscaper",
                "hvac", "handyman", "remodeling", "renovation", "flooring", "carpentry",
                "pest control", "cleaning", "mover", "garage door", "window", "siding",
                "deck", "fence", "drywall", "insulation", "solar", "pool", "septic",
                "plumbing", "electrical", "roofing", "painting", "lawn care", "tree service",
                "locksmith", "appliance repair", "foundation", "waterproofing", "gutter",
            ),
        ),
        (
            "restaurant_food",
            (
                "restaurant", "cafe", "coffee", "bakery", "pizza", "sushi", "italian",
                "mexican", "chinese", "thai", "indian", "bar", "pub", "brewery", "winery",
                "catering", "food truck", "deli", "bistro", "steakhouse", "seafood",
                "brunch", "breakfast", "lunch", "dinner", "takeout", "delivery",
            ),
        ),
        (
            "retail",
            (
                "store", "shop", "boutique", "outlet", "mall", "retail", "clothing",
                "jewelry", "furniture", "electronics", "hardware", "grocery", "supermarket",
                "pet store", "toy store", "bookstore", "florist", "gift shop", "antique",
            ),
        ),
        (
            "professional_services",
            (
                "accountant", "cpa", "financial advisor", "insurance",
                "real estate", "realtor", "architect", "engineer", "consultant", "marketing",
                "advertising", "pr agency", "tax", "notary", "mortgage",
                "investment", "bank", "credit union", "wealth management",
            ),
        ),
        (
            "beauty_wellness",
            (
                "salon", "spa", "barber", "nail", "massage", "yoga", "gym", "fitness",
                "pilates", "crossfit", "personal trainer", "tattoo", "piercing",
                "waxing", "facial", "skincare", "aesthetician", "medspa", "wellness",
                "acupuncture", "meditation", "hair stylist", "beauty", "cosmetic",
            ),
        ),
        (
            "automotive",
            (
                "mechanic", "auto repair", "car dealer", "dealership", "auto body",
                "tire", "oil change", "car wash", "detailing", "towing", "transmission",
                "brake", "muffler", "alignment", "auto parts", "motorcycle", "rv",
            ),
        ),
        (
            ONLINE_BRAND,
            (
                "dtc", "brand", "subscription", "startup", "maker", "artisan", "ecommerce",
                "e-commerce", "online store", "digital", "saas", "app", "software",
                "tech company", "marketplace",
            ),
        ),
        (
            "entertainment",
            (
                "movie", "theater", "theatre", "cinema", "bowling", "arcade", "amusement",
                "entertainment", "nightclub", "club", "casino", "concert", "venue",
                "escape room", "laser tag", "mini golf", "trampoline", "zoo", "aquarium",
                "museum", "gallery", "park", "recreation",
            ),
        ),
        (
            "education",
            (
                "school", "academy", "tutoring", "tutor", "learning", "daycare", "preschool",
                "kindergarten", "education", "training", "driving school", "music lessons",
                "dance school", "art class", "martial arts", "karate", "swimming lessons",
            ),
        ),
        (
            "pet_services",
            (
                "pet", "dog", "cat", "grooming", "pet groomer", "dog walker", "pet sitter",
                "kennel", "boarding", "pet store", "pet shop", "veterinary", "vet",
                "animal hospital", "pet daycare", "dog training", "pet supplies",
            ),
        ),
    ]
)

# (source, priority, min_results, parallel)
_Entry = Tuple[str, int, Optional[int], bool]

_LOCAL_CORE: List[_Entry] = [
    ("google_maps", 1, None, True),
    ("google_serp", 1, None, True),
    ("bing_places", 1, None, True),
]

SOURCE_PRIORITIES: Dict[str, List[_Entry]] = {
    "medical": _LOCAL_CORE
    + [
        ("healthgrades", 1, None, True),
        ("zocdoc", 1, None, True),
        ("yelp", 2, 10, True),
        ("manta", 2, 15, True),
        ("bbb", 3, 20, False),
    ],
    "legal": _LOCAL_CORE
    + [
        ("avvo", 1, None, True),
        ("yelp", 1, None, True),
        ("bbb", 1, None, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 15, True),
        ("chamber_of_commerce", 3, 25, False),
    ],
    "home_services": _LOCAL_CORE
    + [
        ("angi", 1, None, True),
        ("homeadvisor", 1, None, True),
        ("thumbtack", 1, None, True),
        ("yelp", 1, None, True),
        ("houzz", 2, 10, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 15, True),
        ("bbb", 2, 15, True),
        ("chamber_of_commerce", 3, 25, False),
    ],
    "restaurant_food": _LOCAL_CORE
    + [
        ("yelp", 1, None, True),
        ("tripadvisor", 1, None, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 20, True),
    ],
    "retail": _LOCAL_CORE
    + [
        ("yelp", 1, None, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 15, True),
        ("chamber_of_commerce", 3, 25, False),
    ],
    "professional_services": _LOCAL_CORE
    + [
        ("yelp", 1, None, True),
        ("bbb", 1, None, True),
        ("avvo", 1, None, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 15, True),
        ("chamber_of_commerce", 2, 20, True),
    ],
    "beauty_wellness": _LOCAL_CORE
    + [
        ("yelp", 1, None, True),
        ("thumbtack", 1, None, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 20, True),
    ],
    "automotive": _LOCAL_CORE
    + [
        ("yelp", 1, None, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 15, True),
        ("bbb", 2, 15, True),
    ],
    ONLINE_BRAND: [
        ("google_search", 1, None, True),
        ("instagram", 1, None, True),
    ],
    "entertainment": _LOCAL_CORE
    + [
        ("yelp", 1, None, True),
        ("tripadvisor", 1, None, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 20, True),
    ],
    "education": _LOCAL_CORE
    + [
        ("yelp", 1, None, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 15, True),
        ("bbb", 2, 20, True),
    ],
    "pet_services": _LOCAL_CORE
    + [
        ("yelp", 1, None, True),
        ("thumbtack", 2, 10, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 20, True),
        ("bbb", 3, 25, False),
    ],
    GENERAL_LOCAL: _LOCAL_CORE
    + [
        ("yelp", 1, None, True),
        ("thumbtack", 2, 10, True),
        ("yellow_pages", 2, 15, True),
        ("manta", 2, 15, True),
        ("bbb", 2, 15, True),
        ("chamber_of_commerce", 3, 25, False),
    ],
    GENERAL_ONLINE: [
        ("google_search", 1, None, True),
        ("instagram", 2, 15, False),
    ],
}

CATEGORY_DESCRIPTIONS: Dict[str, str] = {
    "medical": "Medical & Healthcare",
    "legal": "Legal Services",
    "home_services": "Home Services",
    "restaurant_food": "Restaurants & Food",
    "retail": "Retail & Shopping",
    "professional_services": "Professional Services",
    "beauty_wellness": "Beauty & Wellness",
    "automotive": "Automotive",
    ONLINE_BRAND: "Online Brands",
    GENERAL_LOCAL: "Local Businesses",
    GENERAL_ONLINE: "Online Businesses",
    "entertainment": "Entertainment & Recreation",
    "education": "Education & Tutoring",
    "pet_services": "Pet Services",
}

CATEGORIES = tuple(CATEGORY_DESCRIPTIONS)


def detect_query_category(query: str, has_location: bool) -> str:
    """
    Keyword classification of a query.

    Without a location, online-brand keywords are checked before the local
    categories; with one, they are checked last. Unmatched queries fall back to
    ``general_local`` or ``general_online`` by location.
    """
    text = query.lower()
    order = [c for c in CATEGORY_PATTERNS if c != ONLINE_BRAND]
    if has_location:
        order.append(ONLINE_BRAND)
    else:
        order.insert(0, ONLINE_BRAND)

    for category in order:
        if any(keyword in text for keyword in CATEGORY_PATTERNS[category]):
            return category
    return GENERAL_LOCAL if has_location else GENERAL_ONLINE


def map_industry_category(industry: Optional[str]) -> Optional[str]:
    """An explicit industry selection, when it names a known category."""
    if not industry:
        return None
    key = industry.strip().lower().replace(" ", "_").replace("-", "_")
    return key if key in SOURCE_PRIORITIES else None


def resolve_category(query: str, has_location: bool, industry: Optional[str] = None) -> str:
    override = map_industry_category(industry)
    if override is not None:
        logger.debug("Using selected industry category", category=override)
        return override
    category = detect_query_category(query, has_location)
    logger.debug("Detected query category", category=category)
    return category


def make_source(source_id: str, priority: int, min_results: Optional[int] = None, parallel: bool = True) -> DataSource:
    profile = SOURCE_PROFILES[source_id]
    return DataSource(
        id=source_id,
        type=profile.type,
        priority=priority,
        reliability=source_reliability(source_id),
        min_results=min_results,
        domain=profile.domain,
        description=profile.description,
        parallel=parallel,
    )


def get_prioritized_sources(category: str) -> List[DataSource]:
    entries = SOURCE_PRIORITIES.get(category, SOURCE_PRIORITIES[GENERAL_LOCAL])
    return [make_source(*entry) for entry in entries]


def api_source_id(provider: str) -> str:
    return f"{provider}_api"


def with_api_sources(sources: List[DataSource], providers: Iterable[str], prefer_apis: bool = True) -> List[DataSource]:
    """
    Add one API-backed source per provider.

    Preferred APIs form tier 0 ahead of every scraped source; otherwise they
    form a final fallback tier.
    """
    providers = list(providers)
    if not providers:
        return list(sources)
    tier = 0 if prefer_apis else max((s.priority for s in sources), default=0) + 1
    api_sources = [
        DataSource(
            id=api_source_id(provider),
            type=SourceType.API,
            priority=tier,
            reliability=source_reliability(api_source_id(provider)),
            description=f"{provider} API",
        )
        for provider in providers
    ]
    return api_sources + list(sources) if prefer_apis else list(sources) + api_sources


def group_sources_by_priority(sources: Iterable[DataSource]) -> "OrderedDict[int, List[DataSource]]":
    groups: Dict[int, List[DataSource]] = {}
    for source in sources:
        groups.setdefault(source.priority, []).append(source)
    return OrderedDict(sorted(groups.items()))


def filter_sources_by_result_count(sources: Iterable[DataSource], current_count: int) -> List[DataSource]:
    """Drop sources whose ``min_results`` the run has already reached."""
    return [s for s in sources if not s.min_results or current_count < s.min_results]


def get_category_description(category: str) -> str:
    return CATEGORY_DESCRIPTIONS.get(category, category.replace("_", " ").title())


def _source_seconds(source: DataSource) -> int:
    if source.type is SourceType.API:
        return API_SOURCE_SECONDS
    profile = SOURCE_PROFILES.get(source.id)
    return profile.seconds if profile else 12


def estimate_scrape_time(sources: Iterable[DataSource], target_count: int = 25) -> int:
    """Seconds: parallel sources in a tier cost their slowest member, sequential ones add up."""
    total = 0
    for group in group_sources_by_priority(sources).values():
        parallel = [_source_seconds(s) for s in group if s.parallel]
        if parallel:
            total += max(parallel)
        total += sum(_source_seconds(s) for s in group if not s.parallel)
    return round(total * min(2.0, target_count / 25))


SEARCH_URLS: Dict[str, str] = {
    "google_maps": "https://www.google.com/maps/search/{terms}",
    "google_serp": "https://www.google.com/search?tbm=lcl&q={terms}",
    "bing_places": "https://www.bing.com/maps?q={terms}",
    "yelp": "https://www.yelp.com/search?find_desc={query}&find_loc={location}",
    "yellow_pages": "https://www.yellowpages.com/search?search_terms={query}&geo_location_terms={location}",
    "manta": "https://www.manta.com/search?search={query}&search_location={location}",
    "bbb": "https://www.bbb.org/search?find_text={query}&find_loc={location}",
    "chamber_of_commerce": "https://www.chamberofcommerce.com/search?what={query}&where={location}",
    "healthgrades": "https://www.healthgrades.com/usearch?what={query}&where={location}",
    "zocdoc": "https://www.zocdoc.com/search?search_query={query}&address={location}",
    "angi": "https://www.angi.com/search?query={query}&location={location}",
    "homeadvisor": "https://www.homeadvisor.com/search?q={query}&zip={location}",
    "thumbtack": "https://www.thumbtack.com/search?query={query}&location={location}",
    "houzz": "https://www.houzz.com/professionals/search?q={query}&loc={location}",
    "tripadvisor": "https://www.tripadvisor.com/Search?q={terms}",
    "avvo": "https://www.avvo.com/search/lawyer_search?q={query}&loc={location}",
    "google_search": "https://www.google.com/search?q={terms}",
    "instagram": "https://www.instagram.com/explore/search/keyword/?q={query}",
}


def build_search_url(source_id: str, query: str, location: Optional[str] = None) -> str:
    terms = f"{query} {location}" if location else query
    return SEARCH_URLS[source_id].format(
        query=quote_plus(query),
        location=quote_plus(location or ""),
        terms=quote_plus(terms),
    )
