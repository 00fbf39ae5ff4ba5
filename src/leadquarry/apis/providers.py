"""
Clients for documented business-search APIs.

Every client draws its key from the shared ``KeyPool`` for each HTTP call and
maps the provider payload into ``BusinessCandidate``s. A client whose keys are
exhausted returns no results instead of queueing; HTTP 429 surfaces as
``RateLimitError`` so callers move on to another source.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
import structlog

from leadquarry.exceptions import ProviderError, QuotaExhaustedError, RateLimitError
from leadquarry.protocols import BusinessCandidate

from .key_pool import KeyPool

logger = structlog.get_logger(__name__)


class ProviderClient:
    """Base class: key handling and JSON transport for one provider."""

    provider: str = ""
    source_id: str = ""
    priority: int = 100
    max_per_call: int = 50

    def __init__(self, pool: KeyPool, session: aiohttp.ClientSession, timeout: float = 10.0):
        self.pool = pool
        self.session = session
        self.timeout = timeout

    def is_available(self) -> bool:
        return self.pool.check_quota(self.provider).available

    def _take_key(self) -> str:
        key = self.pool.acquire_key(self.provider)
        if key is None:
            raise QuotaExhaustedError(self.provider)
        return key

    async def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        async with self.session.get(
            url,
            params=params,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status == 429:
                retry_after = response.headers.get("Retry-After")
                raise RateLimitError(
                    f"{self.provider} returned 429 Too Many Requests",
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                    provider=self.provider,
                )
            if response.status >= 400:
                raise ProviderError(self.provider, response.status, await response.text())
            return await response.json(content_type=None)

    async def search(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        raise NotImplementedError


class GooglePlacesClient(ProviderClient):
    provider = "google_places"
    source_id = "google_places_api"
    priority = 1
    max_per_call = 20

    SEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
    DETAILS_URL = "https://maps.googleapis.com/maps/api/place/details/json"
    DETAIL_FIELDS = "name,formatted_address,formatted_phone_number,website,rating,user_ratings_total"

    def __init__(self, *args: Any, detail_delay: float = 0.1, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.detail_delay = detail_delay

    async def search(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        if not self.is_available():
            return []

        search_query = f"{query} in {location}" if location else query
        data = await self._get_json(self.SEARCH_URL, {"query": search_query, "key": self._take_key()})
        status = data.get("status")
        if status == "OVER_QUERY_LIMIT":
            raise RateLimitError("Google Places quota exceeded", provider=self.provider)
        if status not in ("OK", "ZERO_RESULTS"):
            raise ProviderError(self.provider, 400, str(status))

        results: List[BusinessCandidate] = []
        places = data.get("results", [])[:limit]
        for i, place in enumerate(places):
            key = self.pool.acquire_key(self.provider)
            if key is None:
                logger.info("Google Places quota reached during details fetch", fetched=len(results))
                break
            try:
                details = await self._get_json(
                    self.DETAILS_URL,
                    {"place_id": place.get("place_id", ""), "fields": self.DETAIL_FIELDS, "key": key},
                )
            except (aiohttp.ClientError, asyncio.TimeoutError, ProviderError) as e:
                logger.debug("Skipping place details", place_id=place.get("place_id"), error=str(e))
                continue

            detail = details.get("result")
            if details.get("status") == "OK" and detail:
                results.append(
                    BusinessCandidate(
                        name=detail.get("name") or place.get("name", ""),
                        website=detail.get("website"),
                        phone=detail.get("formatted_phone_number"),
                        address=detail.get("formatted_address"),
                        rating=detail.get("rating"),
                        review_count=detail.get("user_ratings_total"),
                        source=self.source_id,
                    )
                )
            if self.detail_delay and i < len(places) - 1:
                await asyncio.sleep(self.detail_delay)
        return results


class YelpFusionClient(ProviderClient):
    provider = "yelp_fusion"
    source_id = "yelp_fusion_api"
    priority = 2

    SEARCH_URL = "https://api.yelp.com/v3/businesses/search"

    async def search(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        if not self.is_available():
            return []
        data = await self._get_json(
            self.SEARCH_URL,
            {"term": query, "location": location or "United States", "limit": min(limit, self.max_per_call)},
            {"Authorization": f"Bearer {self._take_key()}", "Accept": "application/json"},
        )

        results = []
        for business in data.get("businesses", []):
            loc = business.get("location") or {}
            address = ", ".join(loc.get("display_address") or []) or ", ".join(
                part for part in (loc.get("address1"), loc.get("city"), loc.get("state"), loc.get("zip_code")) if part
            )
            results.append(
                BusinessCandidate(
                    name=business.get("name", ""),
                    phone=business.get("display_phone") or business.get("phone") or None,
                    address=address or None,
                    rating=business.get("rating"),
                    review_count=business.get("review_count"),
                    source=self.source_id,
                )
            )
        return results


class FoursquareClient(ProviderClient):
    provider = "foursquare"
    source_id = "foursquare_api"
    priority = 3

    SEARCH_URL = "https://api.foursquare.com/v3/places/search"

    async def search(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        if not self.is_available():
            return []
        data = await self._get_json(
            self.SEARCH_URL,
            {"query": query, "near": location or "United States", "limit": min(limit, self.max_per_call)},
            {"Authorization": self._take_key(), "Accept": "application/json"},
        )

        results = []
        for place in data.get("results", []):
            loc = place.get("location") or {}
            address = loc.get("formatted_address") or ", ".join(
                part for part in (loc.get("address"), loc.get("locality"), loc.get("region"), loc.get("postcode")) if part
            )
            rating = place.get("rating")
            results.append(
                BusinessCandidate(
                    name=place.get("name", ""),
                    website=place.get("website"),
                    phone=place.get("tel"),
                    address=address or None,
                    # Foursquare rates on a 0-10 scale
                    rating=rating / 2 if rating else None,
                    review_count=(place.get("stats") or {}).get("total_ratings"),
                    source=self.source_id,
                )
            )
        return results


class HereClient(ProviderClient):
    provider = "here"
    source_id = "here_api"
    priority = 4
    max_per_call = 100

    GEOCODE_URL = "https://geocode.search.hereapi.com/v1/geocode"
    DISCOVER_URL = "https://discover.search.hereapi.com/v1/discover"

    async def search(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        if not self.is_available():
            return []
        geo = await self._get_json(self.GEOCODE_URL, {"q": location or "United States", "apiKey": self._take_key()})
        items = geo.get("items") or []
        position = items[0].get("position") if items else None
        if not position:
            logger.info("HERE could not geocode location", location=location)
            return []

        data = await self._get_json(
            self.DISCOVER_URL,
            {
                "q": query,
                "at": f"{position['lat']},{position['lng']}",
                "limit": min(limit, self.max_per_call),
                "apiKey": self._take_key(),
            },
        )

        results = []
        for place in data.get("items", []):
            contacts = (place.get("contacts") or [{}])[0]
            phones = contacts.get("phone") or []
            sites = contacts.get("www") or []
            results.append(
                BusinessCandidate(
                    name=place.get("title", ""),
                    website=sites[0].get("value") if sites else None,
                    phone=phones[0].get("value") if phones else None,
                    address=(place.get("address") or {}).get("label"),
                    source=self.source_id,
                )
            )
        return results


class TomTomClient(ProviderClient):
    provider = "tomtom"
    source_id = "tomtom_api"
    priority = 5
    max_per_call = 100

    SEARCH_URL = "https://api.tomtom.com/search/2/poiSearch/{query}.json"
    # Business facilities
    CATEGORY_SET = "7315"

    async def search(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        if not self.is_available():
            return []
        search_query = f"{query} {location}" if location else query
        data = await self._get_json(
            self.SEARCH_URL.format(query=quote(search_query, safe="")),
            {"key": self._take_key(), "limit": min(limit, self.max_per_call), "categorySet": self.CATEGORY_SET},
        )

        results = []
        for result in data.get("results", []):
            poi = result.get("poi") or {}
            if not poi.get("name"):
                continue
            results.append(
                BusinessCandidate(
                    name=poi["name"],
                    website=poi.get("url"),
                    phone=poi.get("phone"),
                    address=(result.get("address") or {}).get("freeformAddress"),
                    source=self.source_id,
                )
            )
        return results


@dataclass
class AddressValidation:
    valid: bool
    formatted: Optional[str]
    confidence: float


class AddressValidator(ProviderClient):
    """OpenCage geocoding used to confirm an address exists."""

    provider = "opencage"
    source_id = "opencage_api"

    URL = "https://api.opencagedata.com/geocode/v1/json"
    MIN_CONFIDENCE = 5

    async def validate(self, address: str) -> AddressValidation:
        invalid = AddressValidation(valid=False, formatted=None, confidence=0.0)
        if not address:
            return invalid
        key = self.pool.acquire_key(self.provider)
        if key is None:
            return invalid
        try:
            data = await self._get_json(self.URL, {"q": address, "key": key, "limit": 1, "no_annotations": 1})
        except (aiohttp.ClientError, asyncio.TimeoutError, ProviderError, RateLimitError) as e:
            logger.debug("Address validation failed", error=str(e))
            return invalid

        results = data.get("results") or []
        if not results:
            return invalid
        confidence = results[0].get("confidence") or 0
        return AddressValidation(
            valid=confidence >= self.MIN_CONFIDENCE,
            formatted=results[0].get("formatted"),
            confidence=confidence / 10,
        )

    async def search(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        return []


SEARCH_CLIENTS = (GooglePlacesClient, YelpFusionClient, FoursquareClient, HereClient, TomTomClient)


# ============ Usage tracking ============

# Estimated costs per operation (USD, milliseconds)
OPERATION_COSTS = {
    "scraping_per_result": 0.002,
    "scraping_time_ms": 2000,
    "api_time_ms": 300,
}


@dataclass
class SourceUsageRecord:
    source: str
    results_found: int
    duration_ms: float
    is_api: bool
    timestamp: float = field(default_factory=time.time)


class ApiUsageTracker:
    """Per-session record of which sources produced results and what APIs saved."""

    def __init__(self) -> None:
        self._records: List[SourceUsageRecord] = []

    def record(self, source: str, results_found: int, duration_ms: float, is_api: bool) -> None:
        self._records.append(SourceUsageRecord(source, results_found, duration_ms, is_api))

    def get_cost_savings(self) -> Dict[str, Any]:
        api_usage = [r for r in self._records if r.is_api]
        api_results = sum(r.results_found for r in api_usage)
        api_time = sum(r.duration_ms for r in api_usage)
        return {
            "api_calls": len(api_usage),
            "scraping_avoided": api_results,
            "estimated_time_saved_ms": api_results * OPERATION_COSTS["scraping_time_ms"] - api_time,
            "estimated_cost_saved_usd": round(max(0.0, api_results * OPERATION_COSTS["scraping_per_result"]), 4),
        }

    def get_summary(self) -> Dict[str, Any]:
        by_source: Dict[str, Dict[str, Any]] = {}
        for record in self._records:
            entry = by_source.setdefault(record.source, {"results": 0, "is_api": record.is_api})
            entry["results"] += record.results_found
        total = sum(s["results"] for s in by_source.values())
        api_results = sum(s["results"] for s in by_source.values() if s["is_api"])
        return {
            "sources": by_source,
            "total_results": total,
            "api_results": api_results,
            "scraped_results": total - api_results,
            "api_percentage": (api_results / total) * 100 if total else 0.0,
        }

    def reset(self) -> None:
        self._records.clear()


# ============ Unified search ============


def _dedupe_key(candidate: BusinessCandidate) -> str:
    return f"{candidate.name.lower()}:{candidate.phone or candidate.address or ''}"


class ApiSearchService:
    """Fans a query out over every configured provider that still has quota."""

    def __init__(
        self,
        pool: KeyPool,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        max_parallel: int = 3,
        tracker: Optional[ApiUsageTracker] = None,
    ):
        self.pool = pool
        self.timeout = timeout
        self.max_parallel = max_parallel
        self.tracker = tracker or ApiUsageTracker()
        self._session = session
        self._owns_session = session is None
        self._clients: Optional[List[ProviderClient]] = None
        self._validator: Optional[AddressValidator] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    @property
    def clients(self) -> List[ProviderClient]:
        if self._clients is None:
            session = self._get_session()
            self._clients = [
                cls(self.pool, session, timeout=self.timeout)
                for cls in SEARCH_CLIENTS
                if self.pool.keys_for(cls.provider)
            ]
        return self._clients

    def client_for(self, provider: str) -> Optional[ProviderClient]:
        return next((c for c in self.clients if c.provider == provider), None)

    def available_clients(self) -> List[ProviderClient]:
        return sorted((c for c in self.clients if c.is_available()), key=lambda c: c.priority)

    @property
    def address_validator(self) -> AddressValidator:
        if self._validator is None:
            self._validator = AddressValidator(self.pool, self._get_session(), timeout=self.timeout)
        return self._validator

    async def _timed_search(
        self, client: ProviderClient, query: str, location: Optional[str], limit: int
    ) -> List[BusinessCandidate]:
        await self.pool.hydrate(client.provider)
        started = time.perf_counter()
        results = await client.search(query, location, limit)
        self.tracker.record(client.source_id, len(results), (time.perf_counter() - started) * 1000, True)
        return results

    async def search(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        clients = self.available_clients()
        if not clients:
            logger.info("No APIs available (not configured or quota exhausted)")
            return []

        parallel, remaining = clients[: self.max_parallel], clients[self.max_parallel :]
        per_client = math.ceil(limit / len(parallel))
        outcomes = await asyncio.gather(
            *(self._timed_search(c, query, location, per_client) for c in parallel),
            return_exceptions=True,
        )

        results: List[BusinessCandidate] = []
        seen = set()

        def _add(batch: List[BusinessCandidate]) -> None:
            for candidate in batch:
                key = _dedupe_key(candidate)
                if key not in seen:
                    seen.add(key)
                    results.append(candidate)

        for client, outcome in zip(parallel, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning("API search failed", provider=client.provider, error=str(outcome))
                continue
            _add(outcome)

        for client in remaining:
            if len(results) >= limit:
                break
            if not client.is_available():
                continue
            try:
                _add(await self._timed_search(client, query, location, limit - len(results)))
            except (aiohttp.ClientError, asyncio.TimeoutError, ProviderError, RateLimitError, QuotaExhaustedError) as e:
                logger.warning("API search failed", provider=client.provider, error=str(e))

        logger.info("API search complete", results=len(results), providers=len(clients))
        return results[:limit]

    async def close(self) -> None:
        await self.pool.flush()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._clients = None
        self._validator = None
