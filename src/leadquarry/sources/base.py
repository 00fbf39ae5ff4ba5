"""
One interface over three ways of reaching a source.

``ApiSource`` calls a documented API through the key pool, ``DirectorySource``
fetches a plain HTML search page behind the rate limiter and robots.txt, and
``RenderedSource`` drives a stealth browser context. Each call has two halves:
``admit`` waits for robots.txt and the rate limiter, ``retrieve`` does the
network work. The orchestrator bounds only ``retrieve`` with the per-call
timeout, so limiter backpressure surfaces as its own error.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import List, Optional

import aiohttp
import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from leadquarry.apis.providers import ApiUsageTracker, ProviderClient
from leadquarry.config.config import StealthConfig
from leadquarry.crawler.proxy import ProxyManager
from leadquarry.crawler.rate_limiter import DomainRateLimiter
from leadquarry.crawler.robots_parser import RobotsCache
from leadquarry.exceptions import (
    BrowserError,
    BrowserTimeoutError,
    ProviderError,
    RateLimitError,
    ScrapingError,
    SourceBlockedError,
)
from leadquarry.protocols import BusinessCandidate, DataSource, PageParser, SearchRequest
from leadquarry.stealth import create_stealth_context, generate_fingerprint, stealth_navigate

from .browser import BrowserManager
from .catalog import build_search_url
from .parsers import parse_listing_page

logger = structlog.get_logger(__name__)

BLOCKING_STATUSES = {403: "access_denied", 503: "bot_detection"}


class Source(ABC):
    """A ``DataSource`` bound to the machinery that can query it."""

    kind: str = ""

    def __init__(self, definition: DataSource):
        self.definition = definition

    @property
    def id(self) -> str:
        return self.definition.id

    def is_available(self) -> bool:
        return True

    async def admit(self, request: SearchRequest) -> None:
        """Wait until the source may be called."""
        return None

    @abstractmethod
    async def retrieve(self, request: SearchRequest, limit: int) -> List[BusinessCandidate]:
        """Raw candidates for ``request``, at most ``limit`` of them."""

    async def fetch(self, request: SearchRequest, limit: int) -> List[BusinessCandidate]:
        await self.admit(request)
        return await self.retrieve(request, limit)

    async def close(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.id!r})"


class ApiSource(Source):
    kind = "api"

    def __init__(self, definition: DataSource, client: ProviderClient, tracker: Optional[ApiUsageTracker] = None):
        super().__init__(definition)
        self.client = client
        self.tracker = tracker

    def is_available(self) -> bool:
        return self.client.is_available()

    async def retrieve(self, request: SearchRequest, limit: int) -> List[BusinessCandidate]:
        await self.client.pool.hydrate(self.client.provider)
        started = time.perf_counter()
        results = await self.client.search(request.query, request.location, limit)
        if self.tracker is not None:
            self.tracker.record(self.id, len(results), (time.perf_counter() - started) * 1000, True)
        for candidate in results:
            candidate.source = self.id
        return results[:limit]


class DirectorySource(Source):
    """Plain HTTP fetch of a directory search page."""

    kind = "directory"

    def __init__(
        self,
        definition: DataSource,
        session: aiohttp.ClientSession,
        limiter: DomainRateLimiter,
        robots: Optional[RobotsCache] = None,
        parser: PageParser = parse_listing_page,
        stealth: Optional[StealthConfig] = None,
        timeout: float = 12.0,
    ):
        super().__init__(definition)
        self.session = session
        self.limiter = limiter
        self.robots = robots
        self.parser = parser
        self.stealth = stealth or StealthConfig()
        self.timeout = timeout

    async def admit(self, request: SearchRequest) -> None:
        url = build_search_url(self.id, request.query, request.location)
        user_agent = generate_fingerprint(self.stealth, force_mobile=False).user_agent
        if self.robots is not None and not await self.robots.is_allowed(url, user_agent):
            raise ScrapingError("Disallowed by robots.txt", self.id, {"url": url})
        await self.limiter.acquire(url)

    async def retrieve(self, request: SearchRequest, limit: int) -> List[BusinessCandidate]:
        url = build_search_url(self.id, request.query, request.location)
        user_agent = generate_fingerprint(self.stealth, force_mobile=False).user_agent
        headers = {"User-Agent": user_agent, "Accept": "text/html,application/xhtml+xml", "Accept-Language": "en-US,en;q=0.9"}
        async with self.session.get(url, headers=headers, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
            if response.status == 429:
                retry_after = response.headers.get("Retry-After")
                raise RateLimitError(
                    f"{self.id} returned 429 Too Many Requests",
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                    source=self.id,
                )
            if response.status in BLOCKING_STATUSES:
                raise SourceBlockedError(self.id, BLOCKING_STATUSES[response.status])
            if response.status >= 500:
                raise ProviderError(self.id, response.status)
            if response.status >= 400:
                raise ScrapingError(f"{self.id} returned HTTP {response.status}", self.id, {"status": response.status})
            content = await response.text()

        candidates = self.parser(content, self.id)
        logger.debug("Directory page parsed", source=self.id, candidates=len(candidates))
        return candidates[:limit]


class RenderedSource(Source):
    """A page that only yields results when rendered in a stealth browser context."""

    kind = "rendered"

    def __init__(
        self,
        definition: DataSource,
        browser: BrowserManager,
        limiter: DomainRateLimiter,
        proxies: Optional[ProxyManager] = None,
        parser: PageParser = parse_listing_page,
        stealth: Optional[StealthConfig] = None,
        timeout: float = 15.0,
    ):
        super().__init__(definition)
        self.browser = browser
        self.limiter = limiter
        self.proxies = proxies
        self.parser = parser
        self.stealth = stealth or StealthConfig()
        self.timeout = timeout

    async def admit(self, request: SearchRequest) -> None:
        await self.limiter.acquire(build_search_url(self.id, request.query, request.location))

    async def retrieve(self, request: SearchRequest, limit: int) -> List[BusinessCandidate]:
        url = build_search_url(self.id, request.query, request.location)
        fingerprint = generate_fingerprint(self.stealth)
        proxy = self.proxies.get_proxy_settings() if self.proxies is not None else None
        if proxy is not None:
            self.proxies.record_request()

        browser = await self.browser.get_browser()
        context = await create_stealth_context(browser, fingerprint, self.stealth, proxy)
        try:
            page = await context.new_page()
            load_time = await stealth_navigate(page, url, source=self.id, config=self.stealth, timeout=self.timeout)
            content = await page.content()
        except SourceBlockedError:
            if self.proxies is not None:
                self.proxies.report_failure()
            raise
        except PlaywrightTimeoutError as e:
            if self.proxies is not None:
                self.proxies.report_failure()
            raise BrowserTimeoutError(f"navigate {self.id}", self.timeout) from e
        except PlaywrightError as e:
            raise BrowserError(f"{self.id}: {e}", {"source": self.id}) from e
        finally:
            await context.close()

        if self.proxies is not None:
            self.proxies.record_success()
        candidates = self.parser(content, self.id)
        logger.debug("Rendered page parsed", source=self.id, candidates=len(candidates), load_time=round(load_time, 2))
        return candidates[:limit]
