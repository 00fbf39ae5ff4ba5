"""Builds runnable ``Source`` objects for a category's ``DataSource`` list."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

import aiohttp
import structlog

from leadquarry.apis.providers import ApiSearchService
from leadquarry.config.config import OrchestratorConfig, StealthConfig
from leadquarry.crawler.proxy import ProxyManager
from leadquarry.crawler.rate_limiter import DomainRateLimiter
from leadquarry.crawler.robots_parser import RobotsCache
from leadquarry.protocols import DataSource, PageParser, SourceType

from .base import ApiSource, DirectorySource, RenderedSource, Source
from .browser import BrowserManager
from .catalog import SOURCE_PROFILES, api_source_id
from .parsers import parse_listing_page

logger = structlog.get_logger(__name__)


class SourceRegistry:
    """
    Owns the shared transports (HTTP session, browser) and hands out ``Source``
    instances. Sources are cached by id so per-source state survives across runs.
    """

    def __init__(
        self,
        limiter: DomainRateLimiter,
        api: Optional[ApiSearchService] = None,
        robots: Optional[RobotsCache] = None,
        proxies: Optional[ProxyManager] = None,
        stealth: Optional[StealthConfig] = None,
        orchestrator: Optional[OrchestratorConfig] = None,
        browser: Optional[BrowserManager] = None,
        session: Optional[aiohttp.ClientSession] = None,
        parsers: Optional[Dict[str, PageParser]] = None,
    ):
        self.limiter = limiter
        self.api = api
        self.robots = robots
        self.proxies = proxies
        self.stealth = stealth or StealthConfig()
        self.orchestrator = orchestrator or OrchestratorConfig()
        self.browser = browser or BrowserManager(headless=self.orchestrator.headless)
        self._session = session
        self._owns_session = session is None
        self.parsers: Dict[str, PageParser] = dict(parsers or {})
        self._sources: Dict[str, Source] = {}

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def api_providers(self) -> List[str]:
        """Providers with at least one configured key."""
        if self.api is None:
            return []
        return [client.provider for client in self.api.clients]

    def register(self, source: Source) -> None:
        self._sources[source.id] = source

    def _build(self, definition: DataSource) -> Optional[Source]:
        if definition.type is SourceType.API:
            if self.api is None:
                return None
            provider = next((c for c in self.api.clients if api_source_id(c.provider) == definition.id), None)
            if provider is None:
                return None
            return ApiSource(definition, provider, self.api.tracker)

        profile = SOURCE_PROFILES.get(definition.id)
        if profile is None:
            logger.warning("No profile for source", source=definition.id)
            return None
        parser = self.parsers.get(definition.id, parse_listing_page)
        if profile.rendered:
            return RenderedSource(
                definition,
                self.browser,
                self.limiter,
                proxies=self.proxies,
                parser=parser,
                stealth=self.stealth,
                timeout=self.orchestrator.rendered_timeout_seconds,
            )
        return DirectorySource(
            definition,
            self._get_session(),
            self.limiter,
            robots=self.robots,
            parser=parser,
            stealth=self.stealth,
            timeout=self.orchestrator.directory_timeout_seconds,
        )

    def get(self, definition: DataSource) -> Optional[Source]:
        """The cached transport for ``definition.id``. It is shared by every run and never rewritten."""
        source = self._sources.get(definition.id)
        if source is None:
            source = self._build(definition)
            if source is not None:
                self._sources[definition.id] = source
        return source

    def bind(self, definitions: Iterable[DataSource]) -> List[Tuple[DataSource, Source]]:
        """Pair each of a run's definitions with its transport. Priority and thresholds come from the pair."""
        bound = []
        for definition in definitions:
            source = self.get(definition)
            if source is not None:
                bound.append((definition, source))
        return bound

    def resolve(self, definitions: Iterable[DataSource]) -> List[Source]:
        return [source for _, source in self.bind(definitions)]

    def timeout_for(self, source: Source) -> float:
        if source.kind == "api":
            return self.orchestrator.api_timeout_seconds
        if source.kind == "rendered":
            return self.orchestrator.rendered_timeout_seconds
        return self.orchestrator.directory_timeout_seconds

    async def close(self) -> None:
        for source in self._sources.values():
            await source.close()
        self._sources.clear()
        await self.browser.close()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
