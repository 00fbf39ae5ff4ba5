"""
Implements a TTL cache over robots.txt files: crawl-delay lookup and allow checks.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.robotparser import RobotFileParser

import httpx
from httpx import AsyncClient, HTTPError, HTTPStatusError

logger = logging.getLogger(__name__)

MAX_ROBOTS_BYTES = 1_000_000


@dataclass
class RobotsEntry:
    fetched_at: float
    crawl_delay: Optional[float]
    parser: Optional[RobotFileParser]


def parse_crawl_delay(content: str) -> Optional[float]:
    """
    Crawl-delay in seconds from the first user-agent group addressed to ``*``
    or to an agent whose name contains "bot". Unparseable values are ignored.
    """
    applies = False
    in_agent_run = False
    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip().lower()
        value = value.strip()

        if key == "user-agent":
            agent = value.lower()
            matches = agent == "*" or "bot" in agent
            # consecutive user-agent lines form one group
            applies = (applies and in_agent_run) or matches
            in_agent_run = True
            continue

        in_agent_run = False
        if key == "crawl-delay" and applies:
            try:
                delay = float(value)
            except ValueError:
                continue
            if delay >= 0:
                return delay
    return None


class RobotsCache:
    """
    Fetches, parses and caches robots.txt per domain.

    Entries live for ``ttl`` seconds. A failed or missing fetch is cached as
    "no rules" so that a broken robots.txt does not cost a request every time.
    """

    def __init__(
        self,
        client: AsyncClient | None = None,
        ttl: float = 3600.0,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            client: An optional httpx.AsyncClient instance. If not provided,
                    a new one will be created and closed by ``close()``.
            ttl: Seconds a fetched robots.txt stays valid.
            timeout: Fetch timeout in seconds.
        """
        self._owns_client = client is None
        self._client = client or AsyncClient(follow_redirects=True)
        self.ttl = ttl
        self.timeout = timeout
        self._clock = clock
        self._entries: Dict[str, RobotsEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def _fetch_robots_txt(self, domain: str) -> str | None:
        url = f"https://{domain}/robots.txt"
        try:
            response = await self._client.get(url, timeout=self.timeout)
            response.raise_for_status()

            # Guard against excessively large robots.txt files
            if len(response.content) > MAX_ROBOTS_BYTES:
                logger.warning("robots.txt for %s is larger than 1MB, skipping", domain)
                return None

            return response.text
        except HTTPStatusError as e:
            # Common case (404) means allow all, so we log at a debug level
            if e.response.status_code == 404:
                logger.debug("No robots.txt found for %s", domain)
            else:
                logger.warning("Failed to fetch robots.txt for %s: %s", domain, e)
            return None
        except HTTPError as e:
            logger.warning("Failed to fetch robots.txt for %s: %s", domain, e)
            return None

    async def _get_entry(self, domain: str) -> RobotsEntry:
        entry = self._entries.get(domain)
        if entry is not None and self._clock() - entry.fetched_at < self.ttl:
            return entry

        if domain not in self._locks:
            self._locks[domain] = asyncio.Lock()

        async with self._locks[domain]:
            # Double-check if it was fetched while waiting for the lock
            entry = self._entries.get(domain)
            if entry is not None and self._clock() - entry.fetched_at < self.ttl:
                return entry

            content = await self._fetch_robots_txt(domain)
            parser: Optional[RobotFileParser] = None
            crawl_delay: Optional[float] = None
            if content:
                parser = RobotFileParser()
                parser.parse(content.splitlines())
                crawl_delay = parse_crawl_delay(content)

            entry = RobotsEntry(fetched_at=self._clock(), crawl_delay=crawl_delay, parser=parser)
            self._entries[domain] = entry
            if crawl_delay is not None:
                logger.debug("robots.txt crawl-delay for %s: %ss", domain, crawl_delay)
            return entry

    async def get_crawl_delay(self, domain: str) -> Optional[float]:
        """Crawl-delay in seconds for ``domain``, or None when unset or unavailable."""
        entry = await self._get_entry(domain)
        return entry.crawl_delay

    async def is_allowed(self, url: str, user_agent: str) -> bool:
        """Checks if a user-agent may fetch ``url``. Missing robots.txt allows everything."""
        try:
            domain = httpx.URL(url).host
        except httpx.InvalidURL:
            logger.warning("Could not parse URL for robots.txt check: %s", url)
            return False
        if not domain:
            return False

        entry = await self._get_entry(domain)
        if entry.parser is None:
            return True
        return entry.parser.can_fetch(user_agent, url)

    def reset(self) -> None:
        self._entries.clear()
        self._locks.clear()

    async def close(self) -> None:
        """Closes the underlying HTTP client if it was created internally."""
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()
