"""
Shared Playwright browser for rendered sources.

One Chromium instance is launched lazily on first use and shared by every
rendered source in the process; each fetch gets its own context so fingerprints
and proxies never leak between calls.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog
from playwright.async_api import Browser, Playwright, async_playwright

from leadquarry.exceptions import BrowserConnectionError

logger = structlog.get_logger(__name__)

LAUNCH_ARGS = ["--disable-blink-features=AutomationControlled", "--no-sandbox"]


class BrowserManager:
    """Lazily started, lock-guarded Chromium shared by rendered sources."""

    def __init__(self, headless: bool = True):
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    @property
    def started(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def get_browser(self) -> Any:
        if self.started:
            return self._browser
        async with self._lock:
            if self.started:
                return self._browser
            await self._shutdown()
            try:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
            except Exception as e:
                await self._shutdown()
                raise BrowserConnectionError(f"Failed to launch browser: {e}") from e
            logger.info("Browser launched", headless=self.headless)
            return self._browser

    async def _shutdown(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:  # noqa: BLE001
                logger.debug("Browser close failed", error=str(e))
            self._browser = None
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:  # noqa: BLE001
                logger.debug("Playwright stop failed", error=str(e))
            self._playwright = None

    async def close(self) -> None:
        async with self._lock:
            await self._shutdown()
