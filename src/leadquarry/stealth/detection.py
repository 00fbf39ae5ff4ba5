"""
Block, CAPTCHA and challenge detection for rendered pages.

``detect_block`` is a pure function over page text so it can be tested without a
browser. CAPTCHAs are never solved; a page showing one is reported blocked and
the caller gives up on that source for the run.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from leadquarry.config.config import StealthConfig
from leadquarry.exceptions import SourceBlockedError
from leadquarry.observability.metrics import METRICS
from leadquarry.protocols import BlockKind
from leadquarry.stealth.behavior import simulate_human_behavior

logger = structlog.get_logger(__name__)

CAPTCHA_INDICATORS = (
    "recaptcha",
    "hcaptcha",
    "captcha-container",
    "g-recaptcha",
    "cf-turnstile",
    "challenge-form",
    "challenge-running",
    "px-captcha",
    "arkose",
    "funcaptcha",
)

CLOUDFLARE_INDICATORS = ("checking your browser", "just a moment", "cf-browser-verification", "cloudflare")

RATE_LIMIT_INDICATORS = ("rate limit", "too many requests", "slow down", "request limit exceeded", "429")

ACCESS_DENIED_INDICATORS = (
    "access denied",
    "forbidden",
    "not authorized",
    "permission denied",
    "blocked",
    "403 forbidden",
    "401 unauthorized",
)

BOT_DETECTION_INDICATORS = (
    "unusual traffic",
    "automated queries",
    "bot detected",
    "suspicious activity",
    "verify you are human",
    "prove you are not a robot",
    "security check",
)

CHALLENGE_WAIT_SECONDS = 10.0


@dataclass(frozen=True)
class BlockResult:
    blocked: bool
    kind: BlockKind
    confidence: float
    details: Optional[str] = None


NOT_BLOCKED = BlockResult(False, BlockKind.NONE, 0.8)


def detect_block(content: str, title: str = "") -> BlockResult:
    """Classify page text. The first matching kind wins, checked most-specific first."""
    text = content.lower()
    heading = title.lower()

    for indicator in CAPTCHA_INDICATORS:
        if indicator in text:
            return BlockResult(True, BlockKind.CAPTCHA, 0.95, f"CAPTCHA detected: {indicator}")

    if any(indicator in text for indicator in CLOUDFLARE_INDICATORS):
        return BlockResult(True, BlockKind.BOT_DETECTION, 0.9, "Cloudflare challenge detected")

    for indicator in RATE_LIMIT_INDICATORS:
        if indicator in text or indicator in heading:
            return BlockResult(True, BlockKind.RATE_LIMIT, 0.9, f"Rate limit detected: {indicator}")

    for indicator in ACCESS_DENIED_INDICATORS:
        if indicator in text or indicator in heading:
            return BlockResult(True, BlockKind.ACCESS_DENIED, 0.85, f"Access denied: {indicator}")

    for indicator in BOT_DETECTION_INDICATORS:
        if indicator in text:
            return BlockResult(True, BlockKind.BOT_DETECTION, 0.85, f"Bot detection: {indicator}")

    return NOT_BLOCKED


async def detect_page_block(page: Any) -> BlockResult:
    result = detect_block(await page.content(), await page.title())
    if result.blocked:
        METRICS["blocks_detected"].labels(kind=result.kind.value).inc()
    return result


async def wait_for_challenge(page: Any, timeout: float = 30.0, poll_interval: float = 1.0) -> bool:
    """Poll until a self-resolving challenge clears. Gives up at once on a CAPTCHA."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = await detect_page_block(page)
        if not result.blocked:
            return True
        if result.kind is BlockKind.CAPTCHA:
            return False
        await asyncio.sleep(poll_interval)
    return False


async def stealth_navigate(
    page: Any,
    url: str,
    source: str = "",
    config: Optional[StealthConfig] = None,
    timeout: float = 30.0,
    wait_until: str = "domcontentloaded",
) -> float:
    """
    Navigate ``page`` to ``url`` and make sure the result is usable.

    Returns the load time in seconds. Raises ``SourceBlockedError`` when the page
    is blocked and, for bot checks, did not clear within the challenge wait.
    """
    config = config or StealthConfig()
    started = time.monotonic()

    if config.human_behavior:
        await asyncio.sleep(random.uniform(0.1, 0.3))

    await page.goto(url, wait_until=wait_until, timeout=timeout * 1000)
    load_time = time.monotonic() - started

    result = await detect_page_block(page)
    if result.blocked:
        passed = False
        if result.kind is BlockKind.BOT_DETECTION:
            passed = await wait_for_challenge(page, CHALLENGE_WAIT_SECONDS)
        if not passed:
            logger.warning(
                "Page blocked",
                url=url,
                source=source,
                kind=result.kind.value,
                details=result.details,
            )
            raise SourceBlockedError(source or url, result.kind.value)
        return time.monotonic() - started

    if config.human_behavior:
        await simulate_human_behavior(page)

    return load_time
