"""
Page-initialization hooks that apply a fingerprint inside the browser.

The browser side is one fixed script, ``stealth_hooks.js``, shipped with the
package. Everything that varies per context travels as a JSON config object
built by ``build_hooks``; no script text is assembled from fingerprint values.
"""

from __future__ import annotations

import json
import random
from dataclasses import asdict, dataclass
from functools import lru_cache
from importlib import resources
from typing import Any, Dict, List, Optional

import structlog

from leadquarry.config.config import StealthConfig
from leadquarry.stealth.fingerprint import Fingerprint, context_options

logger = structlog.get_logger(__name__)

CANVAS_NOISE_AMPLITUDE = 2
AUDIO_NOISE_AMPLITUDE = 0.1


@dataclass
class StealthHooks:
    """Structured config consumed by ``stealth_hooks.js``."""

    platform: str
    languages: List[str]
    hardwareConcurrency: int
    deviceMemory: int
    webgl: Dict[str, str]
    screen: Dict[str, int]
    connection: Dict[str, float]
    battery: Dict[str, Any]
    canvasNoise: Optional[Dict[str, float]] = None
    audioNoise: Optional[Dict[str, float]] = None
    webrtcProtection: bool = False

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))


def build_hooks(
    fingerprint: Fingerprint,
    config: Optional[StealthConfig] = None,
    rng: Optional[random.Random] = None,
) -> StealthHooks:
    config = config or StealthConfig()
    rng = rng or random.Random()
    width, height = fingerprint.viewport

    return StealthHooks(
        platform=fingerprint.platform,
        languages=list(fingerprint.languages),
        hardwareConcurrency=fingerprint.hardware_concurrency,
        deviceMemory=fingerprint.device_memory,
        webgl={"vendor": fingerprint.webgl_vendor, "renderer": fingerprint.webgl_renderer},
        screen={"width": width, "height": height},
        connection={"rtt": rng.choice([50, 100, 150]), "downlink": round(rng.uniform(5, 15), 1)},
        battery={"charging": rng.random() < 0.7, "level": round(rng.uniform(0.5, 1.0), 2)},
        canvasNoise={"amplitude": CANVAS_NOISE_AMPLITUDE} if config.canvas_noise else None,
        audioNoise={"amplitude": AUDIO_NOISE_AMPLITUDE} if config.audio_noise else None,
        webrtcProtection=config.webrtc_protection,
    )


@lru_cache(maxsize=1)
def load_hook_script() -> str:
    return resources.files("leadquarry.stealth").joinpath("stealth_hooks.js").read_text(encoding="utf-8").strip()


def render_init_script(hooks: StealthHooks) -> str:
    """The fixed hook function applied to the JSON config."""
    return f"({load_hook_script()})({hooks.to_json()});"


async def apply_stealth(context: Any, fingerprint: Fingerprint, config: Optional[StealthConfig] = None) -> StealthHooks:
    """Install the init script on a Playwright ``BrowserContext``."""
    config = config or StealthConfig()
    hooks = build_hooks(fingerprint, config)
    await context.add_init_script(render_init_script(hooks))
    logger.debug("Stealth hooks applied", platform=fingerprint.platform, mobile=fingerprint.is_mobile)
    return hooks


async def create_stealth_context(
    browser: Any,
    fingerprint: Fingerprint,
    config: Optional[StealthConfig] = None,
    proxy: Optional[Dict[str, str]] = None,
) -> Any:
    """Open a new context for ``fingerprint`` with hooks installed when stealth is enabled."""
    config = config or StealthConfig()
    options = context_options(fingerprint)
    if proxy:
        options["proxy"] = proxy
    context = await browser.new_context(**options)
    if config.enabled:
        await apply_stealth(context, fingerprint, config)
    return context
