"""
Browser fingerprints drawn from internally consistent pools.

A fingerprint is chosen as a whole: the user agent fixes the platform, the
platform fixes which viewports and GPUs are plausible, and mobile agents always
come with a touch-capable mobile viewport.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from leadquarry.config.config import StealthConfig

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Desktop browsers keyed by navigator.platform
DESKTOP_AGENTS: Dict[str, List[str]] = {
    "Win32": [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; WOW64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:120.0) Gecko/20100101 Firefox/120.0",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36 Edg/119.0.0.0",
    ],
    "MacIntel": [
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
    ],
    "Linux x86_64": [
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
        "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
    ],
}

MOBILE_AGENTS: Dict[str, List[str]] = {
    "Linux armv8l": [
        "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
        "Mozilla/5.0 (Linux; Android 13; SM-S918B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
    ],
    "iPhone": [
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1",
    ],
}

DESKTOP_VIEWPORTS: List[Tuple[int, int]] = [
    (1920, 1080),
    (1366, 768),
    (1440, 900),
    (1536, 864),
    (1280, 720),
    (1600, 900),
    (1680, 1050),
    (2560, 1440),
    (1280, 800),
    (1360, 768),
]

MOBILE_VIEWPORTS: Dict[str, List[Tuple[int, int]]] = {
    "Linux armv8l": [(412, 915), (393, 873)],
    "iPhone": [(390, 844), (375, 812), (414, 896)],
}

LOCALE_TIMEZONES: List[Tuple[str, str]] = [
    ("en-US", "America/New_York"),
    ("en-US", "America/Chicago"),
    ("en-US", "America/Denver"),
    ("en-US", "America/Los_Angeles"),
    ("en-US", "America/Phoenix"),
    ("en-GB", "Europe/London"),
    ("en-CA", "America/Toronto"),
    ("en-AU", "Australia/Sydney"),
]

WEBGL_BY_PLATFORM: Dict[str, List[Tuple[str, str]]] = {
    "Win32": [
        ("Google Inc. (NVIDIA)", "ANGLE (NVIDIA, NVIDIA GeForce RTX 3080 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
        ("Google Inc. (NVIDIA)", "ANGLE (NVIDIA, NVIDIA GeForce RTX 4070 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
        ("Google Inc. (AMD)", "ANGLE (AMD, AMD Radeon RX 6800 XT Direct3D11 vs_5_0 ps_5_0, D3D11)"),
        ("Google Inc. (Intel)", "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
        ("Google Inc. (Intel)", "ANGLE (Intel, Intel(R) Iris(R) Xe Graphics Direct3D11 vs_5_0 ps_5_0, D3D11)"),
    ],
    "MacIntel": [
        ("Apple Inc.", "Apple M1 Pro"),
        ("Apple Inc.", "Apple M2"),
        ("Apple Inc.", "Apple M3"),
    ],
    "Linux x86_64": [
        ("Intel", "Mesa Intel(R) UHD Graphics 630 (CFL GT2)"),
        ("AMD", "AMD Radeon RX 6700 XT (radeonsi, navi22, LLVM 15.0.7, DRM 3.49)"),
    ],
    "Linux armv8l": [
        ("Qualcomm", "Adreno (TM) 740"),
        ("ARM", "Mali-G710 MC10"),
    ],
    "iPhone": [
        ("Apple Inc.", "Apple GPU"),
    ],
}


@dataclass(frozen=True)
class Fingerprint:
    user_agent: str
    viewport: Tuple[int, int]
    locale: str
    timezone: str
    webgl_vendor: str
    webgl_renderer: str
    platform: str
    is_mobile: bool = False
    has_touch: bool = False
    device_scale_factor: float = 1.0
    hardware_concurrency: int = 8
    device_memory: int = 8
    languages: Tuple[str, ...] = field(default=("en-US", "en"))


def default_fingerprint() -> Fingerprint:
    return Fingerprint(
        user_agent=DEFAULT_USER_AGENT,
        viewport=(1920, 1080),
        locale="en-US",
        timezone="America/New_York",
        webgl_vendor="Google Inc. (NVIDIA)",
        webgl_renderer="ANGLE (NVIDIA, NVIDIA GeForce RTX 3080 Direct3D11 vs_5_0 ps_5_0, D3D11)",
        platform="Win32",
    )


def generate_fingerprint(
    config: Optional[StealthConfig] = None,
    force_mobile: Optional[bool] = None,
    rng: Optional[random.Random] = None,
) -> Fingerprint:
    """Pick a complete fingerprint. Disabled stealth yields the fixed default."""
    config = config or StealthConfig()
    rng = rng or random.Random()

    if not config.enabled:
        return default_fingerprint()

    is_mobile = force_mobile if force_mobile is not None else rng.random() < config.mobile_ratio
    pool = MOBILE_AGENTS if is_mobile else DESKTOP_AGENTS

    if config.user_agent_rotation:
        platform = rng.choice(sorted(pool))
        user_agent = rng.choice(pool[platform])
    else:
        platform = "Linux armv8l" if is_mobile else "Win32"
        user_agent = pool[platform][0]

    if config.fingerprint_randomization:
        viewport = rng.choice(MOBILE_VIEWPORTS[platform] if is_mobile else DESKTOP_VIEWPORTS)
        vendor, renderer = rng.choice(WEBGL_BY_PLATFORM[platform])
        hardware_concurrency = rng.choice([4, 6, 8]) if is_mobile else rng.choice([4, 8, 12, 16])
        device_memory = rng.choice([4, 8]) if is_mobile else rng.choice([8, 16, 32])
    else:
        viewport = MOBILE_VIEWPORTS[platform][0] if is_mobile else (1920, 1080)
        vendor, renderer = WEBGL_BY_PLATFORM[platform][0]
        hardware_concurrency, device_memory = 8, 8

    locale, timezone = rng.choice(LOCALE_TIMEZONES)
    if is_mobile:
        scale = 3.0
    elif platform == "MacIntel":
        scale = 2.0
    else:
        scale = rng.choice([1.0, 1.25, 1.5])

    return Fingerprint(
        user_agent=user_agent,
        viewport=viewport,
        locale=locale,
        timezone=timezone,
        webgl_vendor=vendor,
        webgl_renderer=renderer,
        platform=platform,
        is_mobile=is_mobile,
        has_touch=is_mobile,
        device_scale_factor=scale,
        hardware_concurrency=hardware_concurrency,
        device_memory=device_memory,
        languages=(locale, locale.split("-")[0]),
    )


_CH_PLATFORM = {
    "Win32": '"Windows"',
    "MacIntel": '"macOS"',
    "Linux x86_64": '"Linux"',
    "Linux armv8l": '"Android"',
    "iPhone": '"iOS"',
}


def context_options(fingerprint: Fingerprint) -> Dict[str, Any]:
    """Keyword arguments for Playwright ``browser.new_context``."""
    width, height = fingerprint.viewport
    headers = {
        "Accept-Language": f"{fingerprint.locale},{fingerprint.locale.split('-')[0]};q=0.9,en;q=0.8",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Upgrade-Insecure-Requests": "1",
    }
    if "Chrome/" in fingerprint.user_agent:
        headers["Sec-Ch-Ua-Mobile"] = "?1" if fingerprint.is_mobile else "?0"
        headers["Sec-Ch-Ua-Platform"] = _CH_PLATFORM.get(fingerprint.platform, '"Windows"')

    return {
        "user_agent": fingerprint.user_agent,
        "viewport": {"width": width, "height": height},
        "locale": fingerprint.locale,
        "timezone_id": fingerprint.timezone,
        "device_scale_factor": fingerprint.device_scale_factor,
        "has_touch": fingerprint.has_touch,
        "is_mobile": fingerprint.is_mobile,
        "java_script_enabled": True,
        "extra_http_headers": headers,
    }
