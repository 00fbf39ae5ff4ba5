"""
Human-like timing and input for rendered pages.

All functions take a Playwright ``Page`` (or anything exposing ``mouse`` and
``keyboard``) and an optional ``random.Random`` so tests can pin the randomness.
Pauses are plain ``asyncio.sleep`` calls.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, List, Optional, Tuple

Point = Tuple[float, float]

_SPEEDS = {"fast": (10, 5), "normal": (20, 10), "slow": (30, 20)}
_TYPING_DELAYS = {"fast": 30, "normal": 80, "slow": 150}
_PUNCTUATION = set(".,!?;:")


def random_delay(base_ms: float, variance_pct: float = 30, rng: Optional[random.Random] = None) -> float:
    """``base_ms`` spread by ``variance_pct`` percent either way, never negative."""
    rng = rng or random
    variance = base_ms * variance_pct / 100
    return max(0.0, base_ms + rng.uniform(-variance, variance))


async def _pause(ms: float) -> None:
    await asyncio.sleep(ms / 1000)


def bezier_path(start: Point, end: Point, steps: int = 20, rng: Optional[random.Random] = None) -> List[Point]:
    """Points along a cubic Bezier from ``start`` to ``end`` with one-pixel jitter."""
    rng = rng or random
    (x0, y0), (x3, y3) = start, end
    dx, dy = x3 - x0, y3 - y0

    x1 = x0 + dx * 0.25 + rng.uniform(-1, 1) * abs(dx) * 0.3
    y1 = y0 + dy * 0.1 + rng.uniform(-1, 1) * abs(dy) * 0.5
    x2 = x0 + dx * 0.75 + rng.uniform(-1, 1) * abs(dx) * 0.3
    y2 = y0 + dy * 0.9 + rng.uniform(-1, 1) * abs(dy) * 0.5

    points: List[Point] = []
    for i in range(steps + 1):
        t = i / steps
        u = 1 - t
        x = u**3 * x0 + 3 * u**2 * t * x1 + 3 * u * t**2 * x2 + t**3 * x3
        y = u**3 * y0 + 3 * u**2 * t * y1 + 3 * u * t**2 * y2 + t**3 * y3
        if 0 < i < steps:
            x += rng.uniform(-1, 1)
            y += rng.uniform(-1, 1)
        points.append((x, y))
    return points


async def human_mouse_move(
    page: Any,
    target: Point,
    start: Optional[Point] = None,
    speed: str = "normal",
    rng: Optional[random.Random] = None,
) -> Point:
    rng = rng or random
    steps, micro_delay = _SPEEDS.get(speed, _SPEEDS["normal"])
    origin = start or (rng.uniform(0, 200), rng.uniform(0, 200))
    for x, y in bezier_path(origin, target, steps, rng):
        await page.mouse.move(x, y)
        await _pause(random_delay(micro_delay, 50, rng))
    return target


async def human_click(page: Any, selector: str, rng: Optional[random.Random] = None) -> None:
    """Move to a random point inside the element, then click with pauses either side."""
    rng = rng or random
    element = await page.query_selector(selector)
    if element is None:
        raise ValueError(f"Element not found: {selector}")
    box = await element.bounding_box()
    if box is None:
        raise ValueError(f"Element not visible: {selector}")

    target = (
        box["x"] + box["width"] * rng.uniform(0.25, 0.75),
        box["y"] + box["height"] * rng.uniform(0.25, 0.75),
    )
    await human_mouse_move(page, target, rng=rng)
    await _pause(rng.uniform(50, 150))
    await page.mouse.click(*target)
    await _pause(rng.uniform(100, 300))


def keystroke_delay(char: str, previous: str, base_ms: float, rng: Optional[random.Random] = None) -> float:
    rng = rng or random
    delay = base_ms
    if char in _PUNCTUATION:
        delay *= rng.uniform(2, 4)
    elif char.isupper():
        delay *= 1.3
    elif char == previous:
        delay *= 0.7
    elif char.isalpha() and previous.isalpha():
        delay *= 0.9
    delay = random_delay(delay, 40, rng)
    if rng.random() < 0.05:
        delay += rng.uniform(200, 500)
    return delay


async def human_type(page: Any, selector: str, text: str, speed: str = "normal", rng: Optional[random.Random] = None) -> None:
    rng = rng or random
    base = _TYPING_DELAYS.get(speed, _TYPING_DELAYS["normal"])
    await human_click(page, selector, rng)
    previous = ""
    for char in text:
        await page.keyboard.type(char)
        await _pause(keystroke_delay(char, previous, base, rng))
        previous = char


async def human_scroll(page: Any, rng: Optional[random.Random] = None) -> None:
    """A short burst of uneven downward scrolls."""
    rng = rng or random
    for _ in range(rng.randint(2, 5)):
        distance = 300 + rng.randint(-100, 200)
        await page.mouse.wheel(0, distance)
        await _pause(random_delay(800, 30, rng))


async def simulate_human_behavior(page: Any, rng: Optional[random.Random] = None) -> None:
    """Pause, wander the mouse, scroll with an occasional reversal, and fidget."""
    rng = rng or random
    await _pause(random_delay(1000, 50, rng))

    viewport = getattr(page, "viewport_size", None) or {"width": 1366, "height": 768}
    target = (rng.uniform(100, viewport["width"] - 100), rng.uniform(100, viewport["height"] - 100))
    position = await human_mouse_move(page, target, rng=rng)

    await page.mouse.wheel(0, rng.randint(100, 400))
    await _pause(random_delay(500, 40, rng))
    if rng.random() < 0.3:
        await page.mouse.wheel(0, -rng.randint(50, 150))
        await _pause(random_delay(300, 40, rng))

    for _ in range(rng.randint(1, 3)):
        position = (position[0] + rng.uniform(-20, 20), position[1] + rng.uniform(-20, 20))
        await page.mouse.move(*position)
        await _pause(rng.uniform(50, 150))
