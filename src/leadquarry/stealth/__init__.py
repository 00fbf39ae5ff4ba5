"""Anti-detection layer for sources that render pages."""

from .behavior import (
    bezier_path,
    human_click,
    human_mouse_move,
    human_scroll,
    human_type,
    random_delay,
    simulate_human_behavior,
)
from .detection import BlockResult, detect_block, detect_page_block, stealth_navigate, wait_for_challenge
from .fingerprint import Fingerprint, context_options, default_fingerprint, generate_fingerprint
from .hooks import StealthHooks, apply_stealth, build_hooks, create_stealth_context, render_init_script

__all__ = [
    "BlockResult",
    "Fingerprint",
    "StealthHooks",
    "apply_stealth",
    "bezier_path",
    "build_hooks",
    "context_options",
    "create_stealth_context",
    "default_fingerprint",
    "detect_block",
    "detect_page_block",
    "generate_fingerprint",
    "human_click",
    "human_mouse_move",
    "human_scroll",
    "human_type",
    "random_delay",
    "render_init_script",
    "simulate_human_behavior",
    "stealth_navigate",
    "wait_for_challenge",
]
