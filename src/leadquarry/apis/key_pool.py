"""
Multi-key round robin with per-key daily quotas.

Each provider owns an ordered key list and a rotation cursor. ``next_key``
starts at the cursor, skips keys that are out of quota for the UTC day and
moves the cursor past the key it returns, so load spreads over every key that
still has headroom. Quota windows roll over lazily at UTC midnight.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Set, Tuple

import structlog

from leadquarry.config.config import PROVIDERS, ApiFallbackConfig
from leadquarry.observability.metrics import METRICS
from leadquarry.shared_state import SharedStateMirror, quota_key

logger = structlog.get_logger(__name__)

DEFAULT_LIMIT_PER_KEY = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc) + timedelta(days=1)


@dataclass
class KeyQuotaState:
    used: int
    limit: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def to_mirror(self) -> Dict[str, Any]:
        return {"used": self.used, "limit": self.limit, "resetAt": self.reset_at.isoformat()}


class QuotaStatus(NamedTuple):
    available: bool
    remaining: int


class KeyPool:
    """Round-robin key selection under per-key daily quotas. Never suspends."""

    def __init__(
        self,
        keys: Mapping[str, Sequence[str]],
        limits: Optional[Mapping[str, int]] = None,
        mirror: Optional[SharedStateMirror] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._keys: Dict[str, List[str]] = {p: list(k) for p, k in keys.items() if k}
        self._limits: Dict[str, int] = dict(limits or {})
        self.mirror = mirror
        self._now = now
        self._states: Dict[Tuple[str, str], KeyQuotaState] = {}
        self._cursors: Dict[str, int] = {}
        self._pending_writes: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: ApiFallbackConfig, mirror: Optional[SharedStateMirror] = None) -> KeyPool:
        keys = {p: config.keys.for_provider(p) for p in PROVIDERS}
        limits = {p: config.quota_limits.for_provider(p) for p in PROVIDERS}
        return cls(keys, limits, mirror=mirror)

    def providers(self) -> List[str]:
        return list(self._keys)

    def keys_for(self, provider: str) -> List[str]:
        return list(self._keys.get(provider, []))

    def limit_for(self, provider: str) -> int:
        return self._limits.get(provider) or DEFAULT_LIMIT_PER_KEY

    def _state_key(self, provider: str, key: str) -> str:
        return quota_key(provider, key, self._now().strftime("%Y-%m-%d"))

    def _get_state(self, provider: str, key: str) -> KeyQuotaState:
        now = self._now()
        state = self._states.get((provider, key))
        if state is None:
            state = KeyQuotaState(used=0, limit=self.limit_for(provider), reset_at=next_utc_midnight(now))
            self._states[(provider, key)] = state
        elif now >= state.reset_at:
            state.used = 0
            state.reset_at = next_utc_midnight(now)
        return state

    def next_key(self, provider: str) -> Optional[str]:
        """The next key with quota left, or None when every key is exhausted for today."""
        keys = self._keys.get(provider)
        if not keys:
            return None

        start = self._cursors.get(provider, 0)
        for offset in range(len(keys)):
            index = (start + offset) % len(keys)
            key = keys[index]
            if self._get_state(provider, key).used < self.limit_for(provider):
                self._cursors[provider] = (index + 1) % len(keys)
                return key

        logger.info("All API keys exhausted", provider=provider, keys=len(keys))
        return None

    def record_usage(self, provider: str, key: str, count: int = 1) -> None:
        state = self._get_state(provider, key)
        state.used += count
        METRICS["api_key_usage"].labels(provider=provider).inc(count)
        METRICS["api_quota_remaining"].labels(provider=provider).set(self.check_quota(provider).remaining)
        self._mirror_state(provider, key, state)

    def acquire_key(self, provider: str) -> Optional[str]:
        """``next_key`` and charge one call to it."""
        key = self.next_key(provider)
        if key is not None:
            self.record_usage(provider, key)
        return key

    def check_quota(self, provider: str) -> QuotaStatus:
        keys = self._keys.get(provider, [])
        remaining = sum(self._get_state(provider, key).remaining for key in keys)
        return QuotaStatus(available=remaining > 0, remaining=remaining)

    def get_quota_stats(self) -> Dict[str, Dict[str, Any]]:
        stats: Dict[str, Dict[str, Any]] = {}
        for provider, keys in self._keys.items():
            key_stats = []
            for key in keys:
                state = self._get_state(provider, key)
                key_stats.append(
                    {
                        "key_id": key[:8],
                        "used": state.used,
                        "limit": state.limit,
                        "remaining": state.remaining,
                        "reset_at": state.reset_at.isoformat(),
                    }
                )
            stats[provider] = {
                "used": sum(k["used"] for k in key_stats),
                "limit": sum(k["limit"] for k in key_stats),
                "remaining": sum(k["remaining"] for k in key_stats),
                "key_count": len(keys),
                "keys": key_stats,
            }
        return stats

    # --- shared mirror ---

    def _mirror_state(self, provider: str, key: str, state: KeyQuotaState) -> None:
        if self.mirror is None or not self.mirror.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        ttl = max(60, int((state.reset_at - self._now()).total_seconds()) + 3600)
        task = loop.create_task(
            self.mirror.set_json(self._state_key(provider, key), state.to_mirror(), ttl)
        )
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def hydrate(self, provider: str) -> None:
        """Adopt higher usage counts other instances recorded for today."""
        if self.mirror is None:
            return
        for key in self._keys.get(provider, []):
            remote = await self.mirror.get_json(self._state_key(provider, key))
            if not remote:
                continue
            try:
                used = int(remote.get("used", 0))
            except (TypeError, ValueError):
                continue
            state = self._get_state(provider, key)
            if used > state.used:
                state.used = used

    async def flush(self) -> None:
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    def reset(self) -> None:
        """Forget all usage and cursors."""
        self._states.clear()
        self._cursors.clear()
