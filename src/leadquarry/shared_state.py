"""
Best-effort Redis mirror for rate-limit and quota state.

Several engine processes can point at one Redis so their per-domain pacing and
per-key quotas approximate a single shared limiter. The mirror never decides
anything itself: a missing or failing Redis only means local state is used.
"""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from leadquarry.config.config import SharedStateConfig

logger = structlog.get_logger(__name__)


def rate_key(domain: str) -> str:
    return f"rate:{domain}"


def quota_key(provider: str, key: str, day: str) -> str:
    return f"quota:{provider}:{key[:8]}:{day}"


class SharedStateMirror:
    """
    JSON key-value mirror over ``redis.asyncio``.

    All errors are logged and swallowed; after a failure the mirror stays quiet
    for ``unavailable_backoff_seconds`` before trying Redis again.
    """

    def __init__(
        self,
        config: Optional[SharedStateConfig] = None,
        client: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or SharedStateConfig()
        self.enabled = self.config.enabled or client is not None
        self._client = client
        self._clock = clock
        self._unavailable_until = 0.0
        self.errors = 0

    def _full_key(self, key: str) -> str:
        return f"{self.config.key_prefix}{key}"

    def _get_client(self) -> Optional[Any]:
        if not self.enabled:
            return None
        if self._clock() < self._unavailable_until:
            return None
        if self._client is None:
            self._client = redis.from_url(
                self.config.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
        return self._client

    def _mark_unavailable(self, operation: str, error: Exception) -> None:
        self.errors += 1
        self._unavailable_until = self._clock() + self.config.unavailable_backoff_seconds
        logger.warning(
            "Shared state mirror unavailable",
            operation=operation,
            error=str(error),
            retry_in=self.config.unavailable_backoff_seconds,
        )

    @property
    def available(self) -> bool:
        return self.enabled and self._clock() >= self._unavailable_until

    async def ping(self) -> bool:
        client = self._get_client()
        if client is None:
            return False
        try:
            await client.ping()
            return True
        except (RedisError, OSError) as e:
            self._mark_unavailable("ping", e)
            return False

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        if client is None:
            return None
        try:
            raw = await client.get(self._full_key(key))
        except (RedisError, OSError) as e:
            self._mark_unavailable("get", e)
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed mirror entry", key=key)
            return None
        return value if isinstance(value, dict) else None

    async def set_json(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        client = self._get_client()
        if client is None:
            return False
        try:
            await client.set(self._full_key(key), json.dumps(value), ex=ttl or self.config.state_ttl_seconds)
            return True
        except (RedisError, OSError) as e:
            self._mark_unavailable("set", e)
            return False

    async def delete(self, key: str) -> bool:
        client = self._get_client()
        if client is None:
            return False
        try:
            await client.delete(self._full_key(key))
            return True
        except (RedisError, OSError) as e:
            self._mark_unavailable("delete", e)
            return False

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.debug("Error closing shared state client", error=str(e))
            self._client = None
