"""
Outbound proxy rotation for browser sessions.
"""

from __future__ import annotations

import secrets
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import structlog

from leadquarry.config.config import ProxyConfig

logger = structlog.get_logger(__name__)

FALLBACK_FAILURE_THRESHOLD = 3

OXYLABS_ENDPOINT = "http://pr.oxylabs.io:7777"
SMARTPROXY_ENDPOINT = "http://gate.smartproxy.com:7000"


def _new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class ProxyManager:
    """
    Hands out Playwright proxy settings and rotates them.

    Rotation happens every ``rotate_every`` recorded requests and, when
    ``rotate_on_error`` is set, after each reported failure. With
    ``fallback_direct`` the caller is told to go direct after three
    consecutive failures.
    """

    def __init__(self, config: Optional[ProxyConfig] = None):
        self.config = config or ProxyConfig()
        self._current: Optional[Dict[str, str]] = None
        self._session_id = _new_session_id()
        self.request_count = 0
        self.failure_count = 0
        self.last_rotation = 0.0
        self.rotations = 0

    def get_proxy_settings(self) -> Optional[Dict[str, str]]:
        """``{"server", "username", "password"}`` for Playwright, or None for direct."""
        if not self.config.enabled:
            return None
        if self.should_fallback_direct():
            return None
        if self._should_rotate():
            self.rotate()
        return self._current

    def _should_rotate(self) -> bool:
        if self._current is None:
            return True
        return self.config.rotate_every > 0 and self.request_count >= self.config.rotate_every

    def rotate(self) -> None:
        if not self.config.enabled:
            self._current = None
            return

        if not self.config.sticky_session:
            self._session_id = _new_session_id()

        builders = {
            "brightdata": self._brightdata,
            "oxylabs": self._oxylabs,
            "smartproxy": self._smartproxy,
            "custom": self._custom,
        }
        self._current = builders[self.config.provider]()
        self.request_count = 0
        self.last_rotation = time.time()
        self.rotations += 1
        logger.debug("Proxy rotated", provider=self.config.provider, configured=self._current is not None)

    def record_request(self) -> None:
        self.request_count += 1

    def record_success(self) -> None:
        self.failure_count = 0

    def report_failure(self) -> None:
        self.failure_count += 1
        if self.config.rotate_on_error:
            self.rotate()

    def should_fallback_direct(self) -> bool:
        return self.config.fallback_direct and self.failure_count >= FALLBACK_FAILURE_THRESHOLD

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "provider": self.config.provider,
            "request_count": self.request_count,
            "failure_count": self.failure_count,
            "rotations": self.rotations,
            "last_rotation": self.last_rotation,
            "direct": self.should_fallback_direct(),
        }

    # Provider-specific endpoints

    def _brightdata(self) -> Optional[Dict[str, str]]:
        creds = self.config.brightdata
        if not creds.username or not creds.password:
            logger.warning("Bright Data proxy credentials not configured")
            return None
        session = self._session_id if self.config.sticky_session else _new_session_id()
        return {
            "server": f"http://{creds.host}:{creds.port}",
            "username": f"{creds.username}-session-{session}",
            "password": creds.password,
        }

    def _oxylabs(self) -> Optional[Dict[str, str]]:
        creds = self.config.oxylabs
        if not creds.username or not creds.password:
            logger.warning("Oxylabs proxy credentials not configured")
            return None
        server = f"http://{creds.host}:{creds.port}" if creds.host and creds.port else OXYLABS_ENDPOINT
        return {"server": server, "username": creds.username, "password": creds.password}

    def _smartproxy(self) -> Optional[Dict[str, str]]:
        creds = self.config.smartproxy
        if not creds.username or not creds.password:
            logger.warning("SmartProxy credentials not configured")
            return None
        server = f"http://{creds.host}:{creds.port}" if creds.host and creds.port else SMARTPROXY_ENDPOINT
        return {"server": server, "username": creds.username, "password": creds.password}

    def _custom(self) -> Optional[Dict[str, str]]:
        url = self.config.custom_url
        if not url:
            logger.warning("Custom proxy URL not configured")
            return None
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.hostname:
            logger.warning("Invalid custom proxy URL", url=url)
            return None
        host = parsed.hostname if parsed.port is None else f"{parsed.hostname}:{parsed.port}"
        settings = {"server": f"{parsed.scheme}://{host}"}
        if parsed.username:
            settings["username"] = parsed.username
        if parsed.password:
            settings["password"] = parsed.password
        return settings
