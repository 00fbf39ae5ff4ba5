"""
Error taxonomy for leadquarry.

Every error raised by the discovery engine derives from ``AppError`` so callers can
tell operational failures (retry or fall back) from programming errors (surface).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp


class AppError(Exception):
    """Base class for application errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        is_operational: bool = True,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.is_operational = is_operational
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
        }


# --- Validation ---


class ValidationError(AppError):
    """User input out of bounds. Surfaced immediately, never retried."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", 400, False, context)


class InvalidQueryError(ValidationError):
    def __init__(self, query: str):
        super().__init__(
            "Search query must be between 2 and 200 characters",
            {"query": query[:50]},
        )


class InvalidLocationError(ValidationError):
    def __init__(self, location: str):
        super().__init__(
            "Location must be between 2 and 200 characters",
            {"location": location[:50]},
        )


class InvalidCountError(ValidationError):
    def __init__(self, count: int, maximum: int):
        super().__init__(f"Result count must be between 1 and {maximum}", {"count": count, "max": maximum})


# --- Rate limiting ---


class RateLimitError(AppError):
    """The upstream told us to slow down. Callers fall back to another source."""

    def __init__(self, message: str = "Too Many Requests", retry_after: Optional[float] = None, **context: Any):
        super().__init__(message, "RATE_LIMIT_EXCEEDED", 429, True, {"retry_after": retry_after, **context})
        self.retry_after = retry_after


class QueueFullError(AppError):
    """A per-domain rate limiter queue is at capacity."""

    def __init__(self, domain: str, size: int):
        super().__init__(
            f"Rate limiter queue for {domain} is full ({size} waiting)",
            "RATE_LIMIT_QUEUE_FULL",
            503,
            True,
            {"domain": domain, "queue_size": size},
        )
        self.domain = domain


class QueueTimeoutError(AppError):
    """A request waited too long in a per-domain rate limiter queue."""

    def __init__(self, domain: str, waited: float):
        super().__init__(
            f"Timed out after {waited:.1f}s waiting for rate limiter slot on {domain}",
            "RATE_LIMIT_QUEUE_TIMEOUT",
            503,
            True,
            {"domain": domain, "waited": waited},
        )
        self.domain = domain


# --- Browser ---


class BrowserError(AppError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "BROWSER_ERROR", 503, True, context)


class BrowserConnectionError(BrowserError):
    def __init__(self, message: str = "Failed to connect to browser"):
        super().__init__(message)
        self.code = "BROWSER_CONNECTION_ERROR"


class BrowserTimeoutError(BrowserError):
    def __init__(self, operation: str, timeout: float):
        super().__init__(f"Browser operation timed out: {operation}", {"operation": operation, "timeout": timeout})
        self.code = "BROWSER_TIMEOUT"
        self.status_code = 504


# --- Scraping ---


class ScrapingError(AppError):
    """A source returned something we could not use. Not retried."""

    def __init__(self, message: str, source: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCRAPING_ERROR", 502, False, {"source": source, **(context or {})})
        self.source = source


class SourceBlockedError(ScrapingError):
    def __init__(self, source: str, kind: str = "bot_detection"):
        super().__init__(f"Access blocked by {source} ({kind})", source, {"block_kind": kind})
        self.code = "SOURCE_BLOCKED"
        self.status_code = 403
        self.kind = kind


class ProviderError(AppError):
    """An upstream API or site answered with an error status. Server-side errors are retryable."""

    def __init__(self, provider: str, status: int, detail: str = ""):
        super().__init__(
            f"{provider} API error: {status}" + (f" - {detail[:200]}" if detail else ""),
            "PROVIDER_ERROR",
            502,
            status >= 500,
            {"provider": provider, "status": status},
        )
        self.provider = provider
        self.status = status


class CircuitOpenError(AppError):
    def __init__(self, source: str, retry_in: float):
        super().__init__(
            f"Circuit open for {source}, retry in {retry_in:.0f}s",
            "CIRCUIT_OPEN",
            503,
            False,
            {"source": source, "retry_in": retry_in},
        )
        self.source = source


class QuotaExhaustedError(AppError):
    def __init__(self, provider: str):
        super().__init__(f"All API keys for {provider} are exhausted for today", "QUOTA_EXHAUSTED", 429, False)
        self.provider = provider


# --- Database ---


class DatabaseError(AppError):
    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message, "DATABASE_ERROR", 500, True, {"operation": operation})


class DatabaseConnectionError(DatabaseError):
    def __init__(self, message: str = "Failed to connect to database"):
        super().__init__(message)
        self.code = "DATABASE_CONNECTION_ERROR"
        self.status_code = 503


# --- Jobs ---


class JobProcessingError(AppError):
    """Wraps an unhandled per-run failure."""

    def __init__(self, job_id: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "JOB_PROCESSING_ERROR", 500, True, {"job_id": job_id})
        self.job_id = job_id
        self.__cause__ = cause


# --- Classification ---

_RETRYABLE_MARKERS = (
    "econnreset",
    "etimedout",
    "econnrefused",
    "socket hang up",
    "network",
    "timeout",
    "reset",
    "refused",
    "disconnected",
)


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, RateLimitError):
        return True
    message = str(error)
    return "429" in message or "Too Many Requests" in message


def is_retryable_error(error: BaseException) -> bool:
    """Rate limits are never retried; operational errors and transient network failures are."""
    if is_rate_limit_error(error):
        return False
    if isinstance(error, AppError):
        return error.is_operational
    if isinstance(error, (ConnectionError, TimeoutError, aiohttp.ClientConnectionError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


# --- User-facing rendering ---


@dataclass
class FriendlyError:
    title: str
    message: str
    suggestions: List[str] = field(default_factory=list)
    retryable: bool = False


def to_friendly_error(error: BaseException) -> FriendlyError:
    if isinstance(error, ValidationError):
        return FriendlyError("Invalid input", error.message, ["Check the search fields and try again"])
    if is_rate_limit_error(error):
        return FriendlyError(
            "Too many requests",
            "One of the data sources is throttling us.",
            ["Wait a minute before searching again", "Try a smaller result count"],
            retryable=True,
        )
    if isinstance(error, SourceBlockedError):
        return FriendlyError(
            "Source unavailable",
            f"{error.source} is blocking automated access right now.",
            ["Results from other sources are still included"],
        )
    if isinstance(error, (BrowserError, asyncio.TimeoutError, TimeoutError)):
        return FriendlyError(
            "Search timed out",
            "A data source took too long to respond.",
            ["Try again in a few minutes", "Narrow the location"],
            retryable=True,
        )
    if isinstance(error, DatabaseError):
        return FriendlyError(
            "Storage unavailable",
            "Results were found but history could not be saved.",
            ["Try again shortly"],
            retryable=True,
        )
    return FriendlyError(
        "Something went wrong",
        "An unexpected error occurred while searching.",
        ["Try again", "If it keeps happening, contact support"],
        retryable=is_retryable_error(error),
    )
