"""
Dependency injection container for leadquarry components.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog

from leadquarry.apis.key_pool import KeyPool
from leadquarry.apis.providers import ApiSearchService
from leadquarry.config.config import Config, find_config_file
from leadquarry.crawler.proxy import ProxyManager
from leadquarry.crawler.rate_limiter import DomainRateLimiter
from leadquarry.crawler.robots_parser import RobotsCache
from leadquarry.emails.feedback import FeedbackService
from leadquarry.emails.patterns import PatternStore
from leadquarry.emails.scoring import ConfidenceScorer
from leadquarry.emails.verifier import EmailVerifier
from leadquarry.observability.logging import configure_logging
from leadquarry.observability.metrics import start_metrics_server
from leadquarry.orchestrator.orchestrator import SourceOrchestrator
from leadquarry.resilience.circuit_breaker import CircuitBreakerManager
from leadquarry.resilience.retry import RetryPolicy
from leadquarry.shared_state import SharedStateMirror
from leadquarry.sources.registry import SourceRegistry
from leadquarry.storage.sqlite_manager import SQLiteManager

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if hasattr(self._instance, "initialize") and callable(getattr(self._instance, "initialize", None)):
                await self._instance.initialize()  # type: ignore
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance and hasattr(self._instance, "close") and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Central container wiring the discovery engine together.

    Stateful collaborators (key pool, rate limiter, circuit breakers, pattern
    cache) are created once per container so that their state spans runs.
    Components holding connections are created lazily and closed on shutdown
    in reverse dependency order.
    """

    def __init__(self, config_path: Optional[Path] = None, config: Optional[Config] = None) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.container_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        """Initialize the container and load configuration."""
        if self.config is None:
            self.load_config()
        assert self.config is not None

        configure_logging(self.config.monitoring)
        start_metrics_server(self.config.monitoring)
        self._create_instances()
        self.is_running = True

        self.logger.info(
            "Dependency container initialized",
            container_id=self.container_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def load_config(self) -> None:
        path = self.config_path or find_config_file()
        if path and path.exists():
            self.config = Config.from_yaml(path)
            self.config_path = path
        else:
            self.config = Config()

    def _create_instances(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")
        config = self.config

        self._instances = {
            "mirror": LazyInstance(SharedStateMirror, config.shared_state),
            "robots": LazyInstance(
                RobotsCache, ttl=config.rate_limit.robots_ttl_seconds, timeout=config.rate_limit.robots_timeout_seconds
            ),
            "storage": LazyInstance(SQLiteManager, config.storage),
        }
        self.breakers = CircuitBreakerManager.from_config(config.circuit_breaker)
        self.retry = RetryPolicy.from_config(config.retry)
        self.proxies = ProxyManager(config.proxy)
        self.verifier = EmailVerifier()

        self._key_pool: Optional[KeyPool] = None
        self._limiter: Optional[DomainRateLimiter] = None
        self._api: Optional[ApiSearchService] = None
        self._patterns: Optional[PatternStore] = None
        self._orchestrator: Optional[SourceOrchestrator] = None

    async def _get(self, name: str) -> Any:
        async with self._instances_lock:
            return await self._instances[name].get()

    async def get_mirror(self) -> SharedStateMirror:
        return await self._get("mirror")

    async def get_robots(self) -> RobotsCache:
        return await self._get("robots")

    async def get_storage(self) -> SQLiteManager:
        return await self._get("storage")

    async def get_key_pool(self) -> KeyPool:
        if self._key_pool is None:
            self._key_pool = KeyPool.from_config(self.config.api_fallback, mirror=await self.get_mirror())
        return self._key_pool

    async def get_rate_limiter(self) -> DomainRateLimiter:
        if self._limiter is None:
            robots = await self.get_robots() if self.config.rate_limit.respect_robots else None
            self._limiter = DomainRateLimiter(
                self.config.rate_limit,
                robots=robots,
                mirror=await self.get_mirror(),
                timing_randomization=self.config.stealth.timing_randomization,
            )
        return self._limiter

    async def get_api_service(self) -> ApiSearchService:
        if self._api is None:
            fallback = self.config.api_fallback
            self._api = ApiSearchService(
                await self.get_key_pool(),
                timeout=fallback.request_timeout_seconds,
                max_parallel=fallback.max_parallel_providers,
            )
        return self._api

    async def get_pattern_store(self) -> PatternStore:
        if self._patterns is None:
            self._patterns = PatternStore(await self.get_storage())
        return self._patterns

    async def get_scorer(self) -> ConfidenceScorer:
        return ConfidenceScorer(await self.get_storage(), await self.get_pattern_store())

    async def get_feedback(self) -> FeedbackService:
        return FeedbackService(await self.get_storage(), await self.get_pattern_store())

    async def get_orchestrator(self) -> SourceOrchestrator:
        if self._orchestrator is None:
            config = self.config
            registry = SourceRegistry(
                await self.get_rate_limiter(),
                api=await self.get_api_service() if config.api_fallback.enabled else None,
                robots=await self.get_robots() if config.rate_limit.respect_robots else None,
                proxies=self.proxies,
                stealth=config.stealth,
                orchestrator=config.orchestrator,
            )
            self._orchestrator = SourceOrchestrator(
                registry,
                breakers=self.breakers,
                retry=self.retry,
                scorer=await self.get_scorer(),
                config=config.orchestrator,
                api_enabled=config.api_fallback.enabled,
                prefer_apis=config.api_fallback.prefer_apis,
                verifier=self.verifier if config.orchestrator.verify_emails else None,
            )
        return self._orchestrator

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", container_id=self.container_id)

        for handler in self._shutdown_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        if self._orchestrator is not None:
            await self._orchestrator.close()
        if self._api is not None:
            await self._api.close()
        if self._limiter is not None:
            await self._limiter.close()

        for name in ("storage", "robots", "mirror"):
            instance = self._instances.get(name)
            if instance is None:
                continue
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up instance", instance=name, error=str(e))

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")
