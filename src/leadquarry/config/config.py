"""
Configuration management for leadquarry using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

PROVIDERS = ("google_places", "yelp_fusion", "foursquare", "here", "tomtom", "opencage")

# --- Nested Configuration Models ---


class StealthConfig(BaseModel):
    """Anti-detection switches for sources that render pages."""

    enabled: bool = True
    user_agent_rotation: bool = True
    fingerprint_randomization: bool = True
    human_behavior: bool = True
    timing_randomization: bool = True
    canvas_noise: bool = True
    audio_noise: bool = True
    webrtc_protection: bool = True
    mobile_ratio: float = Field(default=0.1, ge=0.0, le=1.0, description="Share of fingerprints that are mobile.")


class DomainPreset(BaseModel):
    requests_per_minute: int = Field(gt=0)
    min_delay_ms: int = Field(ge=0)


def _default_domain_presets() -> Dict[str, DomainPreset]:
    presets = {
        "google.com": (10, 3000),
        "maps.google.com": (10, 3000),
        "yelp.com": (15, 2500),
        "yellowpages.com": (20, 2000),
        "bbb.org": (15, 2500),
        "healthgrades.com": (20, 2000),
        "zocdoc.com": (15, 2500),
        "angi.com": (20, 2000),
        "avvo.com": (15, 2500),
        "instagram.com": (10, 3000),
        "facebook.com": (10, 3000),
        "linkedin.com": (10, 3000),
    }
    return {domain: DomainPreset(requests_per_minute=rpm, min_delay_ms=delay) for domain, (rpm, delay) in presets.items()}


class RateLimitConfig(BaseModel):
    """Per-domain request pacing."""

    enabled: bool = True
    per_domain: int = Field(default=20, gt=0, description="Requests per minute per domain.")
    min_delay_ms: int = Field(default=2000, ge=0)
    max_delay_ms: int = Field(default=5000, ge=0)
    respect_robots: bool = True
    window_seconds: float = 60.0
    queue_timeout_seconds: float = 60.0
    max_queue_size: int = 100
    robots_ttl_seconds: float = 3600.0
    robots_timeout_seconds: float = 5.0
    domain_presets: Dict[str, DomainPreset] = Field(default_factory=_default_domain_presets)


class ProviderCredentials(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None


class ProxyConfig(BaseModel):
    """Outbound proxy rotation for rendered sources."""

    enabled: bool = False
    provider: Literal["brightdata", "oxylabs", "smartproxy", "custom"] = "brightdata"
    brightdata: ProviderCredentials = Field(
        default_factory=lambda: ProviderCredentials(host="brd.superproxy.io", port=22225)
    )
    oxylabs: ProviderCredentials = Field(default_factory=ProviderCredentials)
    smartproxy: ProviderCredentials = Field(default_factory=ProviderCredentials)
    custom_url: Optional[str] = None
    rotate_every: int = Field(default=10, ge=0, description="Rotate after N requests, 0 disables.")
    rotate_on_error: bool = True
    sticky_session: bool = False
    fallback_direct: bool = True


KeyList = Annotated[List[str], NoDecode]


def _split_keys(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [key.strip() for key in value.split(",") if key.strip()]
    return [str(key).strip() for key in value if str(key).strip()]


class ApiKeys(BaseModel):
    """Key lists per provider. Environment values may be comma-separated."""

    google_places: KeyList = Field(default_factory=list)
    yelp_fusion: KeyList = Field(default_factory=list)
    foursquare: KeyList = Field(default_factory=list)
    here: KeyList = Field(default_factory=list)
    tomtom: KeyList = Field(default_factory=list)
    opencage: KeyList = Field(default_factory=list)

    @field_validator("*", mode="before")
    @classmethod
    def split_comma_separated(cls, v: Any) -> List[str]:
        return _split_keys(v)

    def for_provider(self, provider: str) -> List[str]:
        return list(getattr(self, provider, []))


class QuotaLimits(BaseModel):
    """Daily calls allowed per key."""

    google_places: int = 200
    yelp_fusion: int = 5000
    foursquare: int = 3333
    here: int = 8333
    tomtom: int = 2500
    opencage: int = 2500

    def for_provider(self, provider: str) -> int:
        return int(getattr(self, provider, 0))


class ApiFallbackConfig(BaseModel):
    enabled: bool = True
    prefer_apis: bool = True
    keys: ApiKeys = Field(default_factory=ApiKeys)
    quota_limits: QuotaLimits = Field(default_factory=QuotaLimits)
    max_parallel_providers: int = Field(default=3, ge=1)
    request_timeout_seconds: float = 10.0


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0


class SharedStateConfig(BaseModel):
    """Redis mirror for rate-limit and quota state shared across instances."""

    enabled: bool = False
    redis_url: str = Field(default="redis://localhost:6379/0")
    key_prefix: str = "leadquarry:"
    state_ttl_seconds: int = 3600
    unavailable_backoff_seconds: float = 30.0


class SQLiteConfig(BaseModel):
    """Configuration for the feedback and pattern store."""

    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".leadquarry" / "leadquarry.db",
        description="SQLite database file path",
    )
    pool_size: int = Field(default=5, description="Size of the connection pool.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for higher concurrency.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class OrchestratorConfig(BaseModel):
    worker_pool_size: int = Field(default=5, ge=1, le=10)
    api_timeout_seconds: float = 10.0
    directory_timeout_seconds: float = 12.0
    rendered_timeout_seconds: float = 15.0
    name_match_threshold: int = Field(default=90, ge=0, le=100)
    run_deadline_seconds: Optional[float] = Field(
        default=None, description="Optional wall-clock cap for one run. None keeps per-call timeouts only."
    )
    max_results: int = Field(default=500, ge=1)
    headless: bool = True
    event_buffer_size: int = 256
    verify_emails: bool = Field(default=True, description="MX, SMTP and catch-all checks on scored emails.")


class MonitoringConfig(BaseModel):
    """Configuration for the observability and monitoring system."""

    enabled: bool = True
    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus metrics exporter.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "leadquarry"
    version: str = "0.1.0"
    stealth: StealthConfig = Field(default_factory=StealthConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    api_fallback: ApiFallbackConfig = Field(default_factory=ApiFallbackConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    shared_state: SharedStateConfig = Field(default_factory=SharedStateConfig)
    storage: SQLiteConfig = Field(default_factory=SQLiteConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="LEADQUARRY_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("leadquarry.yaml", "leadquarry.yml"):
        path = current_dir / name
        if path.exists():
            return path
    return None


def validate_config(config: Config) -> List[str]:
    """Return human-readable warnings for settings that will not behave as intended."""
    warnings: List[str] = []

    if config.proxy.enabled:
        provider = config.proxy.provider
        if provider == "custom":
            if not config.proxy.custom_url:
                warnings.append("Proxy is enabled with provider 'custom' but no custom_url is set")
        else:
            creds: ProviderCredentials = getattr(config.proxy, provider)
            if not creds.username or not creds.password:
                warnings.append(f"Proxy is enabled but {provider} credentials are missing")

    if config.api_fallback.enabled:
        configured = [p for p in PROVIDERS if config.api_fallback.keys.for_provider(p)]
        if not configured:
            warnings.append("API fallback is enabled but no API keys are configured")

    if config.rate_limit.min_delay_ms > config.rate_limit.max_delay_ms:
        warnings.append("rate_limit.min_delay_ms is greater than rate_limit.max_delay_ms")

    if not config.stealth.enabled:
        warnings.append("Stealth is disabled; rendered sources are likely to be blocked")

    if config.shared_state.enabled and not config.shared_state.redis_url:
        warnings.append("Shared state is enabled but redis_url is empty")

    return warnings
