from .config import (
    ApiFallbackConfig,
    CircuitBreakerConfig,
    Config,
    MonitoringConfig,
    OrchestratorConfig,
    ProxyConfig,
    RateLimitConfig,
    RetryConfig,
    SharedStateConfig,
    SQLiteConfig,
    StealthConfig,
    validate_config,
)

__all__ = [
    "ApiFallbackConfig",
    "CircuitBreakerConfig",
    "Config",
    "MonitoringConfig",
    "OrchestratorConfig",
    "ProxyConfig",
    "RateLimitConfig",
    "RetryConfig",
    "SharedStateConfig",
    "SQLiteConfig",
    "StealthConfig",
    "validate_config",
]
