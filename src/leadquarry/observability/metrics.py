"""
Defines and manages Prometheus metrics for the discovery engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from leadquarry.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Importing this module more than once (test reloads, multiple containers in one
# process) must not raise duplicate registration errors.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "source_calls": Counter(
            "leadquarry_source_calls_total",
            "Source calls by outcome",
            ["source", "outcome"],
        ),
        "source_latency_seconds": Histogram(
            "leadquarry_source_latency_seconds",
            "Latency of a single source call",
            ["source"],
            buckets=(0.25, 0.5, 1, 2.5, 5, 10, 15, 30),
        ),
        "rate_limit_wait_seconds": Histogram(
            "leadquarry_rate_limit_wait_seconds",
            "Time a request waited for its per-domain slot",
            ["domain"],
            buckets=(0, 0.5, 1, 2, 3, 5, 10, 30, 60),
        ),
        "rate_limit_queue_depth": Gauge(
            "leadquarry_rate_limit_queue_depth",
            "Requests waiting per domain",
            ["domain"],
        ),
        "rate_limit_rejections": Counter(
            "leadquarry_rate_limit_rejections_total",
            "Requests rejected by backpressure",
            ["domain", "reason"],
        ),
        "api_key_usage": Counter(
            "leadquarry_api_key_usage_total",
            "API calls charged against provider keys",
            ["provider"],
        ),
        "api_quota_remaining": Gauge(
            "leadquarry_api_quota_remaining",
            "Remaining daily calls across all keys of a provider",
            ["provider"],
        ),
        "circuit_transitions": Counter(
            "leadquarry_circuit_transitions_total",
            "Circuit breaker state changes",
            ["source", "state"],
        ),
        "blocks_detected": Counter(
            "leadquarry_blocks_detected_total",
            "Rendered pages classified as blocked",
            ["kind"],
        ),
        "confidence_score": Histogram(
            "leadquarry_confidence_score",
            "Distribution of email confidence scores",
            buckets=(10, 30, 50, 70, 85, 100),
        ),
        "feedback_events": Counter(
            "leadquarry_feedback_events_total",
            "Feedback and bounce records by type",
            ["feedback_type"],
        ),
        "runs": Counter(
            "leadquarry_runs_total",
            "Orchestration runs by final status",
            ["status"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def start_metrics_server(config: MonitoringConfig) -> bool:
    """Expose metrics over HTTP when a port is configured."""
    if not config.enabled or config.prometheus_port is None:
        return False
    try:
        start_http_server(config.prometheus_port)
    except OSError as e:
        logger.warning("Could not start Prometheus exporter", port=config.prometheus_port, error=str(e))
        return False
    logger.info("Prometheus exporter started", port=config.prometheus_port)
    return True
