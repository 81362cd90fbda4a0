"""
Prometheus metrics for the resilience and trust components.
"""

from typing import Any, Dict, Optional
import threading

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class ResilienceMetrics:
    """Collector for cache, breaker, verifier and broker metrics.

    Each instance registers its metrics on its own registry so tests and
    multiple runtimes in one process never collide on metric names.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        self._metrics["cache_backend_fallbacks_total"] = Counter(
            "cache_backend_fallbacks_total",
            "Remote cache failures that switched the cache to the in-process store",
            ["operation"],
            registry=self.registry
        )

        self._metrics["cache_remote_active"] = Gauge(
            "cache_remote_active",
            "1 when the cache targets the remote backend, 0 on fallback",
            registry=self.registry
        )

        self._metrics["circuit_breaker_state"] = Gauge(
            "circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["breaker"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_transitions_total"] = Counter(
            "circuit_breaker_transitions_total",
            "Circuit breaker state transitions",
            ["breaker", "to_state"],
            registry=self.registry
        )

        self._metrics["token_verifications_total"] = Counter(
            "token_verifications_total",
            "Bearer token verification outcomes",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["jwks_refresh_total"] = Counter(
            "jwks_refresh_total",
            "JWKS refresh attempts",
            ["status"],
            registry=self.registry
        )

        self._metrics["jwks_refresh_duration_seconds"] = Histogram(
            "jwks_refresh_duration_seconds",
            "JWKS refresh duration in seconds",
            registry=self.registry
        )

        self._metrics["broker_messages_total"] = Counter(
            "broker_messages_total",
            "Pub/sub messages by direction and outcome",
            ["direction", "outcome"],
            registry=self.registry
        )

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).observe(value)

    def sample(self, metric_name: str, **labels) -> Optional[float]:
        """Read back the current value of a sample, mostly for health output."""
        return self.registry.get_sample_value(metric_name, labels or None)
