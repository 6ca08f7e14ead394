"""
Shared metrics configuration for the property-management access layer.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional
import threading


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        # Service-specific metrics
        if self.service_name == "gateway":
            self._setup_gateway_metrics()
        elif self.service_name == "offline":
            self._setup_offline_metrics()

    def _setup_gateway_metrics(self):
        """Set up gateway-specific metrics."""
        self._metrics["response_cache_hits_total"] = Counter(
            "response_cache_hits_total",
            "Total response cache hits",
            registry=self.registry
        )

        self._metrics["response_cache_misses_total"] = Counter(
            "response_cache_misses_total",
            "Total response cache misses",
            registry=self.registry
        )

        self._metrics["response_cache_stores_total"] = Counter(
            "response_cache_stores_total",
            "Total responses written to the response cache",
            registry=self.registry
        )

        self._metrics["response_cache_invalidations_total"] = Counter(
            "response_cache_invalidations_total",
            "Total response cache entries invalidated by writes",
            registry=self.registry
        )

        self._metrics["upstream_requests_total"] = Counter(
            "upstream_requests_total",
            "Total requests forwarded to the property API",
            ["method", "result"],
            registry=self.registry
        )

    def _setup_offline_metrics(self):
        """Set up offline worker metrics."""
        self._metrics["offline_cache_strategy_total"] = Counter(
            "offline_cache_strategy_total",
            "Fetches handled per cache strategy",
            ["strategy", "result"],
            registry=self.registry
        )

        self._metrics["offline_requests_queued_total"] = Counter(
            "offline_requests_queued_total",
            "Mutating requests queued for background sync",
            registry=self.registry
        )

        self._metrics["offline_replay_total"] = Counter(
            "offline_replay_total",
            "Queued request replays",
            ["result"],
            registry=self.registry
        )

        self._metrics["offline_cache_cleanup_deleted_total"] = Counter(
            "offline_cache_cleanup_deleted_total",
            "Cache entries removed by cleanup sweeps",
            registry=self.registry
        )

        self._metrics["offline_replay_duration_seconds"] = Histogram(
            "offline_replay_duration_seconds",
            "Duration of a background sync replay pass",
            registry=self.registry
        )

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def _labelled(self, metric_name: str, labels: Dict[str, str]):
        metric = self._metrics[metric_name]
        return metric.labels(**labels) if labels else metric

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            with self._lock:
                self._labelled(metric_name, labels).inc(amount)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._labelled(metric_name, labels).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
