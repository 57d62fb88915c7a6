"""
Shared metrics configuration for the VIVK access governance layer.
"""

from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest

# Gauge values for circuit breaker states
BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """Centralized metrics collector for a service.

    Each collector owns its registry so that several services (or test
    instances) can live in one process without duplicate registrations.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common and governance metrics for the service."""

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

        self._setup_governance_metrics()

    def _setup_governance_metrics(self):
        """Set up rate limiting, breaker and retry metrics."""
        self._metrics["rate_limit_decisions_total"] = Counter(
            "rate_limit_decisions_total",
            "Rate limit decisions by policy and outcome",
            ["policy", "outcome"],
            registry=self.registry
        )

        self._metrics["rate_limit_degraded_total"] = Counter(
            "rate_limit_degraded_total",
            "Rate limit checks served by the in-process fallback store",
            ["policy"],
            registry=self.registry
        )

        self._metrics["governance_rejections_total"] = Counter(
            "governance_rejections_total",
            "Requests rejected by the governance gate",
            ["code"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_state"] = Gauge(
            "circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["name"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_rejections_total"] = Counter(
            "circuit_breaker_rejections_total",
            "Calls rejected by an open circuit breaker",
            ["name"],
            registry=self.registry
        )

        self._metrics["retry_attempts_total"] = Counter(
            "retry_attempts_total",
            "Retry attempts by outcome",
            ["operation", "outcome"],
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
        """Record health check."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str):
        """Record an error."""
        self._metrics["errors_total"].labels(
            error_type=error_type,
            service=self.service_name
        ).inc()

    def record_rate_limit_decision(self, policy: str, allowed: bool, degraded: bool = False):
        """Record a rate limit decision."""
        outcome = "allowed" if allowed else "denied"
        self._metrics["rate_limit_decisions_total"].labels(policy=policy, outcome=outcome).inc()
        if degraded:
            self._metrics["rate_limit_degraded_total"].labels(policy=policy).inc()

    def record_rejection(self, code: str):
        """Record a governance gate rejection."""
        self._metrics["governance_rejections_total"].labels(code=code).inc()

    def set_breaker_state(self, name: str, state: str):
        """Publish the current state of a circuit breaker."""
        self._metrics["circuit_breaker_state"].labels(name=name).set(
            BREAKER_STATE_VALUES.get(state, 0)
        )

    def record_breaker_rejection(self, name: str):
        """Record a call rejected by an open breaker."""
        self._metrics["circuit_breaker_rejections_total"].labels(name=name).inc()

    def record_retry_attempt(self, operation: str, outcome: str):
        """Record a retry attempt outcome ("success", "retry", "exhausted", "fatal")."""
        self._metrics["retry_attempts_total"].labels(operation=operation, outcome=outcome).inc()

    def get_metric(self, name: str) -> Any:
        """Get a metric by name."""
        return self._metrics.get(name)

    def export(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Create a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
