"""Self-monitoring metrics for the mock server."""
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST


class SelfMetrics:
    """Counters describing what the mock has served, in a private registry."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry=None, prefix="prommock_"):
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.requests_total = Counter(
            f"{prefix}requests_total",
            "Total number of API requests served",
            ["handler", "source", "code"],
            registry=registry
        )

        self.fixture_hits_total = Counter(
            f"{prefix}fixture_hits_total",
            "Total number of requests answered from a fixture route",
            ["route"],
            registry=registry
        )

        self.injected_errors_total = Counter(
            f"{prefix}injected_errors_total",
            "Total number of responses replaced by an injected error",
            ["handler"],
            registry=registry
        )

        self.samples_ingested_total = Counter(
            f"{prefix}samples_ingested_total",
            "Total number of samples accepted through remote write",
            registry=registry
        )

        self.write_errors_total = Counter(
            f"{prefix}write_errors_total",
            "Total number of rejected remote write requests",
            ["reason"],
            registry=registry
        )

        self.active_series = Gauge(
            f"{prefix}active_series",
            "Number of series held in storage",
            registry=registry
        )

        self.request_duration_seconds = Histogram(
            f"{prefix}request_duration_seconds",
            "Time spent answering API requests, including injected latency",
            ["handler"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
            registry=registry
        )

    def render(self) -> bytes:
        """Text exposition of the private registry."""
        return generate_latest(self.registry)
