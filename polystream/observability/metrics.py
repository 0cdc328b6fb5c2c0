"""
polystream - Prometheus Metrics

Metrics exposed:
- polystream_requests_total: Counter of adapter calls by provider, operation, outcome
- polystream_request_duration_seconds: Histogram of call latency
- polystream_time_to_first_byte_seconds: Histogram of stream time to first byte
- polystream_retries_total: Counter of executor retries by transport and reason
- polystream_tokens_total: Counter of reported tokens (prompt/completion)
- polystream_active_streams: Gauge of streams currently in flight

Usage:
    from polystream.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.record_request(provider="openai", operation="stream", outcome="done", duration_seconds=1.5)

    # Isolated registry (tests, multi-tenant hosts)
    from prometheus_client import CollectorRegistry
    setup_metrics(CollectorRegistry())
"""

from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """Holds every polystream metric, bound to one registry."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.requests_total = Counter(
            "polystream_requests_total",
            "Total adapter calls",
            labelnames=["provider", "operation", "outcome"],
            registry=registry,
        )

        # AI calls typically range from 0.1s to 60s+
        self.request_duration = Histogram(
            "polystream_request_duration_seconds",
            "Adapter call duration in seconds",
            labelnames=["provider", "operation"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0, float("inf")),
            registry=registry,
        )

        self.time_to_first_byte = Histogram(
            "polystream_time_to_first_byte_seconds",
            "Time from stream start to the first body byte",
            labelnames=["provider"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, float("inf")),
            registry=registry,
        )

        self.retries_total = Counter(
            "polystream_retries_total",
            "Total executor retries",
            labelnames=["transport", "reason"],  # transport = json/sse/stream
            registry=registry,
        )

        self.tokens_total = Counter(
            "polystream_tokens_total",
            "Total tokens reported by providers",
            labelnames=["provider", "type"],  # type = prompt/completion
            registry=registry,
        )

        self.active_streams = Gauge(
            "polystream_active_streams",
            "Streams currently in flight",
            labelnames=["provider"],
            registry=registry,
        )

    def record_request(
        self,
        provider: str,
        operation: str,
        outcome: str,
        duration_seconds: float,
    ):
        """Record a finished adapter call. ``outcome`` is "ok"/"done" or an error code."""
        self.requests_total.labels(
            provider=provider,
            operation=operation,
            outcome=outcome,
        ).inc()
        self.request_duration.labels(
            provider=provider,
            operation=operation,
        ).observe(duration_seconds)

    def record_first_byte(self, provider: str, seconds: float):
        self.time_to_first_byte.labels(provider=provider).observe(seconds)

    def record_retry(self, transport: str, reason: str):
        self.retries_total.labels(transport=transport, reason=reason).inc()

    def record_tokens(self, provider: str, prompt_tokens: int, completion_tokens: int):
        """Record token usage."""
        if prompt_tokens:
            self.tokens_total.labels(provider=provider, type="prompt").inc(prompt_tokens)
        if completion_tokens:
            self.tokens_total.labels(provider=provider, type="completion").inc(completion_tokens)

    def track_stream(self, provider: str) -> "ActiveStreamTracker":
        """Context manager to track in-flight streams."""
        return ActiveStreamTracker(self, provider)

    def render(self) -> bytes:
        """Prometheus text exposition of this collector's registry."""
        return generate_latest(self.registry)


class ActiveStreamTracker:
    """Context manager for tracking active streams."""

    def __init__(self, collector: MetricsCollector, provider: str):
        self.collector = collector
        self.provider = provider

    def __enter__(self):
        self.collector.active_streams.labels(provider=self.provider).inc()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.collector.active_streams.labels(provider=self.provider).dec()


# Module-level state
_default_metrics: Optional[MetricsCollector] = None
_metrics_instance: Optional[MetricsCollector] = None


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Make a collector bound to ``registry`` the active one.

    Safe to call multiple times with the same registry.
    """
    global _metrics_instance, _default_metrics

    if _metrics_instance is not None and _metrics_instance.registry is registry:
        return _metrics_instance

    if registry is REGISTRY:
        # Metrics can only be registered once on the global registry
        if _default_metrics is None:
            _default_metrics = MetricsCollector(REGISTRY)
        _metrics_instance = _default_metrics
    else:
        _metrics_instance = MetricsCollector(registry)
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Active collector, created on the global registry on first use."""
    if _metrics_instance is None:
        return setup_metrics(REGISTRY)
    return _metrics_instance


def reset_metrics() -> None:
    """Drop the active collector (for testing)."""
    global _metrics_instance
    _metrics_instance = None
