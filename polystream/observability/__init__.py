"""
polystream - Observability Module

- Structured JSON logging with context injection
- Prometheus metrics (Counter, Histogram, Gauge)
- OpenTelemetry client spans around provider calls

Usage:
    from polystream.observability import setup_logging, get_logger, get_metrics

    setup_logging(level="DEBUG")
    logger = get_logger(__name__)
    metrics = get_metrics()
"""

from .logging import (
    JSONFormatter,
    LogContext,
    StructuredLogger,
    bind_context,
    get_logger,
    setup_logging,
)
from .metrics import (
    MetricsCollector,
    get_metrics,
    reset_metrics,
    setup_metrics,
)
from .tracing import (
    TracingManager,
    get_tracer,
    reset_tracing,
    setup_tracing,
    trace_provider_call,
)

__all__ = [
    # Logging
    "JSONFormatter",
    "LogContext",
    "StructuredLogger",
    "bind_context",
    "get_logger",
    "setup_logging",
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "reset_metrics",
    "setup_metrics",
    # Tracing
    "TracingManager",
    "get_tracer",
    "reset_tracing",
    "setup_tracing",
    "trace_provider_call",
]
