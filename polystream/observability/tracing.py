"""
polystream - OpenTelemetry Tracing

Client spans around provider calls. Without ``setup_tracing()`` spans go to
whatever tracer provider the host application installed (the OpenTelemetry
no-op provider by default).

Usage:
    from polystream.observability.tracing import setup_tracing

    setup_tracing(console_export=True)

    # Tests: keep spans in memory and leave the global provider alone
    exporter = InMemorySpanExporter()
    setup_tracing(exporter=exporter, set_global=False)
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import SpanKind, Status, StatusCode

from .. import __version__

TRACER_NAME = "polystream"


class TracingManager:
    """Owns an SDK tracer provider and the tracer handed to adapters."""

    def __init__(
        self,
        service_name: str = "polystream",
        exporter: Optional[SpanExporter] = None,
        console_export: bool = False,
        set_global: bool = True,
    ):
        """
        Initialize tracing.

        Args:
            service_name: Name of the service
            exporter: Span exporter to attach (synchronous processor)
            console_export: Whether to export spans to console (for debugging)
            set_global: Install the provider as the global tracer provider
        """
        resource = Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: __version__,
        })
        self.provider = TracerProvider(resource=resource)

        if exporter is not None:
            self.provider.add_span_processor(SimpleSpanProcessor(exporter))
        if console_export:
            self.provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

        if set_global:
            trace.set_tracer_provider(self.provider)

        self.tracer = self.provider.get_tracer(TRACER_NAME, __version__)

    def get_tracer(self) -> trace.Tracer:
        return self.tracer

    def shutdown(self):
        self.provider.shutdown()


_tracing_instance: Optional[TracingManager] = None


def setup_tracing(
    service_name: str = "polystream",
    exporter: Optional[SpanExporter] = None,
    console_export: bool = False,
    set_global: bool = True,
) -> TracingManager:
    """Install a tracer provider for polystream spans."""
    global _tracing_instance
    _tracing_instance = TracingManager(
        service_name=service_name,
        exporter=exporter,
        console_export=console_export,
        set_global=set_global,
    )
    return _tracing_instance


def reset_tracing() -> None:
    """Forget the manager installed by ``setup_tracing`` (for testing)."""
    global _tracing_instance
    if _tracing_instance is not None:
        _tracing_instance.shutdown()
    _tracing_instance = None


def get_tracer() -> trace.Tracer:
    if _tracing_instance is not None:
        return _tracing_instance.get_tracer()
    return trace.get_tracer(TRACER_NAME, __version__)


@contextmanager
def trace_provider_call(
    provider: str,
    model: str,
    operation: str,
    attributes: Optional[Dict[str, Any]] = None,
) -> Iterator[trace.Span]:
    """
    Client span for one adapter call.

    Usage:
        with trace_provider_call("openai", "gpt-4o", "stream") as span:
            ...
            span.set_attribute("polystream.finish_reason", "stop")
    """
    attrs = {
        "ai.provider": provider,
        "ai.model": model,
        "ai.operation": operation,
    }
    if attributes:
        attrs.update({k: v for k, v in attributes.items() if v is not None})

    with get_tracer().start_as_current_span(
        f"polystream.{operation}",
        kind=SpanKind.CLIENT,
        attributes=attrs,
    ) as span:
        yield span


def mark_span_error(span: trace.Span, code: str, message: str) -> None:
    span.set_attribute("polystream.error_code", code)
    span.set_status(Status(StatusCode.ERROR, message))
