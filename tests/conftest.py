"""
polystream - Pytest Configuration

Configures:
- Integration test marker (skipped unless RUN_INTEGRATION=1)
- A clean environment and fresh metrics registry per test
- httpx MockTransport helpers for fake provider endpoints
"""

import asyncio
import json
import os
from typing import Any, Dict, Iterable, List, Optional

import httpx
import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import CollectorRegistry

from polystream.core.config import reset_settings
from polystream.core.models import StreamEvent, StreamEventType
from polystream.core.retry import RetryPolicy
from polystream.observability.metrics import reset_metrics, setup_metrics
from polystream.observability.tracing import reset_tracing, setup_tracing


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))

_ENV_VARS = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "OLLAMA_API_KEY",
    "OPENAI_BASE_URL",
    "ANTHROPIC_BASE_URL",
    "GEMINI_BASE_URL",
    "OLLAMA_BASE_URL",
    "POLYSTREAM_TRACE",
    "POLYSTREAM_LOG_LEVEL",
    "POLYSTREAM_OPEN_TIMEOUT_MS",
    "POLYSTREAM_REQUEST_TIMEOUT_MS",
)

# Retries without waiting
FAST_RETRY = {"base_delay_ms": 0, "max_delay_ms": 0}


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


# ============================================================
# Isolation
# ============================================================

@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Start every test without provider keys or polystream settings."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(autouse=True)
def metrics():
    """Fresh Prometheus registry per test."""
    collector = setup_metrics(CollectorRegistry())
    yield collector
    reset_metrics()


@pytest.fixture
def no_backoff(monkeypatch):
    """Default retry policy without delays (adapters use the default)."""
    from polystream.core import retry

    monkeypatch.setattr(retry, "DEFAULT_RETRY", RetryPolicy(base_delay_ms=0, max_delay_ms=0))


@pytest.fixture
def span_exporter():
    """Capture spans in memory without touching the global provider."""
    exporter = InMemorySpanExporter()
    setup_tracing(exporter=exporter, set_global=False)
    yield exporter
    reset_tracing()


# ============================================================
# Fake HTTP endpoints
# ============================================================

class ChunkStream(httpx.AsyncByteStream):
    """
    Response body delivered chunk by chunk.

    ``delay`` is awaited before each chunk; ``error`` is raised after the
    last chunk to simulate a dropped connection.
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.chunks = list(chunks)
        self.delay = delay
        self.error = error

    async def __aiter__(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk
        if self.error is not None:
            raise self.error


class RecordingHandler:
    """
    MockTransport handler returning queued responses in order.

    Each queued item is an ``httpx.Response``, an exception to raise, or a
    callable taking the request. The last item repeats once the queue is
    exhausted; make it a callable when it may be served more than once
    (a Response object is single-use). Every request is recorded.
    """

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item

    @property
    def calls(self) -> int:
        return len(self.requests)

    def json_body(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)


@pytest.fixture
def make_client():
    """
    Build an ``httpx.AsyncClient`` over a ``RecordingHandler``.

    Usage:
        client, handler = make_client(httpx.Response(200, json={...}))
    """
    def factory(*responses: Any):
        handler = RecordingHandler(*responses)
        return httpx.AsyncClient(transport=httpx.MockTransport(handler)), handler

    return factory


def sse_body(*payloads: Any, done: bool = True) -> bytes:
    """Encode payloads (dicts become JSON) as an SSE body."""
    blocks = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        blocks.append(f"data: {data}\n\n")
    if done:
        blocks.append("data: [DONE]\n\n")
    return "".join(blocks).encode()


def ndjson_body(*records: Dict[str, Any]) -> bytes:
    return "".join(json.dumps(r) + "\n" for r in records).encode()


def sse_response(*payloads: Any, done: bool = True) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=sse_body(*payloads, done=done))


def streamed_response(chunks: Iterable[bytes], status: int = 200, **kwargs) -> httpx.Response:
    """Response whose body is read incrementally."""
    return httpx.Response(status, stream=ChunkStream(chunks, **kwargs))


@pytest.fixture
def fakes():
    """Helpers for building fake responses inside tests."""
    class Fakes:
        sse_body = staticmethod(sse_body)
        ndjson_body = staticmethod(ndjson_body)
        sse_response = staticmethod(sse_response)
        streamed_response = staticmethod(streamed_response)
        ChunkStream = ChunkStream
        FAST_RETRY = dict(FAST_RETRY)

    return Fakes


# ============================================================
# Event collection
# ============================================================

class EventRecorder:
    """Callable ``on_event`` sink that keeps every event."""

    def __init__(self):
        self.events: List[StreamEvent] = []

    def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[str]:
        return [e.type.value for e in self.events]

    @property
    def text(self) -> str:
        return "".join(e.text or "" for e in self.events if e.type == StreamEventType.DELTA)

    @property
    def terminal(self) -> Optional[StreamEvent]:
        terminals = [e for e in self.events if e.is_terminal]
        assert len(terminals) <= 1, f"more than one terminal event: {self.types}"
        return terminals[0] if terminals else None

    def of_type(self, event_type: StreamEventType) -> List[StreamEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()

