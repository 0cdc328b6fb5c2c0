"""
polystream - Resilient Multi-Provider Streaming Client

One event model over OpenAI, Anthropic, Gemini and Ollama, with bounded
retries, jittered backoff, timeouts and cooperative cancellation.
"""

__version__ = "0.1.0"

from .adapters import BaseAdapter, get_adapter
from .core import (
    CancellationToken,
    CompleteResult,
    FinishReason,
    Message,
    ModelOptions,
    RetryPolicy,
    StreamEvent,
    StreamEventType,
    UnifiedError,
    open_stream,
    request_json,
    request_sse,
)

__all__ = [
    "__version__",
    "BaseAdapter",
    "CancellationToken",
    "CompleteResult",
    "FinishReason",
    "Message",
    "ModelOptions",
    "RetryPolicy",
    "StreamEvent",
    "StreamEventType",
    "UnifiedError",
    "get_adapter",
    "open_stream",
    "request_json",
    "request_sse",
]
