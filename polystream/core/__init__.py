"""
polystream Core Module

Unified data models, the error taxonomy, retry policy, cancellation
tokens, configuration and the resilient HTTP executors.
"""

from .models import (
    # Enums
    Provider,
    Role,
    FinishReason,
    StreamEventType,

    # Requests
    Message,
    ModelOptions,
    ToolDef,
    ToolChoiceName,
    ImageInput,

    # Results and events
    Usage,
    ToolCall,
    CompleteResult,
    StreamEvent,
    coerce_messages,
)
from .errors import (
    ErrorCategory,
    ErrorCode,
    ErrorDetails,
    HttpError,
    OperationCancelled,
    PolystreamError,
    TransportCode,
    UnifiedError,
    error_from_exception,
    error_from_response,
    from_http_error,
    make_error,
    to_unified_error,
)
from .retry import DEFAULT_RETRY, RetryPolicy, jittered_backoff, resolve_policy
from .cancellation import CancellationToken, merge_tokens, run_cancellable, sleep
from .config import Settings, get_settings, reset_settings, resolve_api_key
from .http_client import (
    SseStream,
    TransportEvent,
    TransportEventType,
    open_stream,
    request_json,
    request_sse,
)

__all__ = [
    # Enums
    "Provider",
    "Role",
    "FinishReason",
    "StreamEventType",
    # Requests
    "Message",
    "ModelOptions",
    "ToolDef",
    "ToolChoiceName",
    "ImageInput",
    # Results and events
    "Usage",
    "ToolCall",
    "CompleteResult",
    "StreamEvent",
    "coerce_messages",
    # Errors
    "ErrorCategory",
    "ErrorCode",
    "ErrorDetails",
    "HttpError",
    "OperationCancelled",
    "PolystreamError",
    "TransportCode",
    "UnifiedError",
    "error_from_exception",
    "error_from_response",
    "from_http_error",
    "make_error",
    "to_unified_error",
    # Retry
    "DEFAULT_RETRY",
    "RetryPolicy",
    "jittered_backoff",
    "resolve_policy",
    # Cancellation
    "CancellationToken",
    "merge_tokens",
    "run_cancellable",
    "sleep",
    # Configuration
    "Settings",
    "get_settings",
    "reset_settings",
    "resolve_api_key",
    # HTTP executors
    "SseStream",
    "TransportEvent",
    "TransportEventType",
    "open_stream",
    "request_json",
    "request_sse",
]
