"""
polystream - Provider Adapter Base

Abstract base class for provider adapters. Each backend (OpenAI,
Anthropic, Gemini, Ollama) implements ``_stream`` and ``_complete``; the
base class wraps them with the pieces every adapter shares:

1. Resolving base URL and API key (explicit argument, then environment)
2. Emitting unified events through a per-request sink that enforces
   ``start`` first and exactly one terminal event
3. Mapping transport failures onto the unified error taxonomy
4. Logging, metrics and a client span per call
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx

from ..core.cancellation import CancellationToken
from ..core.config import get_settings, resolve_api_key
from ..core.errors import (
    ErrorCode,
    PolystreamError,
    UnifiedError,
    error_from_exception,
    from_http_error,
    make_error,
)
from ..core.http_client import TransportEvent, TransportEventType, request_sse
from ..core.models import (
    CompleteResult,
    FinishReason,
    Message,
    ModelOptions,
    Provider,
    Role,
    StreamEvent,
    ToolCall,
    Usage,
    coerce_messages,
    message_to_dict,
)
from ..observability.logging import bind_context, get_logger
from ..observability.metrics import get_metrics
from ..observability.tracing import mark_span_error, trace_provider_call

logger = get_logger("polystream.adapters")

OnStreamEvent = Callable[[StreamEvent], None]
MessagesInput = Sequence[Union[Message, Dict[str, Any]]]


class EventSink:
    """
    Per-request event emitter.

    Drops anything after the terminal event, emits ``handshake`` and
    ``first_byte`` at most once and skips empty deltas.
    """

    def __init__(self, request_id: str, on_event: OnStreamEvent, provider: str, trace: bool = False):
        self.request_id = request_id
        self.provider = provider
        self.trace = trace
        self._on_event = on_event
        self._started_at = time.perf_counter()
        self._handshake = False
        self._first_byte = False
        self._first_delta = True
        self.terminal: Optional[StreamEvent] = None

    @property
    def finished(self) -> bool:
        return self.terminal is not None

    @property
    def outcome(self) -> str:
        if self.terminal is None:
            return "incomplete"
        if self.terminal.error is not None:
            return self.terminal.error.code
        return "done"

    def emit(self, event: StreamEvent) -> bool:
        if self.terminal is not None:
            logger.debug("[ADAPTER][DROP] event after terminal", event_type=event.type.value)
            return False
        if event.is_terminal:
            self.terminal = event
        self._on_event(event)
        return True

    def start(self, **meta: Any) -> None:
        self.emit(StreamEvent.start(self.request_id, **meta))

    def handshake(self) -> None:
        if not self._handshake:
            self._handshake = True
            logger.trace(self.trace, "[ADAPTER_CONNECTION_OPENED]")
            self.emit(StreamEvent.handshake(self.request_id))

    def first_byte(self) -> None:
        if not self._first_byte:
            self._first_byte = True
            get_metrics().record_first_byte(self.provider, time.perf_counter() - self._started_at)
            self.emit(StreamEvent.first_byte(self.request_id))

    def delta(self, text: str) -> None:
        if not text:
            return
        if self._first_delta:
            self._first_delta = False
            logger.trace(self.trace, "[ADAPTER_FIRST_CHUNK]", size=len(text))
        self.emit(StreamEvent.delta(self.request_id, text))

    def tool_call(self, call: ToolCall) -> None:
        if self.emit(StreamEvent.tool_call(self.request_id, call)):
            self.emit(StreamEvent.tool_result_request(self.request_id, call.id))

    def usage(self, usage: Usage) -> None:
        if self.emit(StreamEvent.usage_report(self.request_id, usage)):
            get_metrics().record_tokens(self.provider, usage.prompt, usage.completion)

    def done(self, finish_reason: Optional[FinishReason] = FinishReason.STOP) -> None:
        if self.emit(StreamEvent.done(self.request_id, finish_reason)):
            logger.trace(self.trace, "[ADAPTER_STREAM_END]", finish_reason=finish_reason.value if finish_reason else None)

    def fail(self, error: UnifiedError) -> None:
        if self.emit(StreamEvent.failed(self.request_id, error)):
            logger.warning(
                f"[ADAPTER_STREAM_ERROR] {error}",
                code=error.code,
                status=error.status,
                detail=error.detail,
            )


@dataclass
class StreamCall:
    """Everything an adapter needs for one ``stream()`` call."""
    request_id: str
    token: CancellationToken
    options: ModelOptions
    messages: List[Message]
    sink: EventSink
    base_url: str
    api_key: Optional[str]
    timeout_ms: Optional[int]
    trace: bool


@dataclass
class CompleteCall:
    """Everything an adapter needs for one ``complete()`` call."""
    options: ModelOptions
    messages: List[Message]
    base_url: str
    api_key: Optional[str]
    token: Optional[CancellationToken]
    timeout_ms: Optional[int]
    trace: bool


class BaseAdapter(ABC):
    """
    Abstract base class for provider adapters.

    ``stream()`` never raises for request failures: they arrive as the
    terminal ``error`` event. ``complete()`` raises ``UnifiedError``.
    """

    provider: Provider

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client

    @property
    def name(self) -> str:
        return self.provider.value

    # ============================================================
    # Public contract
    # ============================================================

    async def stream(
        self,
        request_id: str,
        token: CancellationToken,
        options: ModelOptions,
        messages: MessagesInput,
        on_event: OnStreamEvent,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        trace: Optional[bool] = None,
    ) -> None:
        """
        Stream a completion as unified events.

        Args:
            request_id: Correlation ID copied onto every event
            token: Cancellation token; cancelling ends the stream with a
                ``cancelled`` error
            options: Generation options
            messages: Conversation in caller order
            on_event: Receives ``start``, progress events and exactly one
                terminal ``done`` or ``error``
            base_url: Provider base URL (default from environment)
            api_key: Provider API key (default from environment)
            timeout_ms: Stream open timeout (request timeout for Gemini)
            trace: Log lifecycle steps at INFO
        """
        traced = get_settings().trace if trace is None else bool(trace)
        sink = EventSink(request_id, on_event, self.name, traced)
        call = StreamCall(
            request_id=request_id,
            token=token or CancellationToken(),
            options=options,
            messages=coerce_messages(list(messages)),
            sink=sink,
            base_url=self._base_url(base_url),
            api_key=resolve_api_key(self.name, api_key),
            timeout_ms=timeout_ms,
            trace=traced,
        )
        started = time.perf_counter()

        with bind_context(request_id=request_id, provider=self.name, model=options.model), \
                trace_provider_call(self.name, options.model, "stream", {"polystream.request_id": request_id}) as span, \
                get_metrics().track_stream(self.name):
            logger.trace(traced, "[ADAPTER_REQUEST]", stream=True, base_url=call.base_url)
            sink.start(provider=self.name, model=options.model)
            try:
                await self._stream(call)
            except PolystreamError as exc:
                sink.fail(error_from_exception(exc, self.name))

            if not sink.finished:
                if call.token.cancelled:
                    sink.fail(make_error(
                        ErrorCode.CANCELLED,
                        f"Request was canceled ({call.token.reason})",
                        provider=self.name,
                        detail=call.token.reason,
                    ))
                else:
                    sink.done(FinishReason.STOP)

            terminal = sink.terminal
            if terminal is not None and terminal.error is not None:
                mark_span_error(span, terminal.error.code, str(terminal.error))
            elif terminal is not None and terminal.finish_reason is not None:
                span.set_attribute("polystream.finish_reason", terminal.finish_reason.value)

        get_metrics().record_request(self.name, "stream", sink.outcome, time.perf_counter() - started)

    async def complete(
        self,
        options: ModelOptions,
        messages: MessagesInput,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        timeout_ms: Optional[int] = None,
        trace: Optional[bool] = None,
    ) -> CompleteResult:
        """
        Run a non-streaming completion.

        Raises:
            UnifiedError: on any request failure
        """
        traced = get_settings().trace if trace is None else bool(trace)
        call = CompleteCall(
            options=options,
            messages=coerce_messages(list(messages)),
            base_url=self._base_url(base_url),
            api_key=resolve_api_key(self.name, api_key),
            token=token,
            timeout_ms=timeout_ms,
            trace=traced,
        )
        started = time.perf_counter()
        outcome = "ok"

        with bind_context(provider=self.name, model=options.model), \
                trace_provider_call(self.name, options.model, "complete") as span:
            logger.trace(traced, "[ADAPTER_REQUEST]", stream=False, base_url=call.base_url)
            try:
                result = await self._complete(call)
            except PolystreamError as exc:
                err = error_from_exception(exc, self.name)
                outcome = err.code
                mark_span_error(span, err.code, str(err))
                logger.warning(f"[ADAPTER_COMPLETE_ERROR] {err}", code=err.code, status=err.status)
                raise err from exc
            finally:
                get_metrics().record_request(self.name, "complete", outcome, time.perf_counter() - started)

            if result.usage is not None:
                get_metrics().record_tokens(self.name, result.usage.prompt, result.usage.completion)
            if result.finish_reason is not None:
                span.set_attribute("polystream.finish_reason", result.finish_reason.value)
        return result

    async def list_models(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> List[str]:
        """Model identifiers the backend reports. Never raises."""
        return []

    # ============================================================
    # Provider hooks
    # ============================================================

    @abstractmethod
    async def _stream(self, call: StreamCall) -> None:
        """Emit progress and a terminal event through ``call.sink``."""

    @abstractmethod
    async def _complete(self, call: CompleteCall) -> CompleteResult:
        """Return the completion; raise ``PolystreamError`` on failure."""

    # ============================================================
    # Helper methods for subclasses
    # ============================================================

    def _base_url(self, explicit: Optional[str]) -> str:
        if explicit and explicit.strip():
            return explicit.strip().rstrip("/")
        return get_settings().base_url(self.name)

    def _missing_key(self) -> UnifiedError:
        return make_error(
            ErrorCode.AUTH,
            "Missing API key",
            provider=self.name,
            status=401,
            retryable=False,
            detail="no_key",
        )

    def _map_transport_error(self, event: TransportEvent) -> UnifiedError:
        return from_http_error(event.error, self.name)

    async def _run_sse(
        self,
        call: StreamCall,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        on_message: Callable[[str], None],
        on_end: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Drive ``request_sse`` for an SSE-speaking backend.

        ``on_message`` sees each data payload; ``on_end`` runs when the
        transport finishes cleanly (default: ``done`` with ``stop``).
        """
        sink = call.sink

        def on_transport(event: TransportEvent) -> None:
            if event.type == TransportEventType.OPEN:
                return
            if event.type == TransportEventType.ERROR:
                sink.fail(self._map_transport_error(event))
            elif event.type == TransportEventType.DONE:
                if on_end is not None:
                    on_end()
                else:
                    sink.done(FinishReason.STOP)
            elif event.data:
                try:
                    on_message(event.data)
                except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
                    # Payload parsed but not in the expected shape
                    logger.debug(f"[ADAPTER][SKIP] malformed {self.name} payload", error=str(exc), length=len(event.data))

        handle = request_sse(
            url,
            on_event=on_transport,
            headers=headers,
            body=body,
            token=call.token,
            open_timeout_ms=call.timeout_ms,
            on_connect=lambda status, _headers: sink.handshake(),
            on_first_byte=sink.first_byte,
            client=self.client,
            trace=call.trace,
        )
        await handle


# ============================================================
# Message shaping shared by adapters
# ============================================================

def system_text(messages: Sequence[Message], options: ModelOptions) -> Optional[str]:
    """First system message, else ``options.system``; blank counts as absent."""
    for msg in messages:
        if msg.role == Role.SYSTEM:
            return msg.content or None
    return options.system or None


def user_text(messages: Sequence[Message]) -> str:
    return "\n\n".join(m.content for m in messages if m.role == Role.USER)


def chat_messages(messages: Sequence[Message], options: ModelOptions) -> List[Dict[str, Any]]:
    """
    ``{role, content}`` list for chat-style backends.

    Tool turns are dropped; ``options.system`` is prepended when the
    conversation has no system message.
    """
    result = [message_to_dict(m) for m in messages if m.role != Role.TOOL]
    if options.system and not any(m.role == Role.SYSTEM for m in messages):
        result.insert(0, {"role": Role.SYSTEM.value, "content": options.system})
    return result


def drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Remove keys whose value is None so providers see their defaults."""
    return {k: v for k, v in payload.items() if v is not None}
