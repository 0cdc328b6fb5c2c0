"""
polystream - Ollama Provider Adapter

Adapter for a local Ollama server. Streams NDJSON from ``/api/chat`` and
falls back to ``/api/generate`` when the chat endpoint returns 404.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .base import (
    BaseAdapter,
    CompleteCall,
    StreamCall,
    chat_messages,
    drop_none,
    system_text,
    user_text,
)
from ..core.cancellation import CancellationToken, run_cancellable
from ..core.errors import (
    ErrorCategory,
    ErrorCode,
    HttpError,
    PolystreamError,
    TransportCode,
    UnifiedError,
    http_error,
    make_error,
)
from ..core.http_client import open_stream, request_json
from ..core.models import (
    CompleteResult,
    FinishReason,
    Message,
    ModelOptions,
    Provider,
    Role,
    Usage,
)
from ..observability.logging import get_logger
from ..streaming.ndjson import NdjsonDecoder

logger = get_logger("polystream.adapters.ollama")

DONE_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
}


@dataclass
class _Counts:
    prompt: Optional[int] = None
    completion: Optional[int] = None

    def update(self, record: Dict[str, Any]) -> None:
        if isinstance(record.get("prompt_eval_count"), int):
            self.prompt = record["prompt_eval_count"]
        if isinstance(record.get("eval_count"), int):
            self.completion = record["eval_count"]

    def usage(self) -> Optional[Usage]:
        if self.prompt is None and self.completion is None:
            return None
        return Usage(prompt=self.prompt or 0, completion=self.completion or 0)


class OllamaAdapter(BaseAdapter):
    """
    Adapter for Ollama.

    Every NDJSON record may carry text (``message.content`` for chat,
    ``response`` for generate). The record with ``done: true`` carries the
    token counts, reported as one ``usage`` event right before ``done``.
    """

    provider = Provider.OLLAMA
    CHAT_PATH = "/api/chat"
    GENERATE_PATH = "/api/generate"
    MODEL_LIST_PATHS = ("/api/tags", "/api/models")

    async def _stream(self, call: StreamCall) -> None:
        headers = self._headers(call.api_key)
        try:
            await self._stream_from(call, self.CHAT_PATH, self._build_chat_payload(call.options, call.messages), headers)
        except HttpError as exc:
            if exc.status != 404 or call.sink.finished:
                raise
            logger.trace(call.trace, "[OLLAMA][FALLBACK] chat endpoint missing, using generate")
            await self._stream_from(
                call,
                self.GENERATE_PATH,
                self._build_generate_payload(call.options, call.messages, stream=True),
                headers,
            )

    async def _complete(self, call: CompleteCall) -> CompleteResult:
        system = system_text(call.messages, call.options)
        user = user_text(call.messages)
        body = self._build_generate_payload(call.options, call.messages, stream=False)
        body["prompt"] = f"{system}\n\n{user}" if system else user

        data = await request_json(
            f"{call.base_url}{self.GENERATE_PATH}",
            headers=self._headers(call.api_key),
            body=body,
            token=call.token,
            timeout_ms=call.timeout_ms,
            client=self.client,
            trace=call.trace,
        )
        if not isinstance(data, dict):
            return CompleteResult(text="", finish_reason=FinishReason.STOP)
        counts = _Counts()
        counts.update(data)
        return CompleteResult(
            text=record_text(data),
            usage=counts.usage(),
            finish_reason=done_reason(data.get("done_reason")),
        )

    async def list_models(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> List[str]:
        """Union of the model ids reported by every listing endpoint."""
        root = self._base_url(base_url)
        headers = self._headers(api_key)
        names: List[str] = []
        for path in self.MODEL_LIST_PATHS:
            try:
                data = await request_json(
                    f"{root}{path}",
                    method="GET",
                    headers=headers,
                    retry={"retries": 0},
                    client=self.client,
                )
            except PolystreamError as exc:
                logger.debug(f"[OLLAMA][MODELS] {path} unavailable", code=exc.code, status=exc.status)
                continue
            for name in model_names(data):
                if name not in names:
                    names.append(name)
        return names

    # ============================================================
    # Private helper methods
    # ============================================================

    async def _stream_from(self, call: StreamCall, path: str, body: Dict[str, Any], headers: Dict[str, str]) -> None:
        sink = call.sink
        decoder = NdjsonDecoder()
        counts = _Counts()

        def handle(record: Any) -> None:
            if not isinstance(record, dict) or sink.finished:
                return
            if record.get("error"):
                sink.fail(make_error(
                    ErrorCode.UNKNOWN,
                    str(record["error"]),
                    provider=self.name,
                    retryable=False,
                    raw=record,
                ))
                return
            sink.delta(record_text(record))
            counts.update(record)
            if record.get("done"):
                usage = counts.usage()
                if usage is not None:
                    sink.usage(usage)
                sink.done(done_reason(record.get("done_reason")))

        async def read(response: httpx.Response) -> None:
            async for chunk in response.aiter_text():
                if not chunk:
                    continue
                attempt_token.clear_timer()
                sink.first_byte()
                for record in decoder.feed(chunk):
                    handle(record)
                if sink.finished:
                    return

        attempt_token = CancellationToken(parent=call.token)
        if call.timeout_ms:
            attempt_token.cancel_after(call.timeout_ms, "open_timeout")
        try:
            async with open_stream(
                f"{call.base_url}{path}",
                headers=headers,
                body=body,
                token=attempt_token,
                client=self.client,
                trace=call.trace,
            ) as response:
                sink.handshake()
                try:
                    await run_cancellable(read(response), attempt_token)
                except (httpx.HTTPError, OSError) as exc:
                    logger.warning("[OLLAMA][INTERRUPTED]", error=str(exc))
                    sink.fail(self._interrupted(exc))
                    return
        except PolystreamError as exc:
            if attempt_token.cancelled and not call.token.cancelled:
                raise self._open_timeout(call.timeout_ms) from exc
            raise
        finally:
            attempt_token.close()

        for record in decoder.flush():
            handle(record)
        if decoder.skipped:
            logger.debug("[OLLAMA][SKIPPED]", lines=decoder.skipped)
        if not sink.finished and not call.token.cancelled:
            usage = counts.usage()
            if usage is not None:
                sink.usage(usage)
            sink.done(FinishReason.STOP)

    def _interrupted(self, exc: BaseException) -> UnifiedError:
        return make_error(
            ErrorCode.NETWORK,
            str(exc) or "Stream interrupted",
            provider=self.name,
            retryable=False,
            detail="stream_interrupted",
            raw=exc,
        )

    def _open_timeout(self, timeout_ms: Optional[int]) -> HttpError:
        return http_error(
            TransportCode.TIMEOUT,
            "Stream open timed out.",
            retryable=True,
            category=ErrorCategory.TIMEOUT,
            detail=f"open_timeout ({timeout_ms}ms)",
        )

    def _headers(self, api_key: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def _build_chat_payload(self, options: ModelOptions, messages: List[Message]) -> Dict[str, Any]:
        chat = chat_messages(messages, options)
        if options.images:
            for msg in reversed(chat):
                if msg["role"] == Role.USER.value:
                    msg["images"] = [image.b64 for image in options.images]
                    break
        return drop_none({
            "model": options.model,
            "messages": chat,
            "stream": True,
            "format": "json" if options.json_mode else None,
            "options": self._options(options),
        })

    def _build_generate_payload(self, options: ModelOptions, messages: List[Message], stream: bool) -> Dict[str, Any]:
        """``/api/generate`` body with a ``role: content`` transcript prompt."""
        lines = []
        system = system_text(messages, options)
        if system:
            lines.append(f"system: {system}")
        lines.extend(f"user: {m.content}" for m in messages if m.role == Role.USER)
        return drop_none({
            "model": options.model,
            "prompt": "\n".join(lines),
            "stream": stream,
            "format": "json" if options.json_mode else None,
            "images": [image.b64 for image in options.images] if options.images else None,
            "options": self._options(options),
        })

    def _options(self, options: ModelOptions) -> Optional[Dict[str, Any]]:
        values = drop_none({
            "temperature": options.temperature,
            "top_p": options.top_p,
            "num_predict": options.max_tokens,
            "stop": list(options.stop) if options.stop else None,
        })
        return values or None


def record_text(record: Dict[str, Any]) -> str:
    message = record.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str) and message["content"]:
        return message["content"]
    response = record.get("response")
    return response if isinstance(response, str) else ""


def model_names(data: Any) -> List[str]:
    """Model ids from ``{"models": [...]}`` or a bare list."""
    items = data.get("models") if isinstance(data, dict) else data
    if not isinstance(items, list):
        return []
    names = []
    for item in items:
        if isinstance(item, str):
            name = item
        elif isinstance(item, dict):
            name = item.get("model") or item.get("name") or item.get("tag")
        else:
            name = None
        if name:
            names.append(name)
    return names


def done_reason(raw: Any) -> FinishReason:
    if not isinstance(raw, str):
        return FinishReason.STOP
    return DONE_REASONS.get(raw, FinishReason.STOP)
