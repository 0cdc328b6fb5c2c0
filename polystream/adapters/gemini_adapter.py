"""
polystream - Gemini Provider Adapter

Adapter for Google's Generative Language API
(``/v1beta/models/{model}:generateContent``).

Streaming is simulated: one non-streaming request, then the text is
replayed as 60-character deltas with a short pause between them.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .base import (
    BaseAdapter,
    CompleteCall,
    StreamCall,
    drop_none,
    system_text,
    user_text,
)
from ..core.cancellation import sleep
from ..core.errors import ErrorCode, UnifiedError, make_error
from ..core.http_client import request_json
from ..core.models import CompleteResult, FinishReason, Message, ModelOptions, Provider, Usage
from ..observability.logging import get_logger

logger = get_logger("polystream.adapters.gemini")

DEFAULT_MAX_TOKENS = 2000
SLICE_CHARS = 60
SLICE_DELAY_MS = 16

FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
}


class GeminiAdapter(BaseAdapter):
    """Adapter for Gemini generateContent."""

    provider = Provider.GEMINI

    async def _stream(self, call: StreamCall) -> None:
        sink = call.sink
        data = await self._generate(call.options, call.messages, call.base_url, call.api_key, call.token, call.timeout_ms, call.trace)
        sink.handshake()

        text = response_text(data)
        usage = parse_usage(data)
        if not text:
            blocked = self._blocked_error(data)
            if blocked is not None:
                sink.fail(blocked)
                return
            if usage is not None:
                sink.usage(usage)
            sink.done(response_finish_reason(data) or FinishReason.STOP)
            return

        sink.first_byte()
        pieces = slice_text(text)
        for index, piece in enumerate(pieces):
            if call.token.cancelled:
                break
            sink.delta(piece)
            if index < len(pieces) - 1:
                await sleep(SLICE_DELAY_MS, call.token)

        if call.token.cancelled:
            logger.trace(call.trace, "[ADAPTER_STREAM_ABORTED]", reason=call.token.reason)
            return
        if usage is not None:
            sink.usage(usage)
        sink.done(response_finish_reason(data) or FinishReason.STOP)

    async def _complete(self, call: CompleteCall) -> CompleteResult:
        data = await self._generate(call.options, call.messages, call.base_url, call.api_key, call.token, call.timeout_ms, call.trace)
        text = response_text(data)
        if not text:
            blocked = self._blocked_error(data)
            if blocked is not None:
                raise blocked
        return CompleteResult(
            text=text,
            usage=parse_usage(data),
            finish_reason=response_finish_reason(data) or FinishReason.STOP,
        )

    # ============================================================
    # Private helper methods
    # ============================================================

    async def _generate(self, options, messages, base_url, api_key, token, timeout_ms, trace) -> Any:
        url = f"{base_url}/v1beta/models/{quote(options.model, safe='.-_')}:generateContent?key={api_key or ''}"
        return await request_json(
            url,
            body=self._build_payload(options, messages),
            token=token,
            timeout_ms=timeout_ms,
            client=self.client,
            trace=trace,
        )

    def _build_payload(self, options: ModelOptions, messages: List[Message]) -> Dict[str, Any]:
        """System and user text collapse into a single part."""
        system = system_text(messages, options)
        user = user_text(messages)
        parts: List[Dict[str, Any]] = [{"text": f"{system}\n\n{user}" if system else user}]
        for image in options.images or ():
            parts.append({"inlineData": {"mimeType": image.mime, "data": image.b64}})

        generation_config = drop_none({
            "maxOutputTokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": options.temperature,
            "topP": options.top_p,
            "stopSequences": list(options.stop) if options.stop else None,
            "responseMimeType": "application/json" if options.json_mode else None,
        })
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }

    def _blocked_error(self, data: Any) -> Optional[UnifiedError]:
        """A safety block with no text becomes ``content_blocked``."""
        if not isinstance(data, dict):
            return None
        feedback = data.get("promptFeedback")
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if not reason and response_finish_reason(data) == FinishReason.CONTENT_FILTER:
            reason = _first_candidate(data).get("finishReason")
        if not reason:
            return None
        return make_error(
            ErrorCode.CONTENT_BLOCKED,
            f"Gemini blocked the response ({reason})",
            provider=self.name,
            provider_code=str(reason),
            raw=data,
        )


def _first_candidate(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    candidates = data.get("candidates")
    first = candidates[0] if isinstance(candidates, list) and candidates else {}
    return first if isinstance(first, dict) else {}


def response_text(data: Any) -> str:
    content = _first_candidate(data).get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    return "".join(p.get("text") or "" for p in parts if isinstance(p, dict))


def response_finish_reason(data: Any) -> Optional[FinishReason]:
    raw = _first_candidate(data).get("finishReason")
    if not raw or not isinstance(raw, str):
        return None
    return FINISH_REASONS.get(raw, FinishReason.STOP)


def parse_usage(data: Any) -> Optional[Usage]:
    meta = data.get("usageMetadata") if isinstance(data, dict) else None
    if not isinstance(meta, dict):
        return None
    return Usage(
        prompt=int(meta.get("promptTokenCount") or 0),
        completion=int(meta.get("candidatesTokenCount") or 0),
    )


def slice_text(text: str, size: int = SLICE_CHARS) -> List[str]:
    """Fixed-size slices; newlines are kept."""
    return [text[i:i + size] for i in range(0, len(text), size)]
