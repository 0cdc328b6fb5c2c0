"""
polystream - Anthropic Provider Adapter

Adapter for Anthropic's Messages API (``/v1/messages``). The system
prompt and every user turn are folded into one synthetic user message.
"""

import json
from typing import Any, Dict, List, Optional

from .base import (
    BaseAdapter,
    CompleteCall,
    StreamCall,
    drop_none,
    system_text,
    user_text,
)
from ..core.errors import ErrorCode, UnifiedError, make_error
from ..core.http_client import request_json
from ..core.models import CompleteResult, FinishReason, Message, ModelOptions, Provider
from ..observability.logging import get_logger

logger = get_logger("polystream.adapters.anthropic")

API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 2000
JSON_INSTRUCTION = "Respond ONLY with strict, valid JSON. No prose."

STOP_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALL,
}

# In-stream ``{"type": "error"}`` records
ERROR_TYPES = {
    "overloaded_error": ErrorCode.SERVER,
    "api_error": ErrorCode.SERVER,
    "rate_limit_error": ErrorCode.RATE_LIMIT,
    "authentication_error": ErrorCode.AUTH,
    "permission_error": ErrorCode.PERMISSION,
    "invalid_request_error": ErrorCode.INVALID_REQUEST,
    "not_found_error": ErrorCode.INVALID_REQUEST,
}


class AnthropicAdapter(BaseAdapter):
    """
    Adapter for Anthropic API.

    Content deltas come from ``delta.text`` (``content_block_delta``
    records) or a nested ``content_block_delta.text``. The stream carries
    no usage events.
    """

    provider = Provider.ANTHROPIC
    MESSAGES_PATH = "/v1/messages"

    async def _stream(self, call: StreamCall) -> None:
        sink = call.sink
        stop: Dict[str, Optional[FinishReason]] = {"reason": None}

        def on_message(data: str) -> None:
            try:
                record = json.loads(data)
            except ValueError:
                logger.debug("[ANTHROPIC][SKIP] non-JSON payload", length=len(data))
                return
            if not isinstance(record, dict):
                return

            if record.get("type") == "error":
                sink.fail(self._stream_error(record.get("error")))
                return

            delta = record.get("delta") if isinstance(record.get("delta"), dict) else {}
            nested = record.get("content_block_delta") if isinstance(record.get("content_block_delta"), dict) else {}
            sink.delta(delta.get("text") or nested.get("text") or "")

            if isinstance(delta.get("stop_reason"), str):
                stop["reason"] = STOP_REASONS.get(delta["stop_reason"], FinishReason.STOP)

        def on_end() -> None:
            sink.done(stop["reason"] or FinishReason.STOP)

        await self._run_sse(
            call,
            f"{call.base_url}{self.MESSAGES_PATH}",
            self._headers(call.api_key),
            self._build_payload(call.options, call.messages, stream=True),
            on_message,
            on_end,
        )

    async def _complete(self, call: CompleteCall) -> CompleteResult:
        data = await request_json(
            f"{call.base_url}{self.MESSAGES_PATH}",
            headers=self._headers(call.api_key),
            body=self._build_payload(call.options, call.messages, stream=False),
            token=call.token,
            timeout_ms=call.timeout_ms,
            client=self.client,
            trace=call.trace,
        )
        content = data.get("content") if isinstance(data, dict) else None
        first = content[0] if isinstance(content, list) and content else {}
        text = first.get("text") if isinstance(first, dict) else None
        return CompleteResult(text=text or "", finish_reason=FinishReason.STOP)

    # ============================================================
    # Private helper methods
    # ============================================================

    def _headers(self, api_key: Optional[str]) -> Dict[str, str]:
        headers = {"anthropic-version": API_VERSION}
        if api_key:
            headers["x-api-key"] = api_key
        return headers

    def _build_payload(self, options: ModelOptions, messages: List[Message], stream: bool) -> Dict[str, Any]:
        """Build Anthropic-specific payload with one synthetic user turn."""
        system = system_text(messages, options)
        if options.json_mode:
            system = f"{system}\n\n{JSON_INSTRUCTION}" if system else JSON_INSTRUCTION
        user = user_text(messages)
        prompt = f"{system}\n\n{user}" if system else user

        content: Any = prompt
        if options.images:
            content = [
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": image.mime, "data": image.b64},
                }
                for image in options.images
            ]
            content.append({"type": "text", "text": prompt})

        payload = {
            "model": options.model,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [{"role": "user", "content": content}],
            "temperature": options.temperature,
            "top_p": options.top_p,
            "stop_sequences": list(options.stop) if options.stop else None,
        }
        if stream:
            payload["stream"] = True
        return drop_none(payload)

    def _stream_error(self, error: Any) -> UnifiedError:
        error = error if isinstance(error, dict) else {}
        error_type = error.get("type")
        return make_error(
            ERROR_TYPES.get(error_type, ErrorCode.UNKNOWN),
            error.get("message") or "Anthropic stream error",
            provider=self.name,
            provider_code=error_type,
            raw=error,
        )
