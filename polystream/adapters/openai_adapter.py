"""
polystream - OpenAI Provider Adapter

Adapter for OpenAI-shaped chat completions (``/v1/chat/completions``),
streamed over SSE.
"""

import json
from typing import Any, Dict, List, Optional

from .base import (
    BaseAdapter,
    CompleteCall,
    StreamCall,
    chat_messages,
    drop_none,
)
from ..core.http_client import request_json
from ..core.models import (
    CompleteResult,
    FinishReason,
    ModelOptions,
    Provider,
    Usage,
)
from ..observability.logging import get_logger
from ..streaming.tool_calls import (
    ToolCallStreamTracker,
    parse_openai_tool_calls,
    tool_choice_to_openai,
    tools_to_openai,
)

logger = get_logger("polystream.adapters.openai")

FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALL,
    "function_call": FinishReason.TOOL_CALL,
    "content_filter": FinishReason.CONTENT_FILTER,
}


class OpenAIAdapter(BaseAdapter):
    """
    Adapter for the OpenAI chat completions API.

    Supports:
    - Streaming text deltas (string or typed content parts)
    - Usage reporting from any chunk carrying ``usage``
    - JSON mode (``response_format: json_object``)
    - Tool calling (streamed deltas reassembled before ``done``)
    - Vision (images attached to the last user turn)
    """

    provider = Provider.OPENAI
    CHAT_PATH = "/v1/chat/completions"

    async def _stream(self, call: StreamCall) -> None:
        sink = call.sink
        if not call.api_key:
            sink.fail(self._missing_key())
            return

        tracker = ToolCallStreamTracker()
        finish: Dict[str, Optional[FinishReason]] = {"reason": None}

        def on_message(data: str) -> None:
            if data == "[DONE]":
                on_end()
                return
            try:
                chunk = json.loads(data)
            except ValueError:
                logger.debug("[OPENAI][SKIP] non-JSON payload", length=len(data))
                return
            if not isinstance(chunk, dict):
                return

            choices = chunk.get("choices")
            choice = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
            delta = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}

            sink.delta(content_text(delta.get("content")))
            if isinstance(delta.get("tool_calls"), list):
                tracker.update_from_openai(delta["tool_calls"])
            if choice.get("finish_reason"):
                finish["reason"] = map_finish_reason(choice["finish_reason"])

            usage = parse_usage(chunk.get("usage"))
            if usage is not None:
                sink.usage(usage)

        def on_end() -> None:
            for tool_call in tracker.to_tool_calls():
                sink.tool_call(tool_call)
            reason = finish["reason"]
            if reason is None:
                reason = FinishReason.TOOL_CALL if tracker.has_calls() else FinishReason.STOP
            sink.done(reason)

        await self._run_sse(
            call,
            f"{call.base_url}{self.CHAT_PATH}",
            self._headers(call.api_key),
            self._build_chat_payload(call.options, call.messages, stream=True),
            on_message,
            on_end,
        )

    async def _complete(self, call: CompleteCall) -> CompleteResult:
        if not call.api_key:
            raise self._missing_key()

        data = await request_json(
            f"{call.base_url}{self.CHAT_PATH}",
            headers=self._headers(call.api_key),
            body=self._build_chat_payload(call.options, call.messages, stream=False),
            token=call.token,
            timeout_ms=call.timeout_ms,
            client=self.client,
            trace=call.trace,
        )
        return self._parse_chat_response(data)

    # ============================================================
    # Private helper methods
    # ============================================================

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def _build_chat_payload(self, options: ModelOptions, messages, stream: bool) -> Dict[str, Any]:
        """Build OpenAI-specific chat payload."""
        payload: Dict[str, Any] = {
            "model": options.model,
            "messages": self._convert_messages(messages, options),
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_tokens": options.max_tokens,
            "stop": list(options.stop) if options.stop else None,
        }
        if stream:
            payload["stream"] = True
        if options.json_mode:
            payload["response_format"] = {"type": "json_object"}
        if options.tools:
            payload["tools"] = tools_to_openai(options.tools)
        if options.tool_choice:
            payload["tool_choice"] = tool_choice_to_openai(options.tool_choice)
        return drop_none(payload)

    def _convert_messages(self, messages, options: ModelOptions) -> List[Dict[str, Any]]:
        result: List[Dict[str, Any]] = chat_messages(messages, options)
        if not options.images:
            return result

        # Multimodal content goes on the last user turn
        for msg in reversed(result):
            if msg["role"] == "user":
                parts: List[Dict[str, Any]] = [{"type": "text", "text": msg["content"]}]
                for image in options.images:
                    parts.append({"type": "image_url", "image_url": {"url": image.data_url}})
                msg["content"] = parts
                break
        return result

    def _parse_chat_response(self, data: Any) -> CompleteResult:
        """Parse OpenAI response to unified format."""
        if not isinstance(data, dict):
            return CompleteResult(text="")
        choices = data.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
        message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
        tool_calls = parse_openai_tool_calls(message.get("tool_calls"))

        return CompleteResult(
            text=content_text(message.get("content")),
            usage=parse_usage(data.get("usage")),
            finish_reason=map_finish_reason(choice.get("finish_reason")),
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )


def content_text(content: Any) -> str:
    """Text of a message/delta ``content``: a string or a list of typed parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text") or ""
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def map_finish_reason(raw: Optional[str]) -> Optional[FinishReason]:
    if not raw or not isinstance(raw, str):
        return None
    return FINISH_REASONS.get(raw, FinishReason.STOP)


def parse_usage(raw: Any) -> Optional[Usage]:
    if not isinstance(raw, dict):
        return None
    return Usage(
        prompt=int(raw.get("prompt_tokens") or 0),
        completion=int(raw.get("completion_tokens") or 0),
    )
