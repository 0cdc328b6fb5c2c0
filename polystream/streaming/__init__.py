"""
polystream - Streaming Module

Wire-format decoders used by the stream executor and adapters:
- SSE block parser
- NDJSON line decoder
- Tool call delta accumulation
"""

from .ndjson import NdjsonDecoder
from .sse import DONE_SENTINEL, ParsedSseEvent, SseParser
from .tool_calls import (
    ToolCallAccumulator,
    ToolCallStreamTracker,
    parse_openai_tool_calls,
    tool_choice_to_openai,
    tools_to_openai,
)

__all__ = [
    # SSE
    "DONE_SENTINEL",
    "ParsedSseEvent",
    "SseParser",
    # NDJSON
    "NdjsonDecoder",
    # Tool calls
    "ToolCallAccumulator",
    "ToolCallStreamTracker",
    "parse_openai_tool_calls",
    "tool_choice_to_openai",
    "tools_to_openai",
]
