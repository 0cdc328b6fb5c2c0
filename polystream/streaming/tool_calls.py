"""
polystream - Tool Call Streaming

OpenAI-shaped tool calls arrive in pieces:
1. A delta with the call index, id and function name
2. Several deltas carrying partial arguments JSON
3. ``finish_reason == "tool_calls"`` once every call is complete

The tracker reassembles them into ``ToolCall`` values, ordered by index.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..core.models import ToolCall, ToolChoice, ToolChoiceName, ToolDef


@dataclass
class ToolCallAccumulator:
    """Partial state of one streamed tool call."""
    index: int
    id: Optional[str] = None
    function_name: Optional[str] = None
    arguments_buffer: str = ""

    def update(
        self,
        id: Optional[str] = None,
        function_name: Optional[str] = None,
        arguments_delta: str = "",
    ):
        if id:
            self.id = id
        if function_name:
            self.function_name = function_name
        if arguments_delta:
            self.arguments_buffer += arguments_delta

    def to_tool_call(self) -> ToolCall:
        return ToolCall(
            id=self.id or f"call_{uuid.uuid4().hex[:24]}",
            name=self.function_name or "",
            args_json=self.arguments_buffer or "{}",
        )


class ToolCallStreamTracker:
    """
    Tracks parallel tool calls during one stream.

    Each call is keyed by its ``index`` and accumulated separately.
    """

    def __init__(self):
        self._calls: Dict[int, ToolCallAccumulator] = {}

    def update_from_openai(self, deltas: Sequence[Dict[str, Any]]):
        """Apply ``choices[0].delta.tool_calls`` from one chunk."""
        for position, delta in enumerate(deltas or ()):
            if not isinstance(delta, dict):
                continue
            index = delta.get("index", position)
            function = delta.get("function") or {}
            if index not in self._calls:
                self._calls[index] = ToolCallAccumulator(index=index)
            self._calls[index].update(
                id=delta.get("id"),
                function_name=function.get("name"),
                arguments_delta=function.get("arguments") or "",
            )

    def has_calls(self) -> bool:
        return bool(self._calls)

    def to_tool_calls(self) -> List[ToolCall]:
        return [self._calls[i].to_tool_call() for i in sorted(self._calls)]


# ============================================================
# OpenAI wire helpers
# ============================================================

def parse_openai_tool_calls(raw: Any) -> List[ToolCall]:
    """Read ``message.tool_calls`` from a non-streaming response."""
    calls = []
    for item in raw or ():
        if not isinstance(item, dict):
            continue
        function = item.get("function") or {}
        calls.append(ToolCall(
            id=item.get("id") or f"call_{uuid.uuid4().hex[:24]}",
            name=function.get("name") or "",
            args_json=function.get("arguments") or "{}",
        ))
    return calls


def tools_to_openai(tools: Sequence[ToolDef]) -> List[Dict[str, Any]]:
    result = []
    for tool in tools:
        function: Dict[str, Any] = {"name": tool.name}
        if tool.description:
            function["description"] = tool.description
        function["parameters"] = tool.parameters or {"type": "object", "properties": {}}
        result.append({"type": "function", "function": function})
    return result


def tool_choice_to_openai(choice: ToolChoice) -> Any:
    if isinstance(choice, ToolChoiceName):
        return {"type": "function", "function": {"name": choice.name}}
    return choice
