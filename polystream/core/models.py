"""
polystream - Core Data Models

Unified message, option and event models shared by every provider adapter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

if TYPE_CHECKING:
    from .errors import UnifiedError


# ============================================================
# Enums
# ============================================================

class Provider(str, Enum):
    """Supported completion backends."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"


class Role(str, Enum):
    """Message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(str, Enum):
    """Completion finish reasons."""
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALL = "tool_call"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


class StreamEventType(str, Enum):
    """Types of unified stream events."""
    START = "start"
    HANDSHAKE = "handshake"
    FIRST_BYTE = "first_byte"
    DELTA = "delta"
    TOOL_CALL = "tool_call"
    TOOL_RESULT_REQUEST = "tool_result_request"
    USAGE = "usage"
    DONE = "done"
    ERROR = "error"


TERMINAL_EVENT_TYPES = frozenset({StreamEventType.DONE, StreamEventType.ERROR})


# ============================================================
# Messages and options
# ============================================================

@dataclass(frozen=True)
class Message:
    """A single chat turn."""
    role: Role
    content: str
    name: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def tool(cls, content: str, name: Optional[str] = None) -> Message:
        return cls(role=Role.TOOL, content=content, name=name)


@dataclass(frozen=True)
class ToolDef:
    """Tool (function) the model may call."""
    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ToolChoiceName:
    """Force a specific tool by name."""
    name: str


ToolChoice = Union[str, ToolChoiceName]


@dataclass(frozen=True)
class ImageInput:
    """Inline image attached to the last user turn."""
    mime: str
    b64: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime};base64,{self.b64}"


@dataclass(frozen=True)
class ModelOptions:
    """
    Per-call generation options.

    Immutable for the whole call; adapters translate it into each
    backend's request shape and ignore fields the backend has no use for.
    """
    model: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    json_mode: bool = False
    stop: Optional[Tuple[str, ...]] = None
    tools: Optional[Tuple[ToolDef, ...]] = None
    tool_choice: Optional[ToolChoice] = None
    system: Optional[str] = None
    images: Optional[Tuple[ImageInput, ...]] = None

    def __post_init__(self):
        # Lists are accepted for convenience and frozen into tuples
        for name in ("stop", "tools", "images"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))


# ============================================================
# Results
# ============================================================

@dataclass(frozen=True)
class Usage:
    """Token usage as reported by the backend."""
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion


@dataclass(frozen=True)
class ToolCall:
    """A complete tool call requested by the model."""
    id: str
    name: str
    args_json: str


@dataclass(frozen=True)
class CompleteResult:
    """Result of a non-streaming completion."""
    text: str
    usage: Optional[Usage] = None
    finish_reason: Optional[FinishReason] = None
    tool_calls: Optional[Tuple[ToolCall, ...]] = None


# ============================================================
# Stream events
# ============================================================

@dataclass(frozen=True)
class StreamEvent:
    """
    Unified stream event.

    A tagged union: ``type`` selects which of the optional payload fields
    is populated. Use the constructors below rather than building events
    by hand.
    """
    type: StreamEventType
    request_id: str
    text: Optional[str] = None
    call: Optional[ToolCall] = None
    call_id: Optional[str] = None
    usage: Optional[Usage] = None
    finish_reason: Optional[FinishReason] = None
    error: Optional["UnifiedError"] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    @classmethod
    def start(cls, request_id: str, **meta: Any) -> StreamEvent:
        return cls(type=StreamEventType.START, request_id=request_id, meta=meta)

    @classmethod
    def handshake(cls, request_id: str) -> StreamEvent:
        return cls(type=StreamEventType.HANDSHAKE, request_id=request_id)

    @classmethod
    def first_byte(cls, request_id: str) -> StreamEvent:
        return cls(type=StreamEventType.FIRST_BYTE, request_id=request_id)

    @classmethod
    def delta(cls, request_id: str, text: str) -> StreamEvent:
        return cls(type=StreamEventType.DELTA, request_id=request_id, text=text)

    @classmethod
    def tool_call(cls, request_id: str, call: ToolCall) -> StreamEvent:
        return cls(type=StreamEventType.TOOL_CALL, request_id=request_id, call=call)

    @classmethod
    def tool_result_request(cls, request_id: str, call_id: str) -> StreamEvent:
        return cls(
            type=StreamEventType.TOOL_RESULT_REQUEST,
            request_id=request_id,
            call_id=call_id,
        )

    @classmethod
    def usage_report(cls, request_id: str, usage: Usage) -> StreamEvent:
        return cls(type=StreamEventType.USAGE, request_id=request_id, usage=usage)

    @classmethod
    def done(
        cls,
        request_id: str,
        finish_reason: Optional[FinishReason] = FinishReason.STOP,
    ) -> StreamEvent:
        return cls(
            type=StreamEventType.DONE,
            request_id=request_id,
            finish_reason=finish_reason,
        )

    @classmethod
    def failed(cls, request_id: str, error: "UnifiedError") -> StreamEvent:
        return cls(type=StreamEventType.ERROR, request_id=request_id, error=error)


# ============================================================
# Serialization
# ============================================================

def message_to_dict(msg: Message) -> Dict[str, Any]:
    """Convert a message to the plain ``{role, content}`` shape."""
    result: Dict[str, Any] = {"role": msg.role.value, "content": msg.content}
    if msg.name:
        result["name"] = msg.name
    return result


def coerce_messages(messages: List[Union[Message, Dict[str, Any]]]) -> List[Message]:
    """Accept plain dicts as well as ``Message`` instances, preserving order."""
    result = []
    for msg in messages:
        if isinstance(msg, Message):
            result.append(msg)
        else:
            result.append(Message(role=Role(msg["role"]), content=msg.get("content") or "", name=msg.get("name")))
    return result
