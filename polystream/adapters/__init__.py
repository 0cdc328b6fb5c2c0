"""
polystream - Provider Adapters

Each adapter converts between the unified event model and one
provider's wire format. ``get_adapter`` resolves a provider key
(case- and whitespace-insensitive, with aliases) to an adapter instance.
"""

from typing import Dict, Optional, Type

import httpx

from ..core.errors import ErrorCode, make_error
from .anthropic_adapter import AnthropicAdapter
from .base import BaseAdapter, EventSink
from .gemini_adapter import GeminiAdapter
from .ollama_adapter import OllamaAdapter
from .openai_adapter import OpenAIAdapter

ADAPTERS: Dict[str, Type[BaseAdapter]] = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "gemini": GeminiAdapter,
    "ollama": OllamaAdapter,
}

ALIASES: Dict[str, str] = {
    "google": "gemini",
    "vertex": "gemini",
    "generativeai": "gemini",
}


def normalize_provider_id(key: str) -> str:
    """
    Canonical provider id for ``key``.

    Raises:
        UnifiedError: ``invalid_request`` for an unknown provider
    """
    normalized = (key or "").strip().lower()
    normalized = ALIASES.get(normalized, normalized)
    if normalized not in ADAPTERS:
        raise make_error(
            ErrorCode.INVALID_REQUEST,
            f"Unknown provider: {key!r}",
            detail="unknown_provider",
        )
    return normalized


def get_adapter(key: str, client: Optional[httpx.AsyncClient] = None) -> BaseAdapter:
    """
    Get an adapter for a provider key.

    Args:
        key: Provider id or alias (``"OpenAI"``, ``" google "``)
        client: Optional shared ``httpx.AsyncClient``

    Returns:
        A new adapter instance
    """
    return ADAPTERS[normalize_provider_id(key)](client=client)


__all__ = [
    "ADAPTERS",
    "ALIASES",
    "AnthropicAdapter",
    "BaseAdapter",
    "EventSink",
    "GeminiAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "get_adapter",
    "normalize_provider_id",
]
