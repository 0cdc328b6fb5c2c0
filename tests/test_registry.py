"""
polystream - Adapter Registry Tests
"""

import httpx
import pytest

from polystream import get_adapter
from polystream.adapters import (
    ADAPTERS,
    AnthropicAdapter,
    GeminiAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    normalize_provider_id,
)
from polystream.core.errors import UnifiedError


class TestGetAdapter:
    """Test provider key resolution."""

    @pytest.mark.parametrize("key,expected", [
        ("openai", OpenAIAdapter),
        ("anthropic", AnthropicAdapter),
        ("gemini", GeminiAdapter),
        ("ollama", OllamaAdapter),
    ])
    def test_known_providers(self, key, expected):
        adapter = get_adapter(key)
        assert isinstance(adapter, expected)
        assert adapter.name == key

    @pytest.mark.parametrize("key", ["OpenAI", "  ollama ", "ANTHROPIC\n"])
    def test_case_and_whitespace_insensitive(self, key):
        assert get_adapter(key).name == key.strip().lower()

    @pytest.mark.parametrize("alias", ["google", "Vertex", " generativeai"])
    def test_gemini_aliases(self, alias):
        assert isinstance(get_adapter(alias), GeminiAdapter)
        assert normalize_provider_id(alias) == "gemini"

    @pytest.mark.parametrize("key", ["mistral", "", "open ai"])
    def test_unknown_provider(self, key):
        with pytest.raises(UnifiedError) as exc_info:
            get_adapter(key)
        assert exc_info.value.code == "invalid_request"
        assert exc_info.value.detail == "unknown_provider"
        assert exc_info.value.retryable is False

    def test_new_instance_per_call(self):
        assert get_adapter("openai") is not get_adapter("openai")

    def test_client_passed_through(self):
        client = httpx.AsyncClient()
        assert get_adapter("ollama", client=client).client is client

    def test_registry_covers_every_backend(self):
        assert sorted(ADAPTERS) == ["anthropic", "gemini", "ollama", "openai"]
