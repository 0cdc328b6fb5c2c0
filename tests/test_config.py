"""
polystream - Configuration Tests
"""

import pytest

from polystream.core.config import (
    DEFAULT_OPEN_TIMEOUT_MS,
    get_settings,
    reset_settings,
    resolve_api_key,
)


class TestSettings:
    """Test environment-driven settings."""

    def test_defaults(self):
        settings = get_settings()
        assert settings.trace is False
        assert settings.log_level == "INFO"
        assert settings.open_timeout_ms == DEFAULT_OPEN_TIMEOUT_MS
        assert settings.request_timeout_ms is None
        assert settings.base_url("openai") == "https://api.openai.com"
        assert settings.base_url("ollama") == "http://localhost:11434"

    def test_cached_until_reset(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("POLYSTREAM_TRACE", "true")
        assert get_settings() is first
        reset_settings()
        assert get_settings().trace is True

    def test_base_url_override_strips_trailing_slash(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_BASE_URL", "http://gpu-box:11434/")
        assert get_settings().base_url("ollama") == "http://gpu-box:11434"

    def test_timeouts(self, monkeypatch):
        monkeypatch.setenv("POLYSTREAM_OPEN_TIMEOUT_MS", "2500")
        monkeypatch.setenv("POLYSTREAM_REQUEST_TIMEOUT_MS", "30000")
        settings = get_settings()
        assert settings.open_timeout_ms == 2500
        assert settings.request_timeout_ms == 30000

    @pytest.mark.parametrize("value", ["abc", "-1", "1.5"])
    def test_invalid_timeout_rejected(self, monkeypatch, value):
        monkeypatch.setenv("POLYSTREAM_OPEN_TIMEOUT_MS", value)
        with pytest.raises(ValueError, match="POLYSTREAM_OPEN_TIMEOUT_MS"):
            get_settings()

    def test_invalid_log_level_rejected(self, monkeypatch):
        monkeypatch.setenv("POLYSTREAM_LOG_LEVEL", "chatty")
        with pytest.raises(ValueError):
            get_settings()


class TestApiKeys:
    """Test API key resolution."""

    def test_explicit_wins(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "env-key")
        assert resolve_api_key("openai", "explicit") == "explicit"

    def test_blank_explicit_falls_back_to_env(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")
        assert resolve_api_key("anthropic", "  ") == "env-key"

    def test_gemini_falls_back_to_google_key(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "google-key")
        assert resolve_api_key("gemini") == "google-key"
        monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
        assert resolve_api_key("gemini") == "gemini-key"

    def test_missing(self):
        assert resolve_api_key("openai") is None
        assert resolve_api_key("ollama") is None
