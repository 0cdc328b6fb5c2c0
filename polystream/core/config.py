"""
polystream - Configuration

Environment-driven settings. Explicit per-call arguments always win over
anything read here.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional

from .models import Provider


DEFAULT_BASE_URLS: Dict[str, str] = {
    Provider.OPENAI.value: "https://api.openai.com",
    Provider.ANTHROPIC.value: "https://api.anthropic.com",
    Provider.GEMINI.value: "https://generativelanguage.googleapis.com",
    Provider.OLLAMA.value: "http://localhost:11434",
}

DEFAULT_OPEN_TIMEOUT_MS = 10_000

_API_KEY_ENV = {
    Provider.OPENAI.value: ("OPENAI_API_KEY",),
    Provider.ANTHROPIC.value: ("ANTHROPIC_API_KEY",),
    Provider.GEMINI.value: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    Provider.OLLAMA.value: ("OLLAMA_API_KEY",),
}

_TRUTHY = {"1", "true", "yes", "on"}


def _is_truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: expected an integer number of milliseconds, got {raw!r}")
    if value < 0:
        raise ValueError(f"Invalid {name}: must be >= 0")
    return value


@dataclass(frozen=True)
class Settings:
    """Resolved environment settings."""
    trace: bool
    log_level: str
    open_timeout_ms: int
    request_timeout_ms: Optional[int]
    base_urls: Dict[str, str]

    def base_url(self, provider: str) -> str:
        return self.base_urls[provider]


def get_trace_default() -> bool:
    """POLYSTREAM_TRACE turns on INFO-level lifecycle logging."""
    return _is_truthy(os.getenv("POLYSTREAM_TRACE"))


def get_log_level() -> str:
    level = os.getenv("POLYSTREAM_LOG_LEVEL", "INFO").upper().strip()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ValueError("Invalid POLYSTREAM_LOG_LEVEL. Use one of: DEBUG, INFO, WARNING, ERROR, CRITICAL")
    return level


def get_base_urls() -> Dict[str, str]:
    """Provider base URLs, overridable through ``<PROVIDER>_BASE_URL``."""
    urls = {}
    for provider, default in DEFAULT_BASE_URLS.items():
        override = os.getenv(f"{provider.upper()}_BASE_URL", "").strip()
        urls[provider] = (override or default).rstrip("/")
    return urls


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read settings once per process. Use ``reset_settings()`` after env changes."""
    return Settings(
        trace=get_trace_default(),
        log_level=get_log_level(),
        open_timeout_ms=_get_int("POLYSTREAM_OPEN_TIMEOUT_MS", DEFAULT_OPEN_TIMEOUT_MS),
        request_timeout_ms=_get_int("POLYSTREAM_REQUEST_TIMEOUT_MS", None),
        base_urls=get_base_urls(),
    )


def reset_settings() -> None:
    get_settings.cache_clear()


def resolve_api_key(provider: str, explicit: Optional[str] = None) -> Optional[str]:
    """
    Pick the API key for ``provider``.

    An explicit (non-blank) key wins; otherwise the provider's environment
    variables are tried in order. Gemini falls back to GOOGLE_API_KEY.
    """
    if explicit and explicit.strip():
        return explicit.strip()
    for name in _API_KEY_ENV.get(provider, ()):
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None
