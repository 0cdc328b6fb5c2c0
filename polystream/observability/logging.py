"""
polystream - Structured Logging

Structured logging on top of the standard library.

Features:
- JSON-formatted records, one object per line
- Request correlation (request_id, provider, model) through contextvars
- Sensitive field redaction (API keys, authorization headers)
- Per-call trace flag that lifts lifecycle logs from DEBUG to INFO

The library never touches the root logger on its own; applications call
``setup_logging()`` when they want polystream's formatter.

Usage:
    from polystream.observability.logging import setup_logging, get_logger

    setup_logging(level="DEBUG")
    logger = get_logger(__name__)
    logger.info("Stream opened", status=200)
"""

import json
import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Union

_log_context: ContextVar[Optional["LogContext"]] = ContextVar("polystream_log_context", default=None)

# Standard LogRecord attributes, never copied into the JSON payload
_RECORD_FIELDS = frozenset({
    "name", "msg", "args", "created", "filename",
    "funcName", "levelname", "levelno", "lineno",
    "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info",
    "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
})

_KEY_IN_URL = re.compile(r"([?&](?:key|api_key|apikey)=)[^&#\s]+", re.IGNORECASE)

REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class LogContext:
    """
    Correlation fields attached to every record logged in the current task.

    Immutable; ``bind_context`` installs an updated copy for a block.
    """
    request_id: str = ""
    provider: str = ""
    model: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def get_current(cls) -> Optional["LogContext"]:
        return _log_context.get()

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.request_id:
            result["request_id"] = self.request_id
        if self.provider:
            result["provider"] = self.provider
        if self.model:
            result["model"] = self.model
        result.update(self.extra)
        return result


@contextmanager
def bind_context(**fields: Any) -> Iterator[LogContext]:
    """
    Bind correlation fields for the duration of a block.

    Usage:
        with bind_context(request_id="r1", provider="openai"):
            logger.debug("...")  # carries request_id and provider
    """
    current = _log_context.get() or LogContext()
    known = {k: v for k, v in fields.items() if k in ("request_id", "provider", "model")}
    extra = {k: v for k, v in fields.items() if k not in known}
    ctx = replace(current, extra={**current.extra, **extra}, **known)
    token = _log_context.set(ctx)
    try:
        yield ctx
    finally:
        _log_context.reset(token)


def redact_url(url: str) -> str:
    """Mask API keys carried in query strings."""
    return _KEY_IN_URL.sub(lambda m: m.group(1) + REDACTED, url)


def redact_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Copy of ``headers`` with credential values masked."""
    if not headers:
        return {}
    return {
        k: (REDACTED if _is_sensitive(k) else v)
        for k, v in headers.items()
    }


SENSITIVE_FIELDS = frozenset({
    "password", "secret", "token", "api_key", "apikey",
    "authorization", "x-api-key", "credential", "private_key",
})


def _is_sensitive(field_name: str) -> bool:
    field_lower = field_name.lower()
    # "max_tokens" and friends are counters, not secrets
    if field_lower.endswith("tokens") or field_lower.startswith("tokens"):
        return False
    return any(sensitive in field_lower for sensitive in SENSITIVE_FIELDS)


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.123456+00:00",
        "level": "DEBUG",
        "logger": "polystream.http",
        "message": "[SSE][OPEN] status=200",
        "request_id": "r1",
        "provider": "openai",
        ... additional fields
    }
    """

    def __init__(self, include_location: bool = False, redact_sensitive: bool = True):
        super().__init__()
        self.include_location = include_location
        self.redact_sensitive = redact_sensitive

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_location:
            log_data["location"] = f"{record.filename}:{record.lineno}"

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        ctx = LogContext.get_current()
        if ctx:
            log_data.update(ctx.to_dict())

        for key, value in record.__dict__.items():
            if key in _RECORD_FIELDS or key.startswith("_"):
                continue
            if self.redact_sensitive and _is_sensitive(key):
                value = REDACTED
            log_data[key] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)


class StructuredLogger:
    """
    Logger wrapper whose keyword arguments become structured fields.

        logger.warning("Retrying", attempt=2, delay_ms=640)
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def isEnabledFor(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def log(self, level: int, msg: str, *args, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = dict(kwargs.pop("extra", None) or {})
        passthrough = {}
        for key, value in kwargs.items():
            if key in ("exc_info", "stack_info", "stacklevel"):
                passthrough[key] = value
            else:
                # Avoid KeyError from LogRecord for reserved attribute names
                extra[f"{key}_" if key in _RECORD_FIELDS else key] = value
        self._logger.log(level, msg, *args, extra=extra, **passthrough)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        kwargs["exc_info"] = True
        self.log(logging.ERROR, msg, *args, **kwargs)

    def trace(self, enabled: bool, msg: str, *args, **kwargs) -> None:
        """Lifecycle step: INFO when tracing is on for this call, else DEBUG."""
        self.log(logging.INFO if enabled else logging.DEBUG, msg, *args, **kwargs)


def setup_logging(
    level: Union[str, int, None] = None,
    json_output: bool = True,
    include_location: bool = False,
    stream=None,
) -> logging.Handler:
    """
    Install a handler on the ``polystream`` logger.

    Args:
        level: Log level; defaults to POLYSTREAM_LOG_LEVEL
        json_output: Use JSONFormatter (True) or a plain text formatter
        include_location: Include filename:lineno in records
        stream: Output stream (default stdout)

    Returns:
        The installed handler
    """
    if level is None:
        from ..core.config import get_log_level
        level = get_log_level()
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger("polystream")
    package_logger.setLevel(level)

    for handler in package_logger.handlers[:]:
        if getattr(handler, "_polystream", False):
            package_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    if json_output:
        handler.setFormatter(JSONFormatter(include_location=include_location))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
    handler._polystream = True
    package_logger.addHandler(handler)

    # Suppress noisy transport loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return handler


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger (typically ``get_logger(__name__)``)."""
    return StructuredLogger(logging.getLogger(name))
