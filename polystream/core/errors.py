"""
polystream - Error Definitions

Two error taxonomies:

* transport codes (``HttpError``) raised by the request executors:
  network, timeout, aborted, http_4xx, http_5xx, parse, unknown
* adapter codes (``UnifiedError``) surfaced to callers:
  network, timeout, rate_limit, auth, permission, content_blocked,
  invalid_request, server, cancelled, unknown

Cancellation always wins over any other classification and is never
retryable.
"""

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class TransportCode(str, Enum):
    """Transport-level error codes."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    HTTP_4XX = "http_4xx"
    HTTP_5XX = "http_5xx"
    PARSE = "parse"
    UNKNOWN = "unknown"


class ErrorCode(str, Enum):
    """Adapter-level error codes."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    PERMISSION = "permission"
    CONTENT_BLOCKED = "content_blocked"
    INVALID_REQUEST = "invalid_request"
    SERVER = "server"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ErrorCategory(str, Enum):
    """Coarse classification attached to transport errors."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    CLIENT = "client"
    PARSE = "parse"
    UNKNOWN = "unknown"


# Provider codes that mean "out of money", never worth retrying
QUOTA_CODES = frozenset({"insufficient_quota", "quota_exceeded", "billing_hard_limit"})


@dataclass(frozen=True)
class ErrorDetails:
    """Full error information."""
    # Core fields (always present)
    code: str
    message: str
    retryable: bool = False

    # Context fields
    status: Optional[int] = None
    provider: Optional[str] = None
    provider_code: Optional[str] = None
    category: Optional[str] = None
    detail: Optional[str] = None

    # Debug fields
    raw: Any = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }

        if self.status is not None:
            result["status"] = self.status
        if self.provider:
            result["provider"] = self.provider
        if self.provider_code:
            result["provider_code"] = self.provider_code
        if self.category:
            result["category"] = self.category
        if self.detail:
            result["detail"] = self.detail

        return {"error": result}


class PolystreamError(Exception):
    """Base exception for all polystream errors."""

    def __init__(self, error: ErrorDetails):
        self.error = error
        super().__init__(error.message)

    # Shortcuts so callers can write ``err.code`` instead of ``err.error.code``
    @property
    def code(self) -> str:
        return self.error.code

    @property
    def retryable(self) -> bool:
        return self.error.retryable

    @property
    def status(self) -> Optional[int]:
        return self.error.status

    @property
    def provider(self) -> Optional[str]:
        return self.error.provider

    @property
    def provider_code(self) -> Optional[str]:
        return self.error.provider_code

    @property
    def category(self) -> Optional[str]:
        return self.error.category

    @property
    def detail(self) -> Optional[str]:
        return self.error.detail

    @property
    def raw(self) -> Any:
        return self.error.raw

    def to_dict(self) -> Dict[str, Any]:
        return self.error.to_dict()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={str(self)!r})"


class HttpError(PolystreamError):
    """Error raised by the request executors."""

    # Server-requested delay (Retry-After), in milliseconds
    retry_after_ms: Optional[int] = None


class UnifiedError(PolystreamError):
    """Provider-independent error surfaced by adapters."""
    pass


class OperationCancelled(PolystreamError):
    """Cooperative cancellation of an in-flight operation."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(
            ErrorDetails(
                code=TransportCode.ABORTED.value,
                message=f"Request was canceled ({reason})",
                retryable=False,
                category=ErrorCategory.ABORTED.value,
                detail=reason,
            )
        )


# ============================================================
# Constructors
# ============================================================

def make_error(
    code: ErrorCode,
    message: str = "",
    *,
    provider: Optional[str] = None,
    status: Optional[int] = None,
    provider_code: Optional[str] = None,
    retryable: Optional[bool] = None,
    detail: Optional[str] = None,
    raw: Any = None,
) -> UnifiedError:
    """Build a ``UnifiedError`` with the default retryability for its code."""
    code = ErrorCode(code)
    if retryable is None:
        retryable = code in _RETRYABLE_CODES and provider_code not in QUOTA_CODES
    return UnifiedError(
        ErrorDetails(
            code=code.value,
            message=message or _DEFAULT_MESSAGES[code],
            retryable=retryable,
            status=status,
            provider=provider,
            provider_code=provider_code,
            detail=detail,
            raw=raw,
        )
    )


def http_error(
    code: TransportCode,
    message: str,
    *,
    retryable: bool = False,
    status: Optional[int] = None,
    provider_code: Optional[str] = None,
    category: Optional[ErrorCategory] = None,
    detail: Optional[str] = None,
    raw: Any = None,
) -> HttpError:
    """Build a transport ``HttpError``."""
    return HttpError(
        ErrorDetails(
            code=TransportCode(code).value,
            message=message,
            retryable=retryable,
            status=status,
            provider_code=provider_code,
            category=category.value if category else None,
            detail=detail,
            raw=raw,
        )
    )


_RETRYABLE_CODES = frozenset({
    ErrorCode.NETWORK,
    ErrorCode.TIMEOUT,
    ErrorCode.RATE_LIMIT,
    ErrorCode.SERVER,
})

_DEFAULT_MESSAGES = {
    ErrorCode.NETWORK: "Network error",
    ErrorCode.TIMEOUT: "Request timed out",
    ErrorCode.RATE_LIMIT: "Rate limit exceeded",
    ErrorCode.AUTH: "Authentication failed",
    ErrorCode.PERMISSION: "Permission denied",
    ErrorCode.CONTENT_BLOCKED: "Content was blocked by the provider",
    ErrorCode.INVALID_REQUEST: "Invalid request",
    ErrorCode.SERVER: "Provider server error",
    ErrorCode.CANCELLED: "Request was canceled",
    ErrorCode.UNKNOWN: "Unknown error",
}


# ============================================================
# Transport classification
# ============================================================

def is_abort_error(exc: BaseException) -> bool:
    """True when ``exc`` stems from cooperative or task cancellation."""
    if isinstance(exc, (OperationCancelled, asyncio.CancelledError)):
        return True
    if isinstance(exc, PolystreamError):
        return exc.code in (TransportCode.ABORTED.value, ErrorCode.CANCELLED.value)
    return False


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return True
    return "timeout" in str(exc).lower() or "timed out" in str(exc).lower()


def to_unified_error(
    exc: BaseException,
    status: Optional[int] = None,
    provider_code: Optional[str] = None,
) -> HttpError:
    """
    Classify any exception (or a status) into a transport ``HttpError``.

    Priority: cancellation, then status, then timeout markers, then network.
    """
    if isinstance(exc, HttpError) and status is None:
        return exc

    if is_abort_error(exc):
        reason = getattr(exc, "reason", None) or getattr(exc, "detail", None)
        return http_error(
            TransportCode.ABORTED,
            f"Request was canceled ({reason})" if reason else "Request was canceled",
            retryable=False,
            category=ErrorCategory.ABORTED,
            detail=reason,
            raw=exc,
        )

    if status is not None:
        quota = provider_code in QUOTA_CODES
        if status >= 500:
            return http_error(
                TransportCode.HTTP_5XX,
                f"Server error {status}",
                retryable=True,
                status=status,
                provider_code=provider_code,
                category=ErrorCategory.SERVER,
                raw=exc,
            )
        if status == 429:
            return http_error(
                TransportCode.HTTP_4XX,
                "Rate limited (429)",
                retryable=not quota,
                status=status,
                provider_code=provider_code,
                category=ErrorCategory.RATE_LIMIT,
                raw=exc,
            )
        if status in (401, 403):
            return http_error(
                TransportCode.HTTP_4XX,
                f"Unauthorized ({status})",
                retryable=False,
                status=status,
                provider_code=provider_code,
                category=ErrorCategory.AUTH,
                raw=exc,
            )
        if 400 <= status < 500:
            return http_error(
                TransportCode.HTTP_4XX,
                f"Client error {status}",
                retryable=False,
                status=status,
                provider_code=provider_code,
                category=ErrorCategory.CLIENT,
                raw=exc,
            )
        return http_error(
            TransportCode.UNKNOWN,
            f"Unexpected status {status}",
            retryable=False,
            status=status,
            provider_code=provider_code,
            category=ErrorCategory.UNKNOWN,
            raw=exc,
        )

    if _is_timeout(exc):
        return http_error(
            TransportCode.TIMEOUT,
            "Request timed out",
            retryable=True,
            category=ErrorCategory.TIMEOUT,
            raw=exc,
        )

    return http_error(
        TransportCode.NETWORK,
        str(exc) or "Network error",
        retryable=True,
        category=ErrorCategory.NETWORK,
        raw=exc,
    )


# ============================================================
# Adapter mapping
# ============================================================

_CATEGORY_TO_CODE = {
    ErrorCategory.RATE_LIMIT.value: ErrorCode.RATE_LIMIT,
    ErrorCategory.AUTH.value: ErrorCode.AUTH,
    ErrorCategory.TIMEOUT.value: ErrorCode.TIMEOUT,
    ErrorCategory.ABORTED.value: ErrorCode.CANCELLED,
    ErrorCategory.SERVER.value: ErrorCode.SERVER,
    ErrorCategory.PARSE.value: ErrorCode.SERVER,
    ErrorCategory.NETWORK.value: ErrorCode.NETWORK,
    ErrorCategory.CLIENT.value: ErrorCode.INVALID_REQUEST,
}

_TRANSPORT_TO_CODE = {
    TransportCode.ABORTED.value: ErrorCode.CANCELLED,
    TransportCode.TIMEOUT.value: ErrorCode.TIMEOUT,
    TransportCode.HTTP_5XX.value: ErrorCode.SERVER,
    TransportCode.PARSE.value: ErrorCode.SERVER,
    TransportCode.NETWORK.value: ErrorCode.NETWORK,
    TransportCode.HTTP_4XX.value: ErrorCode.INVALID_REQUEST,
}

STATUS_TRANSPORT_CODES = frozenset({TransportCode.HTTP_4XX.value, TransportCode.HTTP_5XX.value})


def from_http_error(err: PolystreamError, provider: Optional[str]) -> UnifiedError:
    """Map a transport error onto the adapter taxonomy."""
    if isinstance(err, UnifiedError):
        if provider and not err.provider:
            return UnifiedError(replace(err.error, provider=provider))
        return err

    code = None
    if err.category:
        code = _CATEGORY_TO_CODE.get(err.category)
    if code is None:
        code = _TRANSPORT_TO_CODE.get(err.code, ErrorCode.UNKNOWN)
    # Statuses the table names win over the transport category
    if err.status is not None and err.code in STATUS_TRANSPORT_CODES:
        by_status = _status_code(err.status)
        if by_status != ErrorCode.UNKNOWN:
            code = by_status

    retryable = err.retryable and code not in (ErrorCode.CANCELLED, ErrorCode.AUTH)
    return UnifiedError(
        ErrorDetails(
            code=code.value,
            message=str(err) or _DEFAULT_MESSAGES[code],
            retryable=retryable,
            status=err.status,
            provider=provider,
            provider_code=err.provider_code,
            category=err.category,
            detail=err.detail,
            raw=err.raw,
        )
    )


def _status_code(status: int) -> ErrorCode:
    if status == 401:
        return ErrorCode.AUTH
    if status == 403:
        return ErrorCode.PERMISSION
    if status in (404, 409, 422):
        return ErrorCode.INVALID_REQUEST
    if status == 408:
        return ErrorCode.TIMEOUT
    if status == 429:
        return ErrorCode.RATE_LIMIT
    if status >= 500:
        return ErrorCode.SERVER
    return ErrorCode.UNKNOWN


def provider_error_fields(body: Any) -> Dict[str, Optional[str]]:
    """Read ``{error: {code|type, message}}`` (or a flat variant)."""
    if not isinstance(body, dict):
        return {"code": None, "message": None}
    err = body.get("error", body)
    if isinstance(err, str):
        return {"code": None, "message": err}
    if not isinstance(err, dict):
        return {"code": None, "message": None}
    code = err.get("code") or err.get("type") or err.get("status")
    message = err.get("message")
    return {
        "code": str(code) if code is not None else None,
        "message": str(message) if message is not None else None,
    }


def error_from_response(
    response: httpx.Response,
    provider: Optional[str],
    context: str = "",
) -> UnifiedError:
    """
    Build a ``UnifiedError`` from a non-success response.

    The body must already have been read.
    """
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = response.text
    fields = provider_error_fields(body)
    code = _status_code(status)

    message = fields["message"] or f"{provider or 'provider'} returned HTTP {status}"
    if context:
        message = f"{context}: {message}"

    return make_error(
        code,
        message,
        provider=provider,
        status=status,
        provider_code=fields["code"],
        raw=body,
    )


def error_from_exception(exc: BaseException, provider: Optional[str]) -> UnifiedError:
    """Map any exception raised during an adapter call."""
    if isinstance(exc, PolystreamError):
        return from_http_error(exc, provider)
    return from_http_error(to_unified_error(exc), provider)
