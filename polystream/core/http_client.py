"""
polystream - Resilient HTTP Executors

Three request paths share one retry policy and one error taxonomy:

- ``request_json``: request/response JSON with per-attempt timeout
- ``request_sse``: Server-Sent Events stream, reported through ``on_event``
- ``open_stream``: raw streaming response (NDJSON) as an async context manager

Retries use jittered exponential backoff, sleeps are abortable, and
cancellation always beats retry. A stream that has already delivered a
message is never retried.
"""

import asyncio
import codecs
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Mapping,
    Optional,
    Union,
)

import httpx

from ..observability.logging import get_logger, redact_url
from ..observability.metrics import get_metrics
from ..streaming.sse import ParsedSseEvent, SseParser
from .cancellation import CancellationToken, merge_tokens, run_cancellable, sleep
from .config import get_settings
from .errors import (
    QUOTA_CODES,
    STATUS_TRANSPORT_CODES,
    ErrorCategory,
    HttpError,
    OperationCancelled,
    TransportCode,
    http_error,
    provider_error_fields,
    to_unified_error,
)
from .retry import RetryPolicy, parse_retry_after, resolve_policy


logger = get_logger("polystream.http")

# Connect timeout for clients created by the executors themselves
CONNECT_TIMEOUT_S = 30.0

RetryOverride = Union[RetryPolicy, Mapping[str, Any], None]


class TransportEventType(str, Enum):
    """Events emitted by the stream executor."""
    OPEN = "open"
    MESSAGE = "message"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class TransportEvent:
    """What ``request_sse`` hands to its ``on_event`` sink."""
    type: TransportEventType
    data: Optional[str] = None
    event: Optional[str] = None
    error: Optional[HttpError] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (TransportEventType.ERROR, TransportEventType.DONE)


OnEvent = Callable[[TransportEvent], None]
OnConnect = Callable[[int, Dict[str, str]], None]


# ============================================================
# Helpers
# ============================================================

@asynccontextmanager
async def _client_scope(client: Optional[httpx.AsyncClient]) -> AsyncIterator[httpx.AsyncClient]:
    """Use the injected client, or own one for the duration of the call."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=httpx.Timeout(None, connect=CONNECT_TIMEOUT_S)) as owned:
        yield owned


def _trace_enabled(trace: Optional[bool]) -> bool:
    return get_settings().trace if trace is None else bool(trace)


def _build_request(
    http: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Optional[Mapping[str, str]],
    body: Any,
    accept: str,
) -> httpx.Request:
    merged = {"content-type": "application/json", "accept": accept}
    merged.update(headers or {})
    if body is None:
        return http.build_request(method, url, headers=merged)
    return http.build_request(method, url, headers=merged, json=body)


def _read_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def status_error(response: httpx.Response) -> HttpError:
    """
    Classify a non-success response whose body has been read.

    The provider's own ``{error: {code|type, message}}`` supplies the
    provider code and message when present.
    """
    body = _read_body(response)
    fields = provider_error_fields(body)
    base = to_unified_error(
        Exception(f"HTTP {response.status_code}"),
        status=response.status_code,
        provider_code=fields["code"],
    )
    err = HttpError(replace(base.error, message=fields["message"] or str(base), raw=body))
    err.retry_after_ms = parse_retry_after(response.headers.get("retry-after"))
    return err


def _retry_delay(policy: RetryPolicy, attempt: int, err: HttpError) -> int:
    if err.retry_after_ms:
        return min(err.retry_after_ms, policy.max_delay_ms)
    return policy.backoff_ms(attempt)


def _aborted(reason: Optional[str]) -> HttpError:
    reason = reason or "cancelled"
    return http_error(
        TransportCode.ABORTED,
        f"Request was canceled ({reason})",
        retryable=False,
        category=ErrorCategory.ABORTED,
        detail=reason,
    )


def _should_retry(policy: RetryPolicy, attempt: int, err: HttpError) -> bool:
    if err.code == TransportCode.ABORTED.value or err.provider_code in QUOTA_CODES:
        return False
    if attempt >= policy.retries:
        return False
    # Status errors are the policy's call; retry_on may override the classification
    if err.status is not None and err.code in STATUS_TRANSPORT_CODES:
        return policy.should_retry(err.status, err.code)
    return err.retryable and policy.should_retry(err.status, err.code)


# ============================================================
# JSON executor
# ============================================================

async def request_json(
    url: str,
    method: str = "POST",
    headers: Optional[Mapping[str, str]] = None,
    body: Any = None,
    token: Optional[CancellationToken] = None,
    timeout_ms: Optional[int] = None,
    retry: RetryOverride = None,
    client: Optional[httpx.AsyncClient] = None,
    trace: Optional[bool] = None,
) -> Any:
    """
    Send a JSON request and return the decoded JSON response.

    Args:
        url: Absolute request URL
        method: HTTP method
        headers: Extra headers (content-type defaults to application/json)
        body: JSON-serializable request body
        token: Caller cancellation token
        timeout_ms: Per-attempt timeout (default POLYSTREAM_REQUEST_TIMEOUT_MS)
        retry: RetryPolicy or mapping of overridden fields
        client: httpx.AsyncClient to use (one is created per call otherwise)
        trace: Log lifecycle steps at INFO (default POLYSTREAM_TRACE)

    Raises:
        HttpError: aborted, timeout, network, http_4xx, http_5xx or parse
    """
    policy = resolve_policy(retry)
    traced = _trace_enabled(trace)
    if timeout_ms is None:
        timeout_ms = get_settings().request_timeout_ms
    safe_url = redact_url(url)
    attempt = 0

    async with _client_scope(client) as http:
        while True:
            try:
                return await _json_attempt(http, method, url, safe_url, headers, body, token, timeout_ms, attempt, traced)
            except HttpError as exc:
                if not _should_retry(policy, attempt, exc):
                    logger.trace(traced, "[HTTP][FAIL]", url=safe_url, code=exc.code, status=exc.status, attempt=attempt)
                    raise
                err = exc
                delay = _retry_delay(policy, attempt, err)

            logger.warning(
                f"[HTTP][RETRY] {method} {safe_url} retry {attempt + 1}/{policy.retries} after {delay}ms",
                code=err.code,
                status=err.status,
                delay_ms=delay,
            )
            get_metrics().record_retry("json", err.code)
            attempt += 1
            try:
                await sleep(delay, token)
            except OperationCancelled as exc:
                raise _aborted(exc.reason) from None


async def _json_attempt(
    http: httpx.AsyncClient,
    method: str,
    url: str,
    safe_url: str,
    headers: Optional[Mapping[str, str]],
    body: Any,
    token: Optional[CancellationToken],
    timeout_ms: Optional[int],
    attempt: int,
    traced: bool,
) -> Any:
    attempt_token = merge_tokens(token)
    if timeout_ms:
        attempt_token.cancel_after(timeout_ms, "timeout")
    started = time.perf_counter()
    logger.trace(traced, f"[HTTP][INIT] {method} {safe_url}", attempt=attempt)

    try:
        request = _build_request(http, method, url, headers, body, "application/json")
        response = await run_cancellable(http.send(request), attempt_token)
    except OperationCancelled as exc:
        raise _aborted(exc.reason) from None
    except (httpx.HTTPError, OSError) as exc:
        raise to_unified_error(exc) from exc
    finally:
        attempt_token.close()

    elapsed_ms = (time.perf_counter() - started) * 1000
    if not response.is_success:
        logger.trace(traced, "[HTTP][ERROR_STATUS]", status=response.status_code, elapsed_ms=round(elapsed_ms), attempt=attempt)
        raise status_error(response)

    try:
        data = response.json()
    except ValueError:
        raise http_error(
            TransportCode.PARSE,
            "Response body is not valid JSON",
            retryable=False,
            status=response.status_code,
            category=ErrorCategory.PARSE,
            raw=response.text[:500],
        ) from None

    logger.trace(traced, "[HTTP][DONE]", status=response.status_code, elapsed_ms=round(elapsed_ms))
    return data


# ============================================================
# SSE executor
# ============================================================

class SseStream:
    """
    Handle for one logical SSE request.

    Await it to wait for the call to finish (after the terminal event).
    ``cancel(reason)`` aborts it from any state.
    """

    def __init__(self, task: "asyncio.Task[None]", root: CancellationToken):
        self._task = task
        self._root = root

    def cancel(self, reason: str = "unknown") -> None:
        self._root.cancel(reason)

    @property
    def done(self) -> bool:
        return self._task.done()

    def __await__(self):
        return self._task.__await__()


def request_sse(
    url: str,
    *,
    on_event: OnEvent,
    method: str = "POST",
    headers: Optional[Mapping[str, str]] = None,
    body: Any = None,
    token: Optional[CancellationToken] = None,
    open_timeout_ms: Optional[int] = None,
    retry: RetryOverride = None,
    on_connect: Optional[OnConnect] = None,
    on_first_byte: Optional[Callable[[], None]] = None,
    client: Optional[httpx.AsyncClient] = None,
    trace: Optional[bool] = None,
) -> SseStream:
    """
    Start an SSE request in the background and return its handle.

    ``on_event`` receives ``open``, any number of ``message`` events and
    exactly one terminal ``done`` or ``error``. Must be called with a
    running event loop.
    """
    run = _SseRun(
        url=url,
        on_event=on_event,
        method=method,
        headers=headers,
        body=body,
        user_token=token,
        open_timeout_ms=open_timeout_ms if open_timeout_ms is not None else get_settings().open_timeout_ms,
        policy=resolve_policy(retry),
        on_connect=on_connect,
        on_first_byte=on_first_byte,
        client=client,
        traced=_trace_enabled(trace),
    )
    task = asyncio.get_running_loop().create_task(run.run())
    return SseStream(task, run.root)


class _SseRun:
    """State of one ``request_sse`` call across its attempts."""

    def __init__(
        self,
        url: str,
        on_event: OnEvent,
        method: str,
        headers: Optional[Mapping[str, str]],
        body: Any,
        user_token: Optional[CancellationToken],
        open_timeout_ms: int,
        policy: RetryPolicy,
        on_connect: Optional[OnConnect],
        on_first_byte: Optional[Callable[[], None]],
        client: Optional[httpx.AsyncClient],
        traced: bool,
    ):
        self.url = url
        self.safe_url = redact_url(url)
        self.on_event = on_event
        self.method = method
        self.headers = headers
        self.body = body
        self.user_token = user_token
        self.open_timeout_ms = open_timeout_ms
        self.policy = policy
        self.on_connect = on_connect
        self.on_first_byte = on_first_byte
        self.client = client
        self.traced = traced

        self.root = CancellationToken()
        self.terminated = False
        self.delivered = False

    # ------------------------------------------------------------
    # Event emission
    # ------------------------------------------------------------

    def _emit(self, event: TransportEvent) -> None:
        if self.terminated:
            return
        if event.is_terminal:
            self.terminated = True
        self.on_event(event)

    def _fail(self, err: HttpError) -> None:
        self._emit(TransportEvent(TransportEventType.ERROR, error=err))

    def _forward(self, parsed: ParsedSseEvent) -> None:
        data = parsed.data.strip() if parsed.is_done_sentinel else parsed.data
        self.delivered = True
        self._emit(TransportEvent(TransportEventType.MESSAGE, data=data, event=parsed.event))

    # ------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------

    async def run(self) -> None:
        remove = None
        if self.user_token is not None:
            remove = self.user_token.add_callback(lambda _reason: self.root.cancel("user_abort"))
        try:
            async with _client_scope(self.client) as http:
                attempt = 0
                while not self.terminated:
                    delay = await self._attempt(http, attempt)
                    if delay is None:
                        break
                    attempt += 1
                    try:
                        await sleep(delay, self.root)
                    except OperationCancelled as exc:
                        self._cancelled(exc.reason)
        finally:
            if remove is not None:
                remove()

    def _cancelled(self, reason: Optional[str]) -> None:
        reason = reason or self.root.reason
        logger.trace(self.traced, "[SSE][ABORTED]", reason=reason)
        self._fail(_aborted(reason))

    async def _attempt(self, http: httpx.AsyncClient, attempt: int) -> Optional[int]:
        """Run one attempt. Returns a retry delay, or None once terminal."""
        attempt_token = self.root.child()
        logger.trace(self.traced, f"[SSE][INIT] {self.method} {self.safe_url}", attempt=attempt)
        started = time.perf_counter()

        try:
            request = _build_request(http, self.method, self.url, self.headers, self.body, "text/event-stream")
            try:
                response = await run_cancellable(http.send(request, stream=True), attempt_token)
            except (httpx.HTTPError, OSError) as exc:
                err = to_unified_error(exc)
                logger.warning(f"[SSE][NETWORK_ERROR] {self.safe_url}", code=err.code, error=str(exc))
                self._fail(HttpError(replace(err.error, detail="network_fetch_failed")))
                return None

            try:
                return await self._handle_response(response, attempt, attempt_token, started)
            finally:
                await response.aclose()

        except OperationCancelled as exc:
            if self.root.cancelled:
                self._cancelled(self.root.reason)
                return None
            # Only the open timer cancels the attempt token on its own
            err = http_error(
                TransportCode.TIMEOUT,
                "Stream open timed out.",
                retryable=True,
                category=ErrorCategory.TIMEOUT,
                detail=exc.reason,
            )
            logger.warning(f"[SSE][OPEN_TIMEOUT] {self.safe_url}", timeout_ms=self.open_timeout_ms)
            return self._retry_or_fail(attempt, err)

        except (httpx.HTTPError, OSError) as exc:
            if self.delivered:
                logger.warning(f"[SSE][INTERRUPTED] {self.safe_url}", error=str(exc))
                self._fail(http_error(
                    TransportCode.NETWORK,
                    str(exc) or "Stream interrupted",
                    retryable=False,
                    category=ErrorCategory.NETWORK,
                    detail="stream_interrupted",
                    raw=exc,
                ))
                return None
            return self._retry_or_fail(attempt, to_unified_error(exc))

        finally:
            attempt_token.close()

    def _retry_or_fail(self, attempt: int, err: HttpError) -> Optional[int]:
        if _should_retry(self.policy, attempt, err):
            delay = _retry_delay(self.policy, attempt, err)
            logger.warning(
                f"[SSE][RETRY] {self.safe_url} retry {attempt + 1}/{self.policy.retries} after {delay}ms",
                code=err.code,
                status=err.status,
                provider_code=err.provider_code,
                delay_ms=delay,
            )
            get_metrics().record_retry("sse", err.category or err.code)
            return delay
        self._fail(err)
        return None

    async def _handle_response(
        self,
        response: httpx.Response,
        attempt: int,
        attempt_token: CancellationToken,
        started: float,
    ) -> Optional[int]:
        status = response.status_code
        if self.on_connect is not None:
            self.on_connect(status, {k.lower(): v for k, v in response.headers.items()})
        logger.trace(
            self.traced,
            "[SSE][RESP_STATUS]",
            status=status,
            latency_ms=round((time.perf_counter() - started) * 1000),
        )

        if not response.is_success:
            await run_cancellable(response.aread(), attempt_token)
            return self._retry_or_fail(attempt, self._status_error(response))

        if response.is_stream_consumed:
            self._buffered(response)
            return None

        self._emit(TransportEvent(TransportEventType.OPEN))
        logger.trace(self.traced, "[SSE][OPEN]")
        attempt_token.cancel_after(self.open_timeout_ms, "open_timeout")
        await run_cancellable(self._read(response, attempt_token), attempt_token)
        attempt_token.clear_timer()
        self._emit(TransportEvent(TransportEventType.DONE))
        logger.trace(self.traced, "[SSE][DONE]")
        return None

    def _status_error(self, response: httpx.Response) -> HttpError:
        status = response.status_code
        body = _read_body(response)
        fields = provider_error_fields(body)
        provider_code = fields["code"]

        if status in (401, 403):
            category, retryable = ErrorCategory.AUTH, False
        elif status == 429:
            category, retryable = ErrorCategory.RATE_LIMIT, True
        elif status >= 500:
            category, retryable = ErrorCategory.SERVER, True
        else:
            category, retryable = ErrorCategory.NETWORK, True
        if provider_code in QUOTA_CODES:
            retryable = False

        logger.warning(
            f"[SSE][ERROR_STATUS] {self.safe_url}",
            status=status,
            provider_code=provider_code,
            category=category.value,
            retryable=retryable,
        )
        err = http_error(
            TransportCode.HTTP_5XX if status >= 500 else TransportCode.HTTP_4XX,
            fields["message"] or response.reason_phrase or "Provider request failed",
            retryable=retryable,
            status=status,
            provider_code=provider_code,
            category=category,
            raw=body,
        )
        err.retry_after_ms = parse_retry_after(response.headers.get("retry-after"))
        return err

    def _buffered(self, response: httpx.Response) -> None:
        text = response.text
        parser = SseParser()
        self._emit(TransportEvent(TransportEventType.OPEN))
        if text and self.on_first_byte is not None:
            self.on_first_byte()
        for parsed in parser.feed(text) + parser.flush_remainder():
            self._forward(parsed)
        self._emit(TransportEvent(TransportEventType.DONE))
        logger.trace(self.traced, "[SSE][DONE] buffered body", length=len(text))

    async def _read(self, response: httpx.Response, attempt_token: CancellationToken) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parser = SseParser()
        first_byte_seen = False

        async for raw in response.aiter_bytes():
            if not raw:
                continue
            if not first_byte_seen:
                first_byte_seen = True
                attempt_token.clear_timer()
                if self.on_first_byte is not None:
                    self.on_first_byte()
            for parsed in parser.feed(decoder.decode(raw)):
                self._forward(parsed)

        for parsed in parser.feed(decoder.decode(b"", final=True)) + parser.flush_remainder():
            self._forward(parsed)


# ============================================================
# Raw streaming executor
# ============================================================

@asynccontextmanager
async def open_stream(
    url: str,
    method: str = "POST",
    headers: Optional[Mapping[str, str]] = None,
    body: Any = None,
    token: Optional[CancellationToken] = None,
    retry: RetryOverride = None,
    client: Optional[httpx.AsyncClient] = None,
    trace: Optional[bool] = None,
    accept: str = "application/x-ndjson",
) -> AsyncIterator[httpx.Response]:
    """
    Open a streaming response, retrying the open like ``request_json``.

    Yields the successful ``httpx.Response`` (body not yet read); it is
    closed on exit. Non-success statuses raise ``HttpError``.

    Usage:
        async with open_stream(url, body=payload, token=token) as response:
            async for line in response.aiter_lines():
                ...
    """
    policy = resolve_policy(retry)
    traced = _trace_enabled(trace)
    safe_url = redact_url(url)
    attempt = 0

    async with _client_scope(client) as http:
        while True:
            logger.trace(traced, f"[STREAM][INIT] {method} {safe_url}", attempt=attempt)
            request = _build_request(http, method, url, headers, body, accept)
            try:
                response = await run_cancellable(http.send(request, stream=True), token)
                if response.is_success:
                    break
                try:
                    await run_cancellable(response.aread(), token)
                finally:
                    await response.aclose()
                err = status_error(response)
            except OperationCancelled as exc:
                raise _aborted(exc.reason) from None
            except (httpx.HTTPError, OSError) as exc:
                err = to_unified_error(exc)

            if not _should_retry(policy, attempt, err):
                logger.trace(traced, "[STREAM][FAIL]", url=safe_url, code=err.code, status=err.status)
                raise err
            delay = _retry_delay(policy, attempt, err)
            logger.warning(
                f"[STREAM][RETRY] {method} {safe_url} retry {attempt + 1}/{policy.retries} after {delay}ms",
                code=err.code,
                status=err.status,
                delay_ms=delay,
            )
            get_metrics().record_retry("stream", err.code)
            attempt += 1
            try:
                await sleep(delay, token)
            except OperationCancelled as exc:
                raise _aborted(exc.reason) from None

        logger.trace(traced, "[STREAM][OPEN]", status=response.status_code)
        try:
            yield response
        finally:
            await response.aclose()
