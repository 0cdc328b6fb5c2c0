"""
polystream - HTTP Executor Tests

Verifies, against httpx MockTransport endpoints:
- request_json: decoding, retry ceiling, non-retryable statuses,
  Retry-After capping, per-attempt timeout, cancellation
- request_sse: event order, incremental decoding, retries, open timeout,
  no retry after delivery, cancellation, single terminal event
- open_stream: retried open and status errors
"""

import asyncio
import json

import httpx
import pytest

from polystream.core import http_client
from polystream.core.cancellation import CancellationToken
from polystream.core.errors import HttpError
from polystream.core.http_client import (
    TransportEventType,
    open_stream,
    request_json,
    request_sse,
)
from polystream.core.retry import RetryPolicy

URL = "https://api.example.test/v1/thing"


def server_error(request):
    return httpx.Response(500, json={"error": {"code": "server_error", "message": "boom"}})


def unauthorized(request):
    return httpx.Response(401, json={"error": {"type": "invalid_api_key", "message": "bad key"}})


# ============================================================
# JSON executor
# ============================================================

class TestRequestJson:
    """Test the request/response executor."""

    @pytest.mark.asyncio
    async def test_returns_decoded_json(self, make_client):
        client, handler = make_client(httpx.Response(200, json={"ok": True}))
        data = await request_json(URL, headers={"x-test": "1"}, body={"q": "hi"}, client=client)

        assert data == {"ok": True}
        request = handler.requests[0]
        assert request.method == "POST"
        assert request.headers["content-type"] == "application/json"
        assert request.headers["x-test"] == "1"
        assert handler.json_body() == {"q": "hi"}

    @pytest.mark.asyncio
    async def test_get_without_body(self, make_client):
        client, handler = make_client(httpx.Response(200, json=[]))
        assert await request_json(URL, method="GET", client=client) == []
        assert handler.requests[0].content == b""

    @pytest.mark.asyncio
    async def test_500_retried_exactly_retries_times(self, make_client, fakes, metrics):
        client, handler = make_client(server_error)
        with pytest.raises(HttpError) as exc_info:
            await request_json(URL, body={}, client=client, retry={**fakes.FAST_RETRY, "retries": 2})

        err = exc_info.value
        assert handler.calls == 3
        assert err.code == "http_5xx"
        assert err.status == 500
        assert err.provider_code == "server_error"
        assert str(err) == "boom"
        assert metrics.registry.get_sample_value(
            "polystream_retries_total", {"transport": "json", "reason": "http_5xx"}
        ) == 2

    @pytest.mark.asyncio
    async def test_401_never_retried(self, make_client, fakes):
        client, handler = make_client(unauthorized)
        with pytest.raises(HttpError) as exc_info:
            await request_json(URL, client=client, retry={**fakes.FAST_RETRY, "retries": 5})
        assert handler.calls == 1
        assert exc_info.value.category == "auth"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_quota_429_not_retried(self, make_client, fakes):
        client, handler = make_client(
            lambda r: httpx.Response(429, json={"error": {"code": "insufficient_quota", "message": "pay up"}})
        )
        with pytest.raises(HttpError):
            await request_json(URL, client=client, retry=fakes.FAST_RETRY)
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_retry_on_override_retries_client_status(self, make_client, fakes):
        client, handler = make_client(lambda r: httpx.Response(409, json={"error": {"message": "busy"}}))
        always = {**fakes.FAST_RETRY, "retries": 2, "retry_on": lambda status=None, code=None: True}
        with pytest.raises(HttpError) as exc_info:
            await request_json(URL, client=client, retry=always)
        assert handler.calls == 3
        assert exc_info.value.status == 409

    @pytest.mark.asyncio
    async def test_retry_on_override_suppresses_server_retry(self, make_client, fakes):
        client, handler = make_client(server_error)
        never = {**fakes.FAST_RETRY, "retry_on": lambda status=None, code=None: False}
        with pytest.raises(HttpError):
            await request_json(URL, client=client, retry=never)
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_retry_on_override_never_retries_quota(self, make_client, fakes):
        client, handler = make_client(
            lambda r: httpx.Response(429, json={"error": {"code": "insufficient_quota", "message": "pay up"}})
        )
        always = {**fakes.FAST_RETRY, "retry_on": lambda status=None, code=None: True}
        with pytest.raises(HttpError):
            await request_json(URL, client=client, retry=always)
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_retry_after_capped_at_max_delay(self, make_client, monkeypatch):
        delays = []

        async def fake_sleep(ms, token=None):
            delays.append(ms)

        monkeypatch.setattr(http_client, "sleep", fake_sleep)
        client, handler = make_client(
            httpx.Response(429, headers={"retry-after": "30"}),
            httpx.Response(200, json={"ok": 1}),
        )
        data = await request_json(URL, client=client, retry=RetryPolicy(retries=1, base_delay_ms=10, max_delay_ms=250))

        assert data == {"ok": 1}
        assert delays == [250]

    @pytest.mark.asyncio
    async def test_network_error_retried(self, make_client, fakes):
        client, handler = make_client(
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"ok": True}),
        )
        assert await request_json(URL, client=client, retry=fakes.FAST_RETRY) == {"ok": True}
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_invalid_json_is_parse_error(self, make_client, fakes):
        client, handler = make_client(httpx.Response(200, text="<html>nope</html>"))
        with pytest.raises(HttpError) as exc_info:
            await request_json(URL, client=client, retry=fakes.FAST_RETRY)
        assert exc_info.value.code == "parse"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_is_aborted_and_not_retried(self, make_client, fakes):
        async def slow(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={})

        client, handler = make_client(slow)
        with pytest.raises(HttpError) as exc_info:
            await request_json(URL, client=client, timeout_ms=20, retry=fakes.FAST_RETRY)
        assert exc_info.value.code == "aborted"
        assert exc_info.value.detail == "timeout"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_token_sends_nothing(self, make_client):
        client, handler = make_client(httpx.Response(200, json={}))
        token = CancellationToken()
        token.cancel("user_abort")
        with pytest.raises(HttpError) as exc_info:
            await request_json(URL, client=client, token=token)
        assert exc_info.value.code == "aborted"
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, make_client):
        client, handler = make_client(server_error)
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel, "user_abort")
        with pytest.raises(HttpError) as exc_info:
            await request_json(URL, client=client, token=token, retry={"retries": 3, "base_delay_ms": 5000, "max_delay_ms": 5000})
        assert exc_info.value.code == "aborted"
        assert handler.calls == 1


# ============================================================
# SSE executor
# ============================================================

def record():
    events = []
    return events, events.append


class TestRequestSse:
    """Test the stream executor."""

    @pytest.mark.asyncio
    async def test_event_order_and_done_trim(self, make_client, fakes):
        client, handler = make_client(fakes.sse_response({"n": 1}, {"n": 2}))
        events, on_event = record()
        connects, first_bytes = [], []

        handle = request_sse(
            URL,
            on_event=on_event,
            body={"stream": True},
            client=client,
            on_connect=lambda status, headers: connects.append((status, headers["content-type"])),
            on_first_byte=lambda: first_bytes.append(True),
        )
        await handle

        assert [e.type for e in events] == [
            TransportEventType.OPEN,
            TransportEventType.MESSAGE,
            TransportEventType.MESSAGE,
            TransportEventType.MESSAGE,
            TransportEventType.DONE,
        ]
        assert [json.loads(e.data) for e in events[1:3]] == [{"n": 1}, {"n": 2}]
        assert events[3].data == "[DONE]"
        assert connects == [(200, "text/event-stream")]
        assert first_bytes == [True]
        assert handler.requests[0].headers["accept"] == "text/event-stream"
        assert handle.done

    @pytest.mark.asyncio
    async def test_incremental_body_with_split_utf8(self, make_client, fakes):
        body = "data: héllo wörld\n\ndata: [DONE]\n\n".encode("utf-8")
        chunks = [body[i:i + 3] for i in range(0, len(body), 3)]
        client, handler = make_client(lambda r: fakes.streamed_response(chunks))
        events, on_event = record()

        await request_sse(URL, on_event=on_event, client=client)

        messages = [e.data for e in events if e.type == TransportEventType.MESSAGE]
        assert messages == ["héllo wörld", "[DONE]"]
        assert events[-1].type == TransportEventType.DONE

    @pytest.mark.asyncio
    async def test_500_retried_then_terminal(self, make_client, fakes):
        client, handler = make_client(server_error)
        events, on_event = record()

        await request_sse(URL, on_event=on_event, client=client, retry={**fakes.FAST_RETRY, "retries": 2})

        assert handler.calls == 3
        assert len(events) == 1
        err = events[0].error
        assert events[0].type == TransportEventType.ERROR
        assert err.category == "server"
        assert err.status == 500

    @pytest.mark.asyncio
    async def test_401_not_retried(self, make_client, fakes):
        client, handler = make_client(unauthorized)
        events, on_event = record()

        await request_sse(URL, on_event=on_event, client=client, retry=fakes.FAST_RETRY)

        assert handler.calls == 1
        assert events[-1].error.category == "auth"
        assert events[-1].error.provider_code == "invalid_api_key"
        assert str(events[-1].error) == "bad key"

    @pytest.mark.asyncio
    async def test_quota_429_not_retried(self, make_client, fakes):
        client, handler = make_client(
            lambda r: httpx.Response(429, json={"error": {"code": "quota_exceeded"}})
        )
        events, on_event = record()
        await request_sse(URL, on_event=on_event, client=client, retry=fakes.FAST_RETRY)

        assert handler.calls == 1
        assert events[-1].error.category == "rate_limit"
        assert events[-1].error.retryable is False

    @pytest.mark.asyncio
    async def test_connect_failure_is_terminal(self, make_client, fakes):
        client, handler = make_client(httpx.ConnectError("connection refused"))
        events, on_event = record()

        await request_sse(URL, on_event=on_event, client=client, retry=fakes.FAST_RETRY)

        assert handler.calls == 1
        assert events[-1].error.code == "network"
        assert events[-1].error.detail == "network_fetch_failed"

    @pytest.mark.asyncio
    async def test_open_timeout(self, make_client, fakes):
        client, handler = make_client(
            lambda r: fakes.streamed_response([b"data: late\n\n"], delay=1.0)
        )
        events, on_event = record()

        await request_sse(
            URL,
            on_event=on_event,
            client=client,
            open_timeout_ms=30,
            retry={**fakes.FAST_RETRY, "retries": 1},
        )

        assert handler.calls == 2
        assert not any(e.type == TransportEventType.MESSAGE for e in events)
        err = events[-1].error
        assert err.code == "timeout"
        assert err.detail == "open_timeout"
        assert err.retryable is True

    @pytest.mark.asyncio
    async def test_no_retry_after_delivery(self, make_client, fakes):
        client, handler = make_client(
            lambda r: fakes.streamed_response([b"data: partial\n\n"], error=httpx.ReadError("connection reset"))
        )
        events, on_event = record()

        await request_sse(URL, on_event=on_event, client=client, retry={**fakes.FAST_RETRY, "retries": 3})

        assert handler.calls == 1
        assert [e.data for e in events if e.type == TransportEventType.MESSAGE] == ["partial"]
        err = events[-1].error
        assert err.code == "network"
        assert err.detail == "stream_interrupted"
        assert err.retryable is False

    @pytest.mark.asyncio
    async def test_interruption_before_delivery_retried(self, make_client, fakes):
        client, handler = make_client(
            fakes.streamed_response([], error=httpx.ReadError("connection reset")),
            fakes.sse_response("hello"),
        )
        events, on_event = record()

        await request_sse(URL, on_event=on_event, client=client, retry=fakes.FAST_RETRY)

        assert handler.calls == 2
        assert [e.data for e in events if e.type == TransportEventType.MESSAGE] == ["hello", "[DONE]"]
        assert events[-1].type == TransportEventType.DONE

    @pytest.mark.asyncio
    async def test_user_cancel_mid_stream(self, make_client, fakes):
        client, handler = make_client(
            lambda r: fakes.streamed_response([b"data: a\n\n", b"data: b\n\n"], delay=0.05)
        )
        token = CancellationToken()
        events = []

        def on_event(event):
            events.append(event)
            if event.type == TransportEventType.MESSAGE:
                token.cancel("stop")

        await request_sse(URL, on_event=on_event, client=client, token=token)

        assert [e.data for e in events if e.type == TransportEventType.MESSAGE] == ["a"]
        terminals = [e for e in events if e.is_terminal]
        assert len(terminals) == 1
        assert terminals[0].error.code == "aborted"
        assert terminals[0].error.detail == "user_abort"

    @pytest.mark.asyncio
    async def test_handle_cancel(self, make_client, fakes):
        client, handler = make_client(
            lambda r: fakes.streamed_response([b"data: a\n\n"], delay=1.0)
        )
        events, on_event = record()

        handle = request_sse(URL, on_event=on_event, client=client)
        await asyncio.sleep(0.02)
        handle.cancel("shutdown")
        await handle

        assert events[-1].type == TransportEventType.ERROR
        assert events[-1].error.detail == "shutdown"
        assert sum(1 for e in events if e.is_terminal) == 1


# ============================================================
# Raw streaming executor
# ============================================================

class TestOpenStream:
    """Test the streaming-open helper."""

    @pytest.mark.asyncio
    async def test_yields_response(self, make_client, fakes):
        body = fakes.ndjson_body({"a": 1}, {"a": 2})
        client, handler = make_client(httpx.Response(200, content=body))

        async with open_stream(URL, body={"stream": True}, client=client) as response:
            text = await response.aread()

        assert text == body
        assert handler.requests[0].headers["accept"] == "application/x-ndjson"

    @pytest.mark.asyncio
    async def test_open_retried_on_503(self, make_client, fakes):
        client, handler = make_client(
            httpx.Response(503, json={"error": {"message": "busy"}}),
            httpx.Response(200, content=b"{}\n"),
        )
        async with open_stream(URL, client=client, retry=fakes.FAST_RETRY) as response:
            assert response.status_code == 200
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_404_raises_immediately(self, make_client, fakes):
        client, handler = make_client(lambda r: httpx.Response(404, json={"error": "not found"}))
        with pytest.raises(HttpError) as exc_info:
            async with open_stream(URL, client=client, retry=fakes.FAST_RETRY):
                pass
        assert exc_info.value.status == 404
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_retry_on_override_retries_open(self, make_client, fakes):
        client, handler = make_client(
            httpx.Response(404, json={"error": "warming up"}),
            lambda r: httpx.Response(200, content=b'{"done": true}\n'),
        )
        retry = {**fakes.FAST_RETRY, "retry_on": lambda status=None, code=None: status in (None, 404)}
        async with open_stream(URL, client=client, retry=retry) as response:
            assert response.status_code == 200
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_token(self, make_client):
        client, handler = make_client(httpx.Response(200, content=b""))
        token = CancellationToken()
        token.cancel()
        with pytest.raises(HttpError) as exc_info:
            async with open_stream(URL, client=client, token=token):
                pass
        assert exc_info.value.code == "aborted"
