"""
Unit Tests for Proxy Routes
============================

Tests for relay/app/proxy/routes.py and relay/app/proxy/headers.py

Test Coverage:
--------------
1. URL rewriting onto the upstream host (path and raw query preserved)
2. Request header blocklist (case-insensitive, repeated headers)
3. Credential injection (preserve and overwrite modes)
4. Body handling (streamed for POST, dropped for GET)
5. Response header blocklist and CORS header ownership
6. Streaming passthrough (chunks reach the client before upstream finishes)
7. Error handling (timeouts, connection errors, upstream non-2xx passthrough)
8. Deployment profiles (dashscope wildcard route, deepseek fixed route)

Run tests:
----------
    pytest relay/app/tests/test_proxy.py -v
"""

import asyncio
import json

import httpx
import pytest
from fastapi import status
from fastapi.testclient import TestClient

from relay.app.config import Settings
from relay.app.main import create_app
from relay.app.proxy.headers import (
    apply_credential,
    filter_request_headers,
    filter_response_headers,
)
from relay.app.proxy.routes import relay_upstream_body

API_KEY = "secret123"
CHAT_PATH = "/compatible-mode/v1/chat/completions"


# ============================================================================
# Test Doubles
# ============================================================================

class TrackingStream(httpx.AsyncByteStream):
    """Upstream body that remembers whether it was closed."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self):
        self.closed = True


class StalledStream(TrackingStream):
    """Sends its chunks, then stays open without sending more."""

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        await asyncio.Event().wait()


class BrokenStream(TrackingStream):
    """Sends its chunks, then fails like a reset upstream connection."""

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadError("Connection reset by peer")


def unread_response(status_code=200, body=b"", headers=None):
    """
    Upstream response whose body is still an open stream.

    Responses built from bytes or json are read on construction and can no
    longer be relayed with aiter_raw(), unlike what a real transport returns.
    """
    return httpx.Response(status_code, headers=headers, stream=TrackingStream([body]))


def json_response(status_code, payload):
    return unread_response(
        status_code,
        json.dumps(payload).encode(),
        {"Content-Type": "application/json"},
    )


class UpstreamRecorder:
    """Upstream handler for httpx.MockTransport that records every request."""

    def __init__(self):
        self.requests = []
        self.responder = lambda request: json_response(200, {"ok": True})

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_settings():
    """Create settings for the default dashscope deployment"""
    return Settings(UPSTREAM_API_KEY=API_KEY, REALTIME_ENABLED=False)


@pytest.fixture
def upstream():
    return UpstreamRecorder()


def make_client(settings: Settings, upstream: UpstreamRecorder) -> TestClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return TestClient(create_app(settings, http_client=http_client))


@pytest.fixture
def client(mock_settings, upstream):
    """Create test client wired to the recording upstream"""
    return make_client(mock_settings, upstream)


# ============================================================================
# End-to-End Forwarding Tests
# ============================================================================

def test_chat_completion_forwarded_with_injected_credential(client, upstream):
    """POST without Authorization reaches the upstream with the server key and identical body"""
    body = json.dumps(
        {"model": "qwen-plus", "messages": [{"role": "user", "content": "hi"}]}
    ).encode()

    response = client.post(
        CHAT_PATH,
        content=body,
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"ok": True}

    forwarded = upstream.last
    assert forwarded.method == "POST"
    assert str(forwarded.url) == "https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions"
    assert forwarded.headers["authorization"] == f"Bearer {API_KEY}"
    assert forwarded.headers["content-type"] == "application/json"
    assert forwarded.content == body


def test_query_string_forwarded_verbatim(client, upstream):
    """Parameter order, duplicate keys and escapes survive the rewrite"""
    query = "b=2&a=1&a=3&q=hello%20world&flag"

    response = client.get(f"/compatible-mode/v1/models?{query}")

    assert response.status_code == status.HTTP_200_OK
    assert upstream.last.url.query == query.encode()
    assert upstream.last.url.path == "/compatible-mode/v1/models"


def test_upstream_host_header_replaces_client_host(client, upstream):
    client.get("/compatible-mode/v1/models")

    assert upstream.last.headers.get_list("host") == ["dashscope.aliyuncs.com"]


def test_request_blocklist_headers_not_forwarded(client, upstream):
    """Blocked headers are removed regardless of casing or repetition"""
    response = client.post(
        CHAT_PATH,
        content=b"{}",
        headers=[
            ("Content-Type", "application/json"),
            ("Origin", "https://app.example"),
            ("Referer", "https://app.example/chat"),
            ("Keep-Alive", "timeout=5"),
            ("PROXY-AUTHORIZATION", "Basic Zm9vOmJhcg=="),
            ("Proxy-Authorization", "Basic YmF6OnF1eA=="),
            ("X-Trace", "1"),
            ("X-Trace", "2"),
        ],
    )

    assert response.status_code == status.HTTP_200_OK

    forwarded = upstream.last.headers
    for name in ("origin", "referer", "keep-alive", "proxy-authorization"):
        assert name not in forwarded
    assert forwarded.get_list("x-trace") == ["1", "2"]


def test_existing_authorization_preserved(client, upstream):
    client.post(
        CHAT_PATH,
        content=b"{}",
        headers={"Authorization": "Bearer client-supplied"},
    )

    assert upstream.last.headers.get_list("authorization") == ["Bearer client-supplied"]


def test_existing_authorization_overwritten_in_overwrite_mode(upstream):
    settings = Settings(
        UPSTREAM_API_KEY=API_KEY,
        AUTHORIZATION_MODE="overwrite",
        REALTIME_ENABLED=False,
    )
    client = make_client(settings, upstream)

    client.post(
        CHAT_PATH,
        content=b"{}",
        headers={"Authorization": "Bearer client-supplied"},
    )

    assert upstream.last.headers.get_list("authorization") == [f"Bearer {API_KEY}"]


def test_get_body_not_forwarded(client, upstream):
    response = client.request("GET", "/compatible-mode/v1/models", content=b"should-not-leave")

    assert response.status_code == status.HTTP_200_OK
    assert upstream.last.content == b""
    assert "content-length" not in upstream.last.headers


def test_chunked_request_body_streamed_upstream(client, upstream):
    """A body sent without Content-Length is still forwarded in full"""
    def body():
        yield b'{"model": "qwen-plus", '
        yield b'"stream": true}'

    client.post(CHAT_PATH, content=body())

    assert upstream.last.content == b'{"model": "qwen-plus", "stream": true}'


def test_other_methods_forwarded_on_wildcard_route(client, upstream):
    response = client.delete("/compatible-mode/v1/files/file-123")

    assert response.status_code == status.HTTP_200_OK
    assert upstream.last.method == "DELETE"
    assert upstream.last.url.path == "/compatible-mode/v1/files/file-123"


# ============================================================================
# Response Handling Tests
# ============================================================================

def test_response_blocklist_headers_removed(client, upstream):
    upstream.responder = lambda request: unread_response(
        200,
        b"{}",
        headers=[
            ("Content-Type", "application/json"),
            ("Keep-Alive", "timeout=5"),
            ("Proxy-Authenticate", "Basic"),
            ("Trailer", "X-Checksum"),
            ("Upgrade", "h2c"),
            ("Access-Control-Allow-Origin", "https://upstream.example"),
            ("Access-Control-Allow-Credentials", "true"),
            ("Access-Control-Max-Age", "600"),
            ("Set-Cookie", "a=1"),
            ("Set-Cookie", "b=2"),
            ("X-Request-Id", "req-42"),
        ],
    )

    response = client.post(CHAT_PATH, content=b"{}", headers={"Origin": "https://app.example"})

    assert response.status_code == status.HTTP_200_OK
    for name in ("keep-alive", "proxy-authenticate", "trailer", "upgrade",
                 "access-control-allow-credentials", "access-control-max-age"):
        assert name not in response.headers

    # CORS layer is the only source, so the value appears exactly once
    assert response.headers.get_list("access-control-allow-origin") == ["*"]
    assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
    assert response.headers["x-request-id"] == "req-42"


def test_upstream_error_status_passed_through(client, upstream):
    """Upstream 4xx/5xx are not proxy errors: status and body pass unchanged"""
    upstream.responder = lambda request: json_response(
        429,
        {"error": {"code": "Throttling", "message": "Requests rate limit exceeded"}},
    )

    response = client.post(CHAT_PATH, content=b"{}")

    assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
    assert response.json()["error"]["code"] == "Throttling"
    assert len(upstream.requests) == 1


def test_streamed_response_body_delivered_in_full(client, upstream):
    async def sse():
        yield b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
        yield b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n'
        yield b"data: [DONE]\n\n"

    upstream.responder = lambda request: httpx.Response(
        200, headers={"Content-Type": "text/event-stream"}, content=sse()
    )

    response = client.post(CHAT_PATH, content=b'{"stream": true}')

    assert response.status_code == status.HTTP_200_OK
    assert response.headers["content-type"] == "text/event-stream"
    assert response.text.endswith("data: [DONE]\n\n")
    assert response.text.count("data: ") == 3


def chat_scope():
    """ASGI scope of a streaming chat completion POST"""
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": CHAT_PATH,
        "raw_path": CHAT_PATH.encode(),
        "query_string": b"",
        "root_path": "",
        "headers": [
            (b"host", b"relay.test"),
            (b"content-type", b"application/json"),
            (b"content-length", b"16"),
        ],
        "client": ("127.0.0.1", 50000),
        "server": ("relay.test", 80),
    }


@pytest.mark.asyncio
async def test_first_chunk_reaches_client_before_upstream_finishes(mock_settings):
    """The upstream withholds its last chunks until the client has seen the first"""
    first_chunk_delivered = asyncio.Event()

    async def sse():
        yield b"data: one\n\n"
        await asyncio.wait_for(first_chunk_delivered.wait(), timeout=5)
        yield b"data: two\n\n"
        yield b"data: [DONE]\n\n"

    async def handler(request):
        return httpx.Response(200, headers={"Content-Type": "text/event-stream"}, content=sse())

    app = create_app(
        mock_settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    chunks = []
    request_consumed = False
    never = asyncio.Event()

    async def receive():
        nonlocal request_consumed
        if not request_consumed:
            request_consumed = True
            return {"type": "http.request", "body": b'{"stream": true}', "more_body": False}
        await never.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == "http.response.body" and message.get("body"):
            chunks.append(message["body"])
            first_chunk_delivered.set()

    await asyncio.wait_for(app(chat_scope(), receive, send), timeout=10)

    assert chunks[0] == b"data: one\n\n"
    assert b"".join(chunks) == b"data: one\n\ndata: two\n\ndata: [DONE]\n\n"


@pytest.mark.asyncio
async def test_client_disconnect_closes_upstream_response(mock_settings):
    """A client leaving mid-stream ends the relay and closes the upstream body"""
    stream = StalledStream([b"data: one\n\n"])

    async def handler(request):
        return httpx.Response(200, headers={"Content-Type": "text/event-stream"}, stream=stream)

    app = create_app(
        mock_settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    chunks = []
    request_consumed = False
    first_chunk_delivered = asyncio.Event()

    async def receive():
        nonlocal request_consumed
        if not request_consumed:
            request_consumed = True
            return {"type": "http.request", "body": b'{"stream": true}', "more_body": False}
        await first_chunk_delivered.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == "http.response.body" and message.get("body"):
            chunks.append(message["body"])
            first_chunk_delivered.set()

    await asyncio.wait_for(app(chat_scope(), receive, send), timeout=10)

    assert chunks == [b"data: one\n\n"]
    assert stream.closed


@pytest.mark.asyncio
async def test_upstream_failure_mid_stream_aborts_response(mock_settings):
    """Bytes already relayed stand; the upstream error propagates to the server"""
    stream = BrokenStream([b"data: one\n\n"])

    async def handler(request):
        return httpx.Response(200, headers={"Content-Type": "text/event-stream"}, stream=stream)

    app = create_app(
        mock_settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    messages = []
    request_consumed = False
    never = asyncio.Event()

    async def receive():
        nonlocal request_consumed
        if not request_consumed:
            request_consumed = True
            return {"type": "http.request", "body": b'{"stream": true}', "more_body": False}
        await never.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    with pytest.raises(httpx.ReadError):
        await asyncio.wait_for(app(chat_scope(), receive, send), timeout=10)

    assert messages[0]["type"] == "http.response.start"
    assert messages[0]["status"] == status.HTTP_200_OK
    sent = [m["body"] for m in messages if m["type"] == "http.response.body" and m.get("body")]
    assert sent == [b"data: one\n\n"]
    # The response was never finished normally
    assert not any(
        m["type"] == "http.response.body" and not m.get("more_body", False)
        for m in messages
    )
    assert stream.closed


@pytest.mark.asyncio
async def test_upstream_closed_when_client_stops_reading():
    """Closing the relayed body (client gone) closes the upstream response"""
    stream = TrackingStream([b"one", b"two", b"three"])
    upstream_response = httpx.Response(
        200,
        stream=stream,
        request=httpx.Request("POST", "https://dashscope.aliyuncs.com" + CHAT_PATH),
    )

    body = relay_upstream_body(upstream_response)
    assert await body.__anext__() == b"one"

    await body.aclose()

    assert stream.closed
    assert upstream_response.is_closed


# ============================================================================
# Error Handling Tests
# ============================================================================

def test_upstream_connection_error_returns_502(client, upstream):
    def refuse(request):
        raise httpx.ConnectError("Connection refused", request=request)

    upstream.responder = refuse

    response = client.post(CHAT_PATH, content=b"{}")

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert "upstream" in response.json()["detail"].lower()
    assert len(upstream.requests) == 1


def test_upstream_timeout_returns_504(client, upstream):
    def stall(request):
        raise httpx.ConnectTimeout("Timed out", request=request)

    upstream.responder = stall

    response = client.post(CHAT_PATH, content=b"{}")

    assert response.status_code == status.HTTP_504_GATEWAY_TIMEOUT
    assert "timeout" in response.json()["detail"].lower()


def test_unknown_path_returns_404(client, upstream):
    response = client.post("/v1/chat/completions", content=b"{}")

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert upstream.requests == []


# ============================================================================
# CORS Tests
# ============================================================================

def test_preflight_answered_without_upstream_call(client, upstream):
    response = client.options(
        CHAT_PATH,
        headers={
            "Origin": "https://app.example",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization, content-type",
        },
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.headers["access-control-allow-origin"] == "*"
    assert "POST" in response.headers["access-control-allow-methods"]
    assert "authorization" in response.headers["access-control-allow-headers"].lower()
    assert upstream.requests == []


def test_configured_origin_list_echoes_allowed_origin(upstream):
    settings = Settings(
        UPSTREAM_API_KEY=API_KEY,
        ALLOWED_ORIGINS="https://app.example, https://admin.example",
        REALTIME_ENABLED=False,
    )
    client = make_client(settings, upstream)

    response = client.post(CHAT_PATH, content=b"{}", headers={"Origin": "https://admin.example"})

    assert response.headers.get_list("access-control-allow-origin") == ["https://admin.example"]
    assert response.headers["access-control-allow-credentials"] == "true"


# ============================================================================
# Deployment Profile Tests
# ============================================================================

@pytest.fixture
def deepseek_client(upstream):
    settings = Settings(UPSTREAM_API_KEY="ds-key", DEPLOYMENT_PROFILE="deepseek")
    return make_client(settings, upstream)


def test_deepseek_profile_forwards_chat_completions(deepseek_client, upstream):
    response = deepseek_client.post("/chat/completions", content=b'{"model": "deepseek-chat"}')

    assert response.status_code == status.HTTP_200_OK
    assert str(upstream.last.url) == "https://api.deepseek.com/chat/completions"
    assert upstream.last.headers["authorization"] == "Bearer ds-key"


def test_deepseek_profile_rejects_other_methods_and_paths(deepseek_client, upstream):
    assert deepseek_client.get("/chat/completions").status_code == status.HTTP_405_METHOD_NOT_ALLOWED
    assert deepseek_client.post(CHAT_PATH, content=b"{}").status_code == status.HTTP_404_NOT_FOUND
    assert upstream.requests == []


def test_upstream_base_url_override(upstream):
    settings = Settings(
        UPSTREAM_API_KEY=API_KEY,
        UPSTREAM_BASE_URL="https://dashscope-intl.aliyuncs.com/",
        REALTIME_ENABLED=False,
    )
    client = make_client(settings, upstream)

    client.post(CHAT_PATH, content=b"{}")

    assert str(upstream.last.url) == "https://dashscope-intl.aliyuncs.com" + CHAT_PATH


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "ok", "service": "relay", "profile": "dashscope"}


# ============================================================================
# Header Filter Unit Tests
# ============================================================================

def test_filter_request_headers_covers_full_blocklist():
    raw = [
        (b"host", b"relay.local:3000"),
        (b"connection", b"keep-alive"),
        (b"keep-alive", b"timeout=5"),
        (b"proxy-authenticate", b"Basic"),
        (b"proxy-authorization", b"Basic abc"),
        (b"te", b"trailers"),
        (b"trailer", b"X-Checksum"),
        (b"transfer-encoding", b"chunked"),
        (b"upgrade", b"websocket"),
        (b"origin", b"https://app.example"),
        (b"Referer", b"https://app.example/"),
        (b"content-type", b"application/json"),
    ]

    assert filter_request_headers(raw) == [(b"content-type", b"application/json")]


def test_filter_response_headers_drops_all_cors_headers():
    raw = [
        (b"Connection", b"close"),
        (b"Transfer-Encoding", b"chunked"),
        (b"Access-Control-Expose-Headers", b"X-Request-Id"),
        (b"access-control-allow-methods", b"GET"),
        (b"Content-Type", b"text/event-stream"),
    ]

    assert filter_response_headers(raw) == [(b"Content-Type", b"text/event-stream")]


def test_apply_credential_only_when_absent():
    injected = apply_credential([(b"accept", b"*/*")], "Bearer k")
    assert injected == [(b"accept", b"*/*"), (b"Authorization", b"Bearer k")]

    existing = [(b"authorization", b"Bearer mine")]
    assert apply_credential(existing, "Bearer k") == existing
    assert apply_credential(existing, "Bearer k", overwrite=True) == [(b"Authorization", b"Bearer k")]


def test_proxy_logger_named_after_module():
    from relay.app.proxy import routes

    assert routes.logger.name == "relay.app.proxy.routes"
