"""Tests for StreamingTransport over httpx.MockTransport.

Covers SSE payload extraction, the [DONE] sentinel, retry behavior for
rate limits and network failures, upstream errors, and cancellation.
"""

import json

import httpx
import pytest

from colloquy.api.errors import TransportError, UpstreamError
from colloquy.api.transport import StreamingTransport, build_headers
from colloquy.config import ModelConfig


def _sse(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n\n" for p in payloads).encode()


def _transport(handler, settings, model=None) -> StreamingTransport:
    model = model or ModelConfig(model_id="test-model", api_key="sk-test")
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.test")
    return StreamingTransport(model, settings, http=http)


async def _collect(transport: StreamingTransport) -> list[str]:
    return [p async for p in transport.stream("/chat/completions", {"stream": True})]


class _FailingStream(httpx.AsyncByteStream):
    """Yields one SSE payload, then drops the connection."""

    async def __aiter__(self):
        yield _sse('{"n": 1}')
        raise httpx.ReadError("connection reset")


class _UndecodableStream(httpx.AsyncByteStream):
    """Fails to decode before yielding anything."""

    async def __aiter__(self):
        raise httpx.DecodingError("bad gzip stream")
        yield b""


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------


class TestBuildHeaders:
    def test_openai_bearer(self):
        headers = build_headers(ModelConfig(model_id="m", api_key="sk-abc"))
        assert headers["authorization"] == "Bearer sk-abc"
        assert "x-api-key" not in headers

    def test_anthropic_api_key(self):
        headers = build_headers(ModelConfig(model_id="m", protocol="anthropic", api_key="sk-ant-api-1"))
        assert headers["x-api-key"] == "sk-ant-api-1"
        assert headers["anthropic-version"] == "2023-06-01"

    def test_anthropic_oauth_token(self):
        headers = build_headers(ModelConfig(model_id="m", protocol="anthropic", api_key="sk-ant-oat01-xyz"))
        assert headers["authorization"] == "Bearer sk-ant-oat01-xyz"
        assert headers["anthropic-beta"] == "oauth-2025-04-20"
        assert "x-api-key" not in headers

    def test_missing_key(self):
        headers = build_headers(ModelConfig(model_id="m"))
        assert "authorization" not in headers


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStream:
    @pytest.mark.asyncio
    async def test_yields_data_payloads_until_done(self, settings):
        body = _sse('{"a": 1}', '{"b": 2}', "[DONE]", '{"ignored": true}')
        transport = _transport(lambda request: httpx.Response(200, content=body), settings)
        assert await _collect(transport) == ['{"a": 1}', '{"b": 2}']
        assert transport.active is False

    @pytest.mark.asyncio
    async def test_skips_event_and_blank_lines(self, settings):
        body = b'event: message_start\ndata: {"type": "message_start"}\n\n: comment\n\ndata: \n\n'
        transport = _transport(lambda request: httpx.Response(200, content=body), settings)
        assert await _collect(transport) == ['{"type": "message_start"}']

    @pytest.mark.asyncio
    async def test_posts_json_body(self, settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(200, content=_sse("[DONE]"))

        transport = _transport(handler, settings)
        await _collect(transport)
        assert seen == [("POST", "/chat/completions", {"stream": True})]

    @pytest.mark.asyncio
    async def test_upstream_error_not_retried(self, settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, content=b'{"error": "bad request"}')

        transport = _transport(handler, settings)
        with pytest.raises(UpstreamError) as exc_info:
            await _collect(transport)
        assert exc_info.value.status_code == 400
        assert "bad request" in exc_info.value.body
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retried_once(self, settings):
        responses = [
            httpx.Response(429, headers={"retry-after": "0"}, content=b"slow down"),
            httpx.Response(200, content=_sse('{"ok": true}')),
        ]
        transport = _transport(lambda request: responses.pop(0), settings)
        assert await _collect(transport) == ['{"ok": true}']
        assert responses == []

    @pytest.mark.asyncio
    async def test_second_rate_limit_surfaces(self, settings):
        transport = _transport(
            lambda request: httpx.Response(529, headers={"retry-after": "0"}, content=b"overloaded"),
            settings,
        )
        with pytest.raises(UpstreamError) as exc_info:
            await _collect(transport)
        assert exc_info.value.status_code == 529

    @pytest.mark.asyncio
    async def test_network_error_retried_before_first_payload(self, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, content=_sse('{"ok": true}'))

        transport = _transport(handler, settings)
        assert await _collect(transport) == ['{"ok": true}']
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, settings):
        settings.transport_max_retries = 1
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        transport = _transport(handler, settings)
        with pytest.raises(TransportError, match="after 2 attempts"):
            await _collect(transport)
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_failure_after_payload_not_retried(self, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(200, stream=_FailingStream())

        transport = _transport(handler, settings)
        received = []
        with pytest.raises(TransportError, match="interrupted"):
            async for payload in transport.stream("/chat/completions", {}):
                received.append(payload)
        assert received == ['{"n": 1}']
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_proxy_error_mapped_to_transport_error(self, settings):
        settings.transport_max_retries = 1
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ProxyError("proxy refused", request=request)

        transport = _transport(handler, settings)
        with pytest.raises(TransportError, match="after 2 attempts"):
            await _collect(transport)
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_undecodable_body_not_retried(self, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(200, stream=_UndecodableStream())

        transport = _transport(handler, settings)
        with pytest.raises(TransportError, match="Unreadable"):
            await _collect(transport)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_injected_client_sends_auth_headers(self, settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers)
            return httpx.Response(200, content=_sse("[DONE]"))

        transport = _transport(handler, settings, ModelConfig(model_id="m", api_key="sk-injected"))
        await _collect(transport)
        assert seen[0]["authorization"] == "Bearer sk-injected"

    @pytest.mark.asyncio
    async def test_cancel_stops_emission(self, settings):
        body = _sse(*[json.dumps({"n": i}) for i in range(10)])
        transport = _transport(lambda request: httpx.Response(200, content=body), settings)
        received = []
        async for payload in transport.stream("/chat/completions", {}):
            received.append(payload)
            transport.cancel()
        assert received == ['{"n": 0}']
        assert transport.active is False

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, settings):
        transport = _transport(lambda request: httpx.Response(200, content=_sse("{}")), settings)
        assert await _collect(transport) == ["{}"]
        transport.cancel()
        transport.cancel()
        # A fresh stream is unaffected by the earlier cancel
        assert await _collect(transport) == ["{}"]

    @pytest.mark.asyncio
    async def test_stream_requires_client(self, settings):
        transport = StreamingTransport(ModelConfig(model_id="m"), settings)
        with pytest.raises(RuntimeError, match="start"):
            await _collect(transport)

    @pytest.mark.asyncio
    async def test_start_and_close_own_client(self, settings):
        transport = StreamingTransport(ModelConfig(model_id="m", api_key="sk-test"), settings)
        await transport.start()
        assert transport._http is not None
        await transport.close()
        assert transport._http is None
