"""
Tests for the OpenAI-compatible backend.
Run with: pytest tests/test_backends.py
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chatrelay.backends import BackendResponse, OpenAICompatibleBackend
from chatrelay.errors import UpstreamUnavailable

_RealAsyncClient = httpx.AsyncClient


def _client_factory(handler):
    """Real AsyncClient over a MockTransport, in place of the network."""
    transport = httpx.MockTransport(handler)
    return lambda **kwargs: _RealAsyncClient(transport=transport, timeout=kwargs.get("timeout"))


# ---------------------------------------------------------------------------
# BackendResponse
# ---------------------------------------------------------------------------

def test_backend_response_ok():
    ok = BackendResponse(ok=True, data={"choices": [{"message": {"content": "hi"}}]})
    assert ok.ok
    assert ok.content == "hi"

    err = BackendResponse(ok=False, error="timeout")
    assert not err.ok
    assert err.content == ""


def test_url_trailing_slash_stripped():
    b = OpenAICompatibleBackend(name="primary", url="http://fake:8080/", timeout=30)
    assert b.url == "http://fake:8080"
    assert b.timeout == 30


# ---------------------------------------------------------------------------
# forward()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_forward_success_sends_key():
    b = OpenAICompatibleBackend(name="primary", url="http://fake", api_key="sk-test")

    mock_resp = MagicMock()
    mock_resp.status_code = 200
    mock_resp.json.return_value = {"choices": [{"message": {"content": "Running shoes"}}]}

    with patch("chatrelay.backends.openai_compat.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.post.return_value = mock_resp
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client_cls.return_value = mock_client

        result = await b.forward({"model": "title-llm", "messages": []})

    assert result.ok
    assert result.content == "Running shoes"
    assert result.backend_name == "primary"
    _, kwargs = mock_client.post.call_args
    assert kwargs["json"]["stream"] is False
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_forward_timeout():
    b = OpenAICompatibleBackend(name="primary", url="http://fake", timeout=1)

    with patch("chatrelay.backends.openai_compat.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.post.side_effect = httpx.TimeoutException("timed out")
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client_cls.return_value = mock_client

        result = await b.forward({"model": "title-llm", "messages": []})

    assert not result.ok
    assert "Timeout" in result.error


@pytest.mark.asyncio
async def test_forward_http_error():
    b = OpenAICompatibleBackend(name="primary", url="http://fake")
    handler = lambda request: httpx.Response(503, text="overloaded")

    with patch("chatrelay.backends.openai_compat.httpx.AsyncClient", side_effect=_client_factory(handler)):
        result = await b.forward({"model": "m", "messages": []})

    assert not result.ok
    assert result.status_code == 503
    assert result.error.startswith("HTTP 503")


# ---------------------------------------------------------------------------
# forward_stream()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_yields_non_empty_lines():
    b = OpenAICompatibleBackend(name="primary", url="http://fake")
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        seen["path"] = request.url.path
        payload = 'data: {"choices": [{"delta": {"content": "Hi"}}]}\n\ndata: [DONE]\n\n'
        return httpx.Response(200, text=payload, headers={"content-type": "text/event-stream"})

    with patch("chatrelay.backends.openai_compat.httpx.AsyncClient", side_effect=_client_factory(handler)):
        lines = [line async for line in b.forward_stream({"model": "m", "messages": []})]

    assert lines == ['data: {"choices": [{"delta": {"content": "Hi"}}]}', "data: [DONE]"]
    assert seen["body"]["stream"] is True
    assert seen["path"] == "/v1/chat/completions"


@pytest.mark.asyncio
async def test_stream_http_error_raises_upstream():
    b = OpenAICompatibleBackend(name="primary", url="http://fake")
    handler = lambda request: httpx.Response(500, text="boom")

    with patch("chatrelay.backends.openai_compat.httpx.AsyncClient", side_effect=_client_factory(handler)):
        with pytest.raises(UpstreamUnavailable, match="HTTP 500"):
            async for _ in b.forward_stream({"model": "m", "messages": []}):
                pass


@pytest.mark.asyncio
async def test_stream_connect_error_raises_upstream():
    b = OpenAICompatibleBackend(name="primary", url="http://fake")

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with patch("chatrelay.backends.openai_compat.httpx.AsyncClient", side_effect=_client_factory(handler)):
        with pytest.raises(UpstreamUnavailable):
            async for _ in b.forward_stream({"model": "m", "messages": []}):
                pass


@pytest.mark.asyncio
async def test_health_check():
    b = OpenAICompatibleBackend(name="primary", url="http://fake")
    handler = lambda request: httpx.Response(200, json={"data": []})

    with patch("chatrelay.backends.openai_compat.httpx.AsyncClient", side_effect=_client_factory(handler)):
        assert await b.health_check()
