"""Tests for the chat-completions client."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from bridge_core.errors import ModelAPIError
from bridge_hub.llm_http import ModelClient, simplify_messages

OK_BODY = {"choices": [{"message": {"role": "assistant", "content": "hi"}}]}
MESSAGES = [
    {"role": "system", "content": "You are helpful"},
    {"role": "user", "content": "first"},
    {"role": "assistant", "content": "answer"},
    {"role": "user", "content": "second"},
]
TOOLS = [{"type": "function", "function": {"name": "postMessage", "parameters": {"type": "object"}}}]


def _client(responses):
    """A ModelClient whose transport replays ``responses`` and records requests."""
    seen: list[httpx.Request] = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        template = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = ModelClient(api_key="sk-test", api_url="https://llm.test/v1/chat/completions", model="m1", http_client=http)
    return client, seen


def _body(request: httpx.Request) -> dict:
    return json.loads(request.content)


class TestSimplifyMessages:
    def test_keeps_system_and_last_user(self):
        assert simplify_messages(MESSAGES) == [MESSAGES[0], MESSAGES[3]]


class TestModelClient:
    def test_request_shape(self):
        client, seen = _client([httpx.Response(200, json=OK_BODY)])
        out = asyncio.run(client.complete(MESSAGES, TOOLS, "required"))

        assert out == OK_BODY
        request = seen[0]
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = _body(request)
        assert body["model"] == "m1"
        assert body["tools"] == TOOLS
        assert body["tool_choice"] == "required"
        assert body["messages"] == MESSAGES

    def test_no_tools_omits_tool_choice(self):
        client, seen = _client([httpx.Response(200, json=OK_BODY)])
        asyncio.run(client.complete(MESSAGES, [], "required"))
        body = _body(seen[0])
        assert "tools" not in body
        assert "tool_choice" not in body

    def test_server_error_retries_with_simplified_context(self):
        client, seen = _client([httpx.Response(500, text="oops"), httpx.Response(200, json=OK_BODY)])
        out = asyncio.run(client.complete(MESSAGES, TOOLS))
        assert out == OK_BODY
        assert len(seen) == 2
        assert _body(seen[1])["messages"] == [MESSAGES[0], MESSAGES[3]]

    def test_client_error_is_raised(self):
        client, seen = _client([httpx.Response(400, text="bad request")])
        with pytest.raises(ModelAPIError) as exc:
            asyncio.run(client.complete(MESSAGES, TOOLS))
        assert exc.value.status == 400
        assert len(seen) == 1

    @patch("bridge_hub.rate_limit.asyncio.sleep", new_callable=AsyncMock)
    def test_rate_limit_is_retried(self, mock_sleep):
        client, seen = _client([
            httpx.Response(429, text="Too Many Requests", headers={"Retry-After": "2"}),
            httpx.Response(200, json=OK_BODY),
        ])
        assert asyncio.run(client.complete(MESSAGES, TOOLS)) == OK_BODY
        assert len(seen) == 2
        assert mock_sleep.await_count == 1
        assert mock_sleep.await_args.args[0] >= 2

    @patch("bridge_hub.rate_limit.asyncio.sleep", new_callable=AsyncMock)
    def test_rate_limit_exhausted(self, mock_sleep):
        client, seen = _client([httpx.Response(429, text="Too Many Requests")])
        with pytest.raises(ModelAPIError) as exc:
            asyncio.run(client.complete(MESSAGES, TOOLS))
        assert exc.value.status == 429
        assert len(seen) == 4

    def test_invalid_json(self):
        client, _ = _client([httpx.Response(200, text="<html>")])
        with pytest.raises(ModelAPIError):
            asyncio.run(client.complete(MESSAGES, TOOLS))

    @patch("bridge_hub.rate_limit.asyncio.sleep", new_callable=AsyncMock)
    def test_connection_errors_are_retried(self, mock_sleep):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("Connection refused", request=request)
            return httpx.Response(200, json=OK_BODY)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = ModelClient(api_key="k", api_url="https://llm.test", model="m", http_client=http)
        assert asyncio.run(client.complete(MESSAGES, TOOLS)) == OK_BODY
        assert len(attempts) == 2

    def test_permanent_transport_errors_are_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.UnsupportedProtocol("Request URL has an unsupported protocol", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = ModelClient(api_key="k", api_url="https://llm.test", model="m", http_client=http)
        with pytest.raises(ModelAPIError) as exc:
            asyncio.run(client.complete(MESSAGES, TOOLS))
        assert "request failed" in str(exc.value)
        assert len(attempts) == 1

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = ModelClient(api_key="k", api_url="https://llm.test", model="m", http_client=http)
        with pytest.raises(ModelAPIError) as exc:
            asyncio.run(client.complete(MESSAGES, TOOLS))
        assert "timed out" in str(exc.value)
