"""Tests for AnthropicClient -- message conversion, retries, error mapping.

_http is replaced with an AsyncMock so no network calls are made.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from revu.agent.client import AnthropicClient, parse_response, to_api_messages
from revu.agent.models import Message, ToolCall
from revu.cancellation import CancellationSource, none_token
from revu.errors import CancellationError, ModelNotSupportedError
from revu.tokens.calculator import CharTokenizer

from tests.fakes import make_settings

OK_BODY = {
    "content": [
        {"type": "text", "text": "Reading the file."},
        {"type": "tool_use", "id": "tu_1", "name": "read_file", "input": {"path": "a.py"}},
    ],
    "usage": {"input_tokens": 120, "output_tokens": 30},
}


def _error(status, error_type, message, headers=None):
    return httpx.Response(
        status,
        json={"type": "error", "error": {"type": error_type, "message": message}},
        headers=headers,
    )


@pytest.fixture
def client():
    c = AnthropicClient(make_settings(model="claude-test"), CharTokenizer(max_input_tokens=1000))
    c._http = AsyncMock()
    return c


class TestMessageConversion:
    def test_tool_results_become_user_blocks(self):
        messages = [
            Message(role="system", content="ignored"),
            Message(role="user", content="Review this"),
            Message(
                role="assistant",
                content="Checking",
                tool_calls=[ToolCall(id="t1", name="read_file", arguments_json='{"path": "a.py"}')],
            ),
            Message(role="tool", content="file body", tool_call_id="t1"),
            Message(role="user", content="Context is filling up"),
        ]

        api = to_api_messages(messages)

        assert [m["role"] for m in api] == ["user", "assistant", "user"]
        assert api[1]["content"] == [
            {"type": "text", "text": "Checking"},
            {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a.py"}},
        ]
        assert api[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "t1", "content": "file body"},
            {"type": "text", "text": "Context is filling up"},
        ]

    def test_malformed_arguments_sent_as_empty_input(self):
        api = to_api_messages([
            Message(role="assistant", tool_calls=[ToolCall(id="t1", name="x", arguments_json="{oops")]),
        ])
        assert api[0]["content"][0]["input"] == {}

    def test_empty_assistant_turn_dropped(self):
        api = to_api_messages([Message(role="user", content="hi"), Message(role="assistant", content="")])
        assert len(api) == 1

    def test_parse_response(self):
        response = parse_response(OK_BODY)
        assert response.content == "Reading the file."
        assert response.tool_calls[0].name == "read_file"
        assert response.tool_calls[0].parse_arguments() == {"path": "a.py"}
        assert response.usage["input_tokens"] == 120

    def test_parse_text_only(self):
        response = parse_response({"content": [{"type": "text", "text": "done"}]})
        assert response.tool_calls == []
        assert response.usage is None


class TestPostWithRetry:
    @pytest.mark.asyncio
    async def test_send_request(self, client):
        client._http.post.return_value = httpx.Response(200, json=OK_BODY)

        response = await client.send_request(
            "You review code.",
            [Message(role="user", content="Review this")],
            [{"name": "read_file", "description": "", "input_schema": {"type": "object"}}],
            none_token(),
        )

        assert response.tool_calls[0].id == "tu_1"
        payload = client._http.post.call_args.kwargs["json"]
        assert payload["model"] == "claude-test"
        assert payload["system"][0]["cache_control"] == {"type": "ephemeral"}
        assert payload["tools"][0]["name"] == "read_file"
        assert client._tokenizer.samples == 1

    @pytest.mark.asyncio
    async def test_tools_omitted_when_empty(self, client):
        client._http.post.return_value = httpx.Response(200, json=OK_BODY)
        await client.send_request("sys", [Message(role="user", content="hi")], [], none_token())
        assert "tools" not in client._http.post.call_args.kwargs["json"]

    @pytest.mark.asyncio
    async def test_retries_once_on_overload(self, client):
        client._http.post.side_effect = [
            _error(529, "overloaded_error", "Overloaded", headers={"retry-after": "0"}),
            httpx.Response(200, json=OK_BODY),
        ]
        data = await client._post_with_retry({"messages": []}, none_token())
        assert data == OK_BODY
        assert client._http.post.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_second_failure(self, client):
        client._http.post.side_effect = [
            _error(429, "rate_limit_error", "Slow down", headers={"retry-after": "0"}),
            _error(429, "rate_limit_error", "Slow down", headers={"retry-after": "0"}),
        ]
        with pytest.raises(RuntimeError, match="rate_limit_error"):
            await client._post_with_retry({"messages": []}, none_token())

    @pytest.mark.asyncio
    async def test_timeout_retried(self, client, monkeypatch):
        monkeypatch.setattr("revu.agent.client.asyncio.sleep", AsyncMock())
        client._http.post.side_effect = [
            httpx.ReadTimeout("slow"),
            httpx.Response(200, json=OK_BODY),
        ]
        assert await client._post_with_retry({"messages": []}, none_token()) == OK_BODY

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, client):
        client._http.post.return_value = _error(
            529, "overloaded_error", "Overloaded", headers={"retry-after": "20"}
        )
        source = CancellationSource()
        asyncio.get_running_loop().call_later(0.02, source.cancel)

        with pytest.raises(CancellationError):
            await client._post_with_retry({"messages": []}, source.token)
        assert client._http.post.await_count == 1

    @pytest.mark.asyncio
    async def test_bad_request_not_retried(self, client):
        client._http.post.return_value = _error(400, "invalid_request_error", "bad tools")
        with pytest.raises(RuntimeError, match=r"\(400\): invalid_request_error - bad tools"):
            await client._post_with_retry({"messages": []}, none_token())
        assert client._http.post.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_model(self, client):
        client._http.post.return_value = _error(404, "not_found_error", "model: claude-test")
        with pytest.raises(ModelNotSupportedError, match="claude-test"):
            await client._post_with_retry({"messages": []}, none_token())

    @pytest.mark.asyncio
    async def test_model_without_tool_support(self, client):
        client._http.post.return_value = _error(
            400, "invalid_request_error", "Tool use is not supported for this model"
        )
        with pytest.raises(ModelNotSupportedError):
            await client._post_with_retry({"messages": []}, none_token())

    @pytest.mark.asyncio
    async def test_transport_error(self, client):
        client._http.post.side_effect = httpx.ConnectError("refused")
        with pytest.raises(RuntimeError, match="HTTP error: refused"):
            await client._post_with_retry({"messages": []}, none_token())

    @pytest.mark.asyncio
    async def test_not_started(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            await AnthropicClient(make_settings())._post_once({})


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_bearer_token_preferred(self):
        client = AnthropicClient(make_settings(ANTHROPIC_AUTH_TOKEN="tok"))
        await client.start()
        try:
            assert client._http.headers["authorization"] == "Bearer tok"
            assert "x-api-key" not in client._http.headers
        finally:
            await client.close()
        assert client._http is None

    @pytest.mark.asyncio
    async def test_api_key_header(self):
        client = AnthropicClient(make_settings())
        await client.start()
        try:
            assert client._http.headers["x-api-key"] == "test-key"
        finally:
            await client.close()
