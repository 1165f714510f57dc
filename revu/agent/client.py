"""Model invocation via direct httpx calls to the Anthropic Messages API.

ConversationRunner only depends on the ModelClient protocol; tests use
a scripted fake.  AnthropicClient is the production implementation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

import httpx

from revu.agent.models import Message, ModelResponse, ToolCall
from revu.cancellation import CancellationToken
from revu.config import Settings
from revu.errors import ModelNotSupportedError
from revu.tokens.calculator import CharTokenizer

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_MODEL_NOT_SUPPORTED_PATTERNS = ("model not supported", "model_not_supported", "not supported for")
_RETRYABLE_STATUS = frozenset({429, 500, 529})
_MAX_RETRY_DELAY = 30.0


class ModelClient(Protocol):
    """Sends one chat request with tools.

    Must raise CancellationError when the token fires and may raise
    FatalModelError for conditions the caller should render specially.
    """

    async def send_request(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]],
        token: CancellationToken,
    ) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def to_api_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert history to Anthropic format.

    Tool results become tool_result blocks inside a user message and
    adjacent user turns are merged, since the API requires alternation.
    """
    result: list[dict[str, Any]] = []

    def append(role: str, blocks: list[dict[str, Any]]) -> None:
        if result and result[-1]["role"] == role:
            result[-1]["content"].extend(blocks)
        else:
            result.append({"role": role, "content": blocks})

    for message in messages:
        if message.role == "system":
            continue
        if message.role == "tool":
            append("user", [{
                "type": "tool_result",
                "tool_use_id": message.tool_call_id or "",
                "content": message.content or "",
            }])
        elif message.role == "assistant":
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls or []:
                try:
                    tool_input = call.parse_arguments()
                except ValueError:
                    tool_input = {}
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": tool_input,
                })
            if blocks:
                append("assistant", blocks)
        elif message.content:
            append("user", [{"type": "text", "text": message.content}])
    return result


def parse_response(data: dict[str, Any]) -> ModelResponse:
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in data.get("content", []):
        if block.get("type") == "text":
            text_parts.append(block["text"])
        elif block.get("type") == "tool_use":
            tool_calls.append(ToolCall(
                id=block["id"],
                name=block["name"],
                arguments_json=json.dumps(block.get("input", {})),
            ))
    return ModelResponse(
        content="\n".join(text_parts) if text_parts else None,
        tool_calls=tool_calls,
        usage=data.get("usage"),
    )


def _is_model_not_supported(status_code: int, error_type: str, error_msg: str) -> bool:
    if status_code == 404 and error_type == "not_found_error":
        return True
    lowered = error_msg.lower()
    return any(pattern in lowered for pattern in _MODEL_NOT_SUPPORTED_PATTERNS)


def _api_error(response: httpx.Response) -> tuple[str, str]:
    """(type, message) from an error body, or a generic pair for non-JSON bodies."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return "http_error", f"HTTP {response.status_code}: {response.text[:500]}"
    return error.get("type", "unknown"), error.get("message", "unknown error")


class _RetryableAPIError(Exception):
    def __init__(self, message: str, delay: float) -> None:
        super().__init__(message)
        self.delay = delay


# ---------------------------------------------------------------------------
# AnthropicClient
# ---------------------------------------------------------------------------


class AnthropicClient:
    """ModelClient backed by the Anthropic Messages API."""

    def __init__(self, settings: Settings, tokenizer: CharTokenizer | None = None) -> None:
        self._settings = settings
        self._tokenizer = tokenizer
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""
        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
        elif api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (auth: %s)", "Bearer token" if auth_token else "API key")

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def send_request(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[dict[str, Any]],
        token: CancellationToken,
    ) -> ModelResponse:
        payload = self._build_payload(system_prompt, to_api_messages(messages), tools)
        data = await self._post_with_retry(payload, token)
        response = parse_response(data)
        self._calibrate(payload, response)
        return response

    def _build_payload(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def _post_with_retry(
        self, payload: dict[str, Any], token: CancellationToken
    ) -> dict[str, Any]:
        """POST /v1/messages, retrying once on overload or timeout.

        The request and the back-off both race the token.
        """
        try:
            return await token.race(self._post_once(payload))
        except _RetryableAPIError as e:
            logger.warning("%s, retrying in %.1fs", e, e.delay)
            await token.race(asyncio.sleep(e.delay))
        try:
            return await token.race(self._post_once(payload))
        except _RetryableAPIError as e:
            raise RuntimeError(str(e)) from e

    async def _post_once(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        try:
            response = await self._http.post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise _RetryableAPIError(f"API request timed out: {e}", 1.0) from e
        except httpx.HTTPError as e:
            raise RuntimeError(f"HTTP error: {e}") from e

        if response.status_code == 200:
            return response.json()

        error_type, error_msg = _api_error(response)
        if _is_model_not_supported(response.status_code, error_type, error_msg):
            raise ModelNotSupportedError(self._settings.model, error_msg)

        message = f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
        if response.status_code in _RETRYABLE_STATUS:
            delay = min(float(response.headers.get("retry-after", "1")), _MAX_RETRY_DELAY)
            raise _RetryableAPIError(message, delay)
        raise RuntimeError(message)

    def _calibrate(self, payload: dict[str, Any], response: ModelResponse) -> None:
        if self._tokenizer is None or not response.usage:
            return
        input_tokens = response.usage.get("input_tokens", 0)
        input_chars = len(json.dumps(payload["system"])) + len(json.dumps(payload["messages"]))
        self._tokenizer.calibrate(input_chars, input_tokens)
