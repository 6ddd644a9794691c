"""
Tests for the LLM client.

Uses httpx.MockTransport so no request leaves the process.

Covers:
- Request body (model, messages, JSON mode)
- Content extraction and JSON parsing (including code fences)
- Error mapping: 429, 5xx, transport errors, malformed bodies
- Local rate limiter fails fast without a request
"""

from __future__ import annotations

import json

import httpx
import pytest

from src.lib.exceptions import (
    ExternalServiceError,
    MalformedResponseError,
    RateLimitExceededError,
)
from src.lib.security import RollingWindowRateLimiter
from src.services.llm_client import LLMClient, parse_json_content


def _chat_response(content: object, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json={"choices": [{"message": {"content": content}}]})


def _client(handler, **kwargs) -> LLMClient:  # type: ignore[no-untyped-def]
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LLMClient("https://llm.test/v1/", api_key="k", http_client=http_client, **kwargs)


# =============================================================================
# parse_json_content
# =============================================================================


class TestParseJsonContent:
    def test_plain_object(self) -> None:
        assert parse_json_content('{"category": "dining"}') == {"category": "dining"}

    def test_code_fence(self) -> None:
        assert parse_json_content('```json\n{"a": 1}\n```') == {"a": 1}

    def test_invalid_json(self) -> None:
        with pytest.raises(MalformedResponseError):
            parse_json_content("not json")

    def test_non_object(self) -> None:
        with pytest.raises(MalformedResponseError, match="expected object"):
            parse_json_content("[1, 2]")


# =============================================================================
# complete / complete_json
# =============================================================================


@pytest.mark.asyncio
async def test_complete_sends_request_and_strips_content() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return _chat_response("  Buy in bulk.  ")

    client = _client(handler, model="tiny-model")
    text = await client.complete([{"role": "user", "content": "hi"}], max_tokens=50)

    assert text == "Buy in bulk."
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer k"
    body = seen["body"]
    assert body["model"] == "tiny-model"  # type: ignore[index]
    assert body["max_tokens"] == 50  # type: ignore[index]
    assert "response_format" not in body  # type: ignore[operator]


@pytest.mark.asyncio
async def test_complete_json_uses_json_mode() -> None:
    bodies: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return _chat_response('{"category": "groceries"}')

    client = _client(handler)
    answer = await client.complete_json([{"role": "user", "content": "milk"}])

    assert answer == {"category": "groceries"}
    assert bodies[0]["response_format"] == {"type": "json_object"}
    assert bodies[0]["temperature"] == 0.1


@pytest.mark.asyncio
async def test_provider_429_maps_to_rate_limit() -> None:
    client = _client(lambda request: httpx.Response(429, headers={"retry-after": "7"}))
    with pytest.raises(RateLimitExceededError) as exc_info:
        await client.complete([{"role": "user", "content": "x"}])
    assert exc_info.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_server_error_maps_to_external_service_error() -> None:
    client = _client(lambda request: httpx.Response(503))
    with pytest.raises(ExternalServiceError, match="HTTP 503"):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_transport_error_maps_to_external_service_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(ExternalServiceError, match="failed"):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_timeout_maps_to_external_service_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = _client(handler)
    with pytest.raises(ExternalServiceError, match="timed out"):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_missing_choices_is_malformed() -> None:
    client = _client(lambda request: httpx.Response(200, json={"id": "x"}))
    with pytest.raises(MalformedResponseError):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_non_text_content_is_malformed() -> None:
    client = _client(lambda request: _chat_response(None))
    with pytest.raises(MalformedResponseError):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_local_rate_limit_fails_fast() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return _chat_response("ok")

    client = _client(handler, rate_limiter=RollingWindowRateLimiter(max_requests=1))
    await client.complete([{"role": "user", "content": "x"}])
    with pytest.raises(RateLimitExceededError):
        await client.complete([{"role": "user", "content": "x"}])
    assert len(calls) == 1
