"""
LLM Client for Receipt Insights.

Thin async wrapper over an OpenAI-compatible ``/chat/completions`` endpoint,
used for item classification, per-item insight text, weekly tips and
receipt image extraction.

Every outbound request first takes a slot from the injected
RollingWindowRateLimiter. When the window is full the call fails fast with
RateLimitExceededError; callers are expected to fall back locally.

Errors:
- RateLimitExceededError: local window full, or HTTP 429 from the provider
- ExternalServiceError: transport failure, timeout, non-2xx status
- MalformedResponseError: unexpected response shape or unparseable JSON
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from src.lib.exceptions import (
    ExternalServiceError,
    MalformedResponseError,
    RateLimitExceededError,
)
from src.lib.security import RollingWindowRateLimiter

logger = logging.getLogger(__name__)

SERVICE_NAME = "llm"

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_content(content: str) -> dict[str, Any]:
    """
    Parse a model answer that should be a JSON object.

    Tolerates surrounding whitespace and a Markdown code fence.

    Raises:
        MalformedResponseError: If the content is not a JSON object.
    """
    text = content.strip()
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"LLM returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedResponseError(f"LLM returned JSON {type(data).__name__}, expected object")
    return data


class LLMClient:
    """
    OpenAI-compatible chat client.

    Args:
        base_url: API root, e.g. ``https://api.openai.com/v1``.
        api_key: Bearer token (may be empty for local gateways).
        model: Default chat model.
        rate_limiter: Request budget shared by all calls of this client.
        timeout: Per-request timeout in seconds.
        http_client: Pre-built AsyncClient (tests pass one with a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        rate_limiter: RollingWindowRateLimiter | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.rate_limiter = rate_limiter or RollingWindowRateLimiter()
        self.timeout = timeout
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        max_tokens: int = 200,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> str:
        """
        Run one chat completion and return the first choice's text.

        Args:
            messages: Chat messages (``{"role", "content"}``); content may be a
                list of parts for vision requests.
            model: Overrides the default model.
            max_tokens: Completion token cap.
            temperature: Sampling temperature.
            json_mode: Ask the provider for a JSON object response.

        Returns:
            Stripped message content.
        """
        if not self.rate_limiter.try_acquire():
            retry_after = self.rate_limiter.retry_after()
            logger.warning("LLM request rejected by local rate limiter (retry in %.1fs)", retry_after)
            raise RateLimitExceededError(SERVICE_NAME, retry_after)

        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=self._headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(f"LLM request timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"LLM request failed: {exc}") from exc

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("retry-after"))
            raise RateLimitExceededError(SERVICE_NAME, retry_after)
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"LLM request failed with HTTP {response.status_code}"
            )

        try:
            payload = response.json()
            content = payload["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError("LLM response has no message content") from exc
        if not isinstance(content, str):
            raise MalformedResponseError("LLM message content is not text")
        return content.strip()

    async def complete_json(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        max_tokens: int = 200,
        temperature: float = 0.1,
    ) -> dict[str, Any]:
        """Run a completion in JSON mode and parse the answer as an object."""
        content = await self.complete(
            messages,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            json_mode=True,
        )
        return parse_json_content(content)


def _parse_retry_after(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        return max(0.0, float(value))
    except ValueError:
        return 0.0


__all__ = ["LLMClient", "SERVICE_NAME", "parse_json_content"]
