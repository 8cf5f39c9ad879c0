"""Chat-completions client for the model API (httpx, bearer auth)."""
from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from bridge_core.errors import ModelAPIError
from bridge_hub.rate_limit import (
    RateLimitError,
    RetryableError,
    exponential_backoff,
    is_rate_limit_error,
    is_transient_error,
)

logger = logging.getLogger(__name__)

MAX_LOGGED_SYSTEM_PROMPT = 100


def simplify_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep only the system message(s) and the most recent user message."""
    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), None)
    return [m for m in messages if m.get("role") == "system" or m is last_user]


def _loggable(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out = []
    for m in messages:
        content = str(m.get("content") or "")
        if m.get("role") == "system" and len(content) > MAX_LOGGED_SYSTEM_PROMPT:
            content = content[:MAX_LOGGED_SYSTEM_PROMPT] + "..."
        out.append({**m, "content": content})
    return out


class ModelClient:
    def __init__(
        self,
        *,
        api_key: str,
        api_url: str,
        model: str,
        temperature: float = 0.2,
        timeout_s: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.temperature = temperature
        self.timeout_s = timeout_s
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def build_request(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]], tool_choice: str
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = tool_choice
        return body

    async def complete(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]], tool_choice: str = "required"
    ) -> dict[str, Any]:
        """Request the next action. A 5xx is retried once with a reduced message list."""
        try:
            return await self._post(self.build_request(messages, tools, tool_choice))
        except ModelAPIError as e:
            if not e.is_server_error:
                raise
            logger.warning("Model API %s; retrying with simplified context", e.status)
            simplified = simplify_messages(messages)
            return await self._post(self.build_request(simplified, tools, tool_choice))

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self._post_with_retry(body)
        except RateLimitError as e:
            raise ModelAPIError(str(e), status=429) from e

    @exponential_backoff(max_retries=3, base_delay=1.0, max_delay=30.0, retryable_exceptions=(RetryableError,))
    async def _post_with_retry(self, body: dict[str, Any]) -> dict[str, Any]:
        return await self._post_raw(body)

    async def _post_raw(self, body: dict[str, Any]) -> dict[str, Any]:
        """Make the HTTP request without retry logic."""
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Model request: %s",
                json.dumps({**body, "messages": _loggable(body.get("messages") or [])}, default=str)[:4000],
            )
        try:
            resp = await self._client.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                timeout=self.timeout_s,
            )
        except httpx.TimeoutException as e:
            raise ModelAPIError(f"Model API timed out after {self.timeout_s}s") from e
        except httpx.TransportError as e:
            if not is_transient_error(e):
                raise ModelAPIError(f"Model API request failed: {e}") from e
            logger.warning("Model API connection error: %s", e)
            raise RetryableError(f"connection error: {e}") from e

        if resp.status_code == 429 or (resp.status_code >= 400 and is_rate_limit_error(Exception(resp.text))):
            retry_after = resp.headers.get("Retry-After")
            raise RetryableError(
                f"HTTP {resp.status_code}: {resp.text[:500]}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if resp.status_code >= 400:
            raise ModelAPIError(
                f"Model API error: {resp.status_code}",
                status=resp.status_code,
                details={"body": resp.text[:1000]},
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise ModelAPIError("Model API returned invalid JSON", status=resp.status_code) from e
        logger.debug("Model response: %s", json.dumps(data, default=str)[:4000])
        return data
