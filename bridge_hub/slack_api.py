"""Slack Web API client (httpx).

Every call goes through :meth:`SlackClient.call`, which treats HTTP 429
and ``ratelimited`` as retryable and raises :class:`PlatformAPIError` for
any other ``ok: false`` response.
"""
from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from bridge_core.errors import PlatformAPIError
from bridge_hub.rate_limit import RetryableError, exponential_backoff, is_transient_error

logger = logging.getLogger(__name__)

SLACK_API_BASE = os.getenv("SLACK_API_BASE", "https://slack.com/api")

_GET_METHODS = frozenset({
    "conversations.replies",
    "conversations.history",
    "users.info",
    "reactions.get",
})

BENIGN_REACTION_ERRORS = frozenset({"already_reacted", "no_reaction"})


class SlackClient:
    def __init__(
        self,
        token: str,
        *,
        api_base: str | None = None,
        timeout_s: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token = token
        self.api_base = (api_base or SLACK_API_BASE).rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = http_client is None
        self.bot_user_id: str | None = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @exponential_backoff(max_retries=3, base_delay=1.0, max_delay=30.0, retryable_exceptions=(RetryableError,))
    async def call(self, method: str, payload: dict[str, Any] | None = None, *, token: str | None = None) -> dict[str, Any]:
        """Invoke a Web API method and return the decoded body."""
        url = f"{self.api_base}/{method}"
        headers = {"Authorization": f"Bearer {token or self.token}"}
        params = {k: v for k, v in (payload or {}).items() if v is not None}
        try:
            if method in _GET_METHODS:
                resp = await self._client.get(url, params=params, headers=headers)
            else:
                headers["Content-Type"] = "application/json; charset=utf-8"
                resp = await self._client.post(url, json=params, headers=headers)
        except httpx.TransportError as e:
            if not is_transient_error(e):
                raise PlatformAPIError(method, f"request_failed: {e}") from e
            logger.warning("Slack %s connection error: %s", method, e)
            raise RetryableError(f"{method}: connection error: {e}") from e

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise RetryableError(
                f"{method}: rate limited",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if resp.status_code >= 500:
            raise RetryableError(f"{method}: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise PlatformAPIError(method, f"invalid_response (HTTP {resp.status_code})") from e

        if not data.get("ok"):
            error = str(data.get("error") or "unknown_error")
            if error == "ratelimited":
                raise RetryableError(f"{method}: ratelimited")
            raise PlatformAPIError(method, error, {"response": data})
        return data

    # ---- messages ----

    async def post_message(
        self,
        channel: str,
        *,
        text: str,
        attachments: list[dict[str, Any]] | None = None,
        blocks: list[dict[str, Any]] | None = None,
        thread_ts: str | None = None,
    ) -> dict[str, Any]:
        return await self.call("chat.postMessage", {
            "channel": channel,
            "text": text,
            "attachments": attachments,
            "blocks": blocks,
            "thread_ts": thread_ts,
        })

    async def update_message(
        self,
        channel: str,
        ts: str,
        *,
        text: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
        blocks: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        return await self.call("chat.update", {
            "channel": channel,
            "ts": ts,
            "text": text,
            "attachments": attachments,
            "blocks": blocks,
        })

    # ---- reactions ----

    async def add_reaction(self, channel: str, ts: str, name: str) -> dict[str, Any]:
        return await self.call("reactions.add", {"channel": channel, "timestamp": ts, "name": name})

    async def remove_reaction(self, channel: str, ts: str, name: str) -> dict[str, Any]:
        return await self.call("reactions.remove", {"channel": channel, "timestamp": ts, "name": name})

    async def get_reactions(self, channel: str, ts: str) -> dict[str, Any]:
        """The message with its full reaction list (name, count, users)."""
        data = await self.call("reactions.get", {"channel": channel, "timestamp": ts, "full": "true"})
        return data.get("message") or {}

    async def try_add_reaction(self, channel: str, ts: str, name: str) -> bool:
        """Add a reaction, logging instead of raising on failure."""
        try:
            await self.add_reaction(channel, ts, name)
            return True
        except PlatformAPIError as e:
            if e.error in BENIGN_REACTION_ERRORS:
                return True
            logger.warning("Could not add reaction %s: %s", name, e)
        except Exception as e:
            logger.warning("Could not add reaction %s: %s", name, e)
        return False

    async def try_remove_reaction(self, channel: str, ts: str, name: str) -> bool:
        try:
            await self.remove_reaction(channel, ts, name)
            return True
        except PlatformAPIError as e:
            if e.error in BENIGN_REACTION_ERRORS:
                return True
            logger.warning("Could not remove reaction %s: %s", name, e)
        except Exception as e:
            logger.warning("Could not remove reaction %s: %s", name, e)
        return False

    # ---- history and users ----

    async def fetch_replies(self, channel: str, thread_ts: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        """All messages in a reply chain, oldest first, following cursors."""
        messages: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            data = await self.call("conversations.replies", {
                "channel": channel,
                "ts": thread_ts,
                "limit": min(limit, 200) if limit else 200,
                "cursor": cursor,
            })
            messages.extend(data.get("messages") or [])
            cursor = (data.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor or (limit and len(messages) >= limit):
                break
        return messages[:limit] if limit else messages

    async def fetch_history(self, channel: str, *, limit: int = 20) -> list[dict[str, Any]]:
        """Recent channel messages, oldest first."""
        data = await self.call("conversations.history", {"channel": channel, "limit": limit})
        return list(reversed(data.get("messages") or []))

    async def user_info(self, user_id: str) -> dict[str, Any]:
        data = await self.call("users.info", {"user": user_id})
        return data.get("user") or {}

    async def auth_test(self) -> dict[str, Any]:
        data = await self.call("auth.test")
        self.bot_user_id = data.get("user_id")
        return data

    async def open_socket_url(self, app_token: str) -> str:
        data = await self.call("apps.connections.open", token=app_token)
        url = data.get("url")
        if not url:
            raise PlatformAPIError("apps.connections.open", "missing_url")
        return str(url)
