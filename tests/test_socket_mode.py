"""Tests for Socket Mode envelope handling."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

from bridge_hub.socket_mode import SocketModeClient, SocketModeConfig


def _client():
    router = MagicMock()
    router.handle_event = AsyncMock(return_value=None)
    router.handle_interaction = AsyncMock(return_value=None)
    client = SocketModeClient(SocketModeConfig(app_token="xapp-1"), MagicMock(), router)
    client._ws = MagicMock()
    client._ws.send = AsyncMock()
    client._ws.close = AsyncMock()
    return client, router


class TestHandleEnvelope:
    def test_acks_envelope_id(self):
        client, _ = _client()
        ws = client._ws

        async def _run():
            keep = await client.handle_envelope({"type": "slash_commands", "envelope_id": "env-1"})
            await client.stop()
            return keep

        assert asyncio.run(_run()) is True
        ws.send.assert_awaited_once_with(json.dumps({"envelope_id": "env-1"}))

    def test_hello_resets_reconnect_delay(self):
        client, _ = _client()
        client._reconnect_delay = 40
        assert asyncio.run(client.handle_envelope({"type": "hello", "num_connections": 1})) is True
        assert client._reconnect_delay == 5

    def test_disconnect_requests_reconnect(self):
        client, _ = _client()
        assert asyncio.run(client.handle_envelope({"type": "disconnect", "reason": "refresh_requested"})) is False

    def test_events_api_dispatches_event(self):
        client, router = _client()
        event = {"type": "app_mention", "channel": "C1", "ts": "1.0"}

        async def _run():
            await client.handle_envelope({"type": "events_api", "envelope_id": "e1", "payload": {"event": event}})
            await client.stop()

        asyncio.run(_run())
        router.handle_event.assert_awaited_once_with(event)

    def test_interactive_dispatches_payload(self):
        client, router = _client()
        payload = {"type": "block_actions", "actions": []}

        async def _run():
            await client.handle_envelope({"type": "interactive", "envelope_id": "e2", "payload": payload})
            await client.stop()

        asyncio.run(_run())
        router.handle_interaction.assert_awaited_once_with(payload)

    def test_failed_dispatch_does_not_escape(self):
        client, router = _client()
        router.handle_event = AsyncMock(side_effect=RuntimeError("boom"))

        async def _run():
            await client.handle_envelope({"type": "events_api", "payload": {"event": {"type": "message"}}})
            await client.stop()

        asyncio.run(_run())
        router.handle_event.assert_awaited_once()


class TestMessageLoop:
    def test_stops_on_disconnect(self):
        client, router = _client()
        frames = [
            "not json",
            json.dumps({"type": "hello"}),
            json.dumps({"type": "disconnect", "reason": "warning"}),
            json.dumps({"type": "events_api", "payload": {"event": {"type": "message"}}}),
        ]
        client._ws.recv = AsyncMock(side_effect=frames)
        client._running = True

        async def _run():
            await client._message_loop()
            await client.stop()

        asyncio.run(_run())
        assert client._ws is None
        router.handle_event.assert_not_awaited()
