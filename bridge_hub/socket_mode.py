"""Slack Socket Mode client (websockets)."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

import websockets

from bridge_hub.events import EventRouter

logger = logging.getLogger(__name__)


@dataclass
class SocketModeConfig:
    """Configuration for the Socket Mode client."""

    app_token: str
    reconnect_delay: int = 5  # seconds
    max_reconnect_delay: int = 60  # seconds


class SocketModeClient:
    """Receives Slack events over a Socket Mode WebSocket and routes them."""

    def __init__(self, config: SocketModeConfig, slack: Any, router: EventRouter) -> None:
        self.config = config
        self.slack = slack
        self.router = router
        self._ws: Any = None
        self._running = False
        self._reconnect_delay = config.reconnect_delay
        self._tasks: set[asyncio.Task[Any]] = set()

    async def connect(self) -> None:
        """Open a fresh Socket Mode URL and connect to it."""
        url = await self.slack.open_socket_url(self.config.app_token)
        logger.info("Connecting to Slack Socket Mode")
        self._ws = await websockets.connect(url)

    async def _send(self, msg: dict[str, Any]) -> None:
        if self._ws:
            await self._ws.send(json.dumps(msg))

    def _spawn(self, coro: Any, label: str) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("Background %s failed: %s", label, t.exception())

        task.add_done_callback(_done)

    async def handle_envelope(self, msg: dict[str, Any]) -> bool:
        """Ack and dispatch one envelope. Returns False when Slack asks us to reconnect."""
        msg_type = msg.get("type", "")
        envelope_id = msg.get("envelope_id")
        if envelope_id:
            await self._send({"envelope_id": envelope_id})

        if msg_type == "hello":
            self._reconnect_delay = self.config.reconnect_delay  # Reset on success
            logger.info("Socket Mode connected (%s connections)", (msg.get("num_connections") or "?"))
        elif msg_type == "disconnect":
            logger.info("Slack requested disconnect: %s", msg.get("reason"))
            return False
        elif msg_type == "events_api":
            event = (msg.get("payload") or {}).get("event") or {}
            self._spawn(self.router.handle_event(event), f"event {event.get('type')}")
        elif msg_type == "interactive":
            self._spawn(self.router.handle_interaction(msg.get("payload") or {}), "interaction")
        else:
            logger.debug("Unhandled envelope type: %s", msg_type)
        return True

    async def _message_loop(self) -> None:
        """Listen for incoming envelopes."""
        while self._running and self._ws:
            try:
                data = await self._ws.recv()
            except websockets.ConnectionClosed:
                logger.warning("Socket Mode connection closed")
                break
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Ignoring non-JSON frame")
                continue
            if not await self.handle_envelope(msg):
                break

    async def run(self) -> None:
        """Run the client with automatic reconnection."""
        self._running = True
        while self._running:
            try:
                await self.connect()
                await self._message_loop()
            except Exception as e:
                logger.error("Socket Mode connection error: %s", e)
            finally:
                if self._ws:
                    await self._ws.close()
                    self._ws = None

            if self._running:
                logger.info("Reconnecting in %d seconds...", self._reconnect_delay)
                await asyncio.sleep(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, self.config.max_reconnect_delay)

    async def stop(self) -> None:
        """Stop the client and wait for in-flight turns."""
        self._running = False
        if self._ws:
            await self._ws.close()
            self._ws = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
