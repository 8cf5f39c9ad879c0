"""Wires configuration, clients, store, registry and router together."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from bridge_core.orchestrator import Orchestrator
from bridge_core.thread_store import ThreadStore
from bridge_hub.config import BridgeConfig
from bridge_hub.events import EventRouter
from bridge_hub.llm_http import ModelClient
from bridge_hub.slack_api import SlackClient
from bridge_hub.tools.registry import ToolRegistry, get_registry

logger = logging.getLogger(__name__)


@dataclass
class Bridge:
    config: BridgeConfig
    slack: SlackClient
    model: ModelClient
    store: ThreadStore
    registry: ToolRegistry
    orchestrator: Orchestrator
    router: EventRouter

    async def start(self) -> None:
        """Resolve the bot's own user id so its messages are ignored."""
        try:
            auth = await self.slack.auth_test()
        except Exception as e:
            logger.warning("auth.test failed; bot messages are filtered by bot_id only: %s", e)
            return
        self.router.bot_user_id = auth.get("user_id")
        logger.info("Connected to Slack as %s (%s)", auth.get("user"), self.router.bot_user_id)

    async def aclose(self) -> None:
        await self.slack.aclose()
        await self.model.aclose()


def build_bridge(cfg: BridgeConfig, registry: ToolRegistry | None = None) -> Bridge:
    slack = SlackClient(cfg.slack_bot_token or "")
    model = ModelClient(
        api_key=cfg.llm_api_key or "",
        api_url=cfg.llm_api_url,
        model=cfg.llm_model,
        temperature=cfg.llm_temperature,
        timeout_s=cfg.llm_timeout_s,
    )
    store = ThreadStore(idle_ttl_s=cfg.thread_idle_ttl_s)
    registry = registry or get_registry()
    orchestrator = Orchestrator(
        store,
        registry,
        model,
        slack,
        max_iterations=cfg.max_iterations,
        tool_choice=cfg.tool_choice,
    )
    router = EventRouter(store, orchestrator, slack, dev_mode=cfg.dev_mode, dev_prefix=cfg.dev_prefix)
    return Bridge(cfg, slack, model, store, registry, orchestrator, router)
