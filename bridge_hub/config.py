from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_LLM_API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_LLM_MODEL = "gpt-4o-mini"
DEFAULT_DEV_PREFIX = "!@#"


class ConfigError(RuntimeError):
    pass


def _bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def _float(name: str, default: float) -> float:
    v = os.getenv(name)
    if not v:
        return default
    try:
        return float(v)
    except ValueError as e:
        raise ConfigError(f"Invalid number for {name}: {v!r}") from e


def _int(name: str, default: int) -> int:
    v = os.getenv(name)
    if not v:
        return default
    try:
        return int(v)
    except ValueError as e:
        raise ConfigError(f"Invalid integer for {name}: {v!r}") from e


@dataclass(frozen=True)
class BridgeConfig:
    slack_bot_token: str | None
    slack_signing_secret: str | None
    slack_app_token: str | None
    llm_api_key: str | None
    llm_api_url: str
    llm_model: str
    llm_temperature: float
    llm_timeout_s: float
    tool_choice: str
    debug_mode: bool
    dev_mode: bool
    dev_prefix: str
    app_env: str
    max_iterations: int
    thread_idle_ttl_s: float

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def socket_mode_enabled(self) -> bool:
        return bool(self.slack_app_token)

    def missing_required(self) -> list[str]:
        missing = []
        if not self.slack_bot_token:
            missing.append("SLACK_BOT_TOKEN")
        if not self.llm_api_key:
            missing.append("LLM_API_KEY")
        if not (self.slack_signing_secret or self.slack_app_token):
            missing.append("SLACK_SIGNING_SECRET or SLACK_APP_TOKEN")
        return missing

    def redacted(self) -> dict[str, object]:
        """Config as a dict with secrets masked, for display."""
        out: dict[str, object] = {}
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if name in ("slack_bot_token", "slack_signing_secret", "slack_app_token", "llm_api_key") and value:
                value = f"{str(value)[:4]}…"
            out[name] = value
        return out


def load_config(env_file: str | None = None) -> BridgeConfig:
    """Read configuration from the environment, after loading a dotenv file if present."""
    path = env_file or os.getenv("ENV_FILE", ".env")
    if path and os.path.exists(path):
        load_dotenv(path, override=False)
        logger.debug("Loaded environment from %s", path)

    return BridgeConfig(
        slack_bot_token=os.getenv("SLACK_BOT_TOKEN"),
        slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET"),
        slack_app_token=os.getenv("SLACK_APP_TOKEN"),
        llm_api_key=os.getenv("LLM_API_KEY"),
        llm_api_url=os.getenv("LLM_API_URL", DEFAULT_LLM_API_URL),
        llm_model=os.getenv("LLM_MODEL", DEFAULT_LLM_MODEL),
        llm_temperature=_float("LLM_TEMPERATURE", 0.2),
        llm_timeout_s=_float("LLM_TIMEOUT_S", 60.0),
        tool_choice=os.getenv("TOOL_CHOICE", "required"),
        debug_mode=_bool("DEBUG_MODE"),
        dev_mode=_bool("DEV_MODE"),
        dev_prefix=os.getenv("DEV_PREFIX", DEFAULT_DEV_PREFIX),
        # NODE_ENV kept for deployments that share env files with older services.
        app_env=os.getenv("APP_ENV") or os.getenv("NODE_ENV") or "development",
        max_iterations=_int("MAX_ITERATIONS", 10),
        thread_idle_ttl_s=_float("THREAD_IDLE_TTL_S", 0.0),
    )


def validate_config(cfg: BridgeConfig) -> list[str]:
    """Raise in production when required values are missing; warn otherwise."""
    missing = cfg.missing_required()
    if not missing:
        return []
    msg = f"Missing required configuration: {', '.join(missing)}"
    if cfg.is_production:
        raise ConfigError(msg)
    logger.warning("%s (continuing because APP_ENV is %s)", msg, cfg.app_env)
    return missing
