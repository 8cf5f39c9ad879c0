from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml


class ConfigError(RuntimeError):
    pass


def find_config_path(explicit: str | None) -> Path | None:
    if explicit:
        p = Path(explicit).expanduser().resolve()
        if not p.exists():
            raise ConfigError(f"Config not found: {p}")
        return p

    repo_local = Path("bridge.yaml").resolve()
    if repo_local.exists():
        return repo_local

    # User-global config (XDG base dir spec).
    xdg_home = Path(os.getenv("XDG_CONFIG_HOME") or (Path.home() / ".config")).expanduser()
    candidate = xdg_home / "slack-llm-bridge" / "config.yaml"
    if candidate.exists():
        return candidate.resolve()
    return None


def load_config_dict(path: Path) -> dict[str, Any]:
    obj = yaml.safe_load(path.read_text(encoding="utf-8"))
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError("Config root must be a mapping")
    return obj


def apply_env(cfg: dict[str, Any], environ: dict[str, str] | None = None) -> list[str]:
    """Copy the ``env:`` mapping into the environment without overriding set values."""
    target = os.environ if environ is None else environ
    env = cfg.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError("'env' must be a mapping of NAME: value")
    applied = []
    for name, value in env.items():
        name = str(name)
        if name in target or value is None:
            continue
        target[name] = str(value).lower() if isinstance(value, bool) else str(value)
        applied.append(name)
    return applied


def render_config_yaml(values: dict[str, Any]) -> str:
    return yaml.safe_dump({"env": values}, sort_keys=False)
