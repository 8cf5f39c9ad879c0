"""Tool registry and tool implementations for the bridge."""

from __future__ import annotations

from .registry import ToolRegistry, ToolSpec, get_registry

__all__ = ["ToolRegistry", "ToolSpec", "get_registry"]
