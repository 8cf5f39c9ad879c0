"""Error types shared across the bridge."""
from __future__ import annotations

from typing import Any


class BridgeError(RuntimeError):
    """Base error carrying optional structured details."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = details or {}


class ToolNotFoundError(BridgeError):
    """Raised when a tool name does not resolve to a registered tool."""

    def __init__(self, name: str, valid_names: list[str]) -> None:
        self.name = name
        self.valid_names = list(valid_names)
        super().__init__(
            f"Tool '{name}' not found. Valid tools: {', '.join(self.valid_names) or '(none)'}",
            {"tool": name, "valid_names": self.valid_names},
        )


class ToolValidationError(BridgeError):
    """Raised when tool parameters fail schema validation."""


class ModelAPIError(BridgeError):
    """Raised for failed requests to the model API."""

    def __init__(self, message: str, status: int | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.status = status

    @property
    def is_server_error(self) -> bool:
        return self.status is not None and self.status >= 500


class PlatformAPIError(BridgeError):
    """Raised when the messaging platform rejects a call (``ok: false``)."""

    def __init__(self, method: str, error: str, details: dict[str, Any] | None = None) -> None:
        self.method = method
        self.error = error
        super().__init__(f"{method} failed: {error}", details)


def format_error_for_model(error: BaseException) -> dict[str, Any]:
    """Shape an exception so it can be fed back into model context."""
    return {
        "error": True,
        "message": str(error) or "An unknown error occurred",
        "type": type(error).__name__,
        "details": getattr(error, "details", None) or {},
    }
