from __future__ import annotations

import logging
import os


def _env_truthy(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def configure_logging(verbose_int: int = 0) -> None:
    """Configure root logging once per process; later calls only adjust the level."""
    if _env_truthy("DEBUG_MODE"):
        verbose_int = max(verbose_int or 0, 1)
    level = logging.DEBUG if (verbose_int or 0) >= 1 else logging.INFO

    # LOG_LEVEL wins over flags.
    env_level = os.environ.get("LOG_LEVEL")
    if env_level:
        candidate = getattr(logging, env_level.strip().upper(), None)
        if isinstance(candidate, int):
            level = candidate

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        for h in root.handlers:
            h.setLevel(level)
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
