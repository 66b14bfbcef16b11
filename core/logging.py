"""Process-wide logging setup; modules call ``get_logger(__name__)``."""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
QUIET_LOGGERS = ("httpx", "httpcore", "LiteLLM", "litellm")

_configured = False


def setup_logging(level: int = logging.INFO, *, fmt: Optional[str] = None) -> None:
    """Configure the root logger once; ``LOG_LEVEL`` overrides ``level``."""
    global _configured
    if _configured:
        return
    named_level = logging.getLevelName((os.getenv("LOG_LEVEL") or "").strip().upper() or level)
    logging.basicConfig(
        level=named_level if isinstance(named_level, int) else level,
        format=fmt or LOG_FORMAT,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
