"""Process-level logging bootstrap."""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def configure_logging(level: str | int | None = None) -> None:
    """Configure root logging once. Level falls back to LOG_LEVEL, then INFO."""
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format=LOG_FORMAT, level=level)
    # paramiko's transport chatter drowns out our [SSH] lines
    logging.getLogger("paramiko").setLevel(logging.WARNING)
