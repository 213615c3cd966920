"""Logging setup for the API process."""
from __future__ import annotations

import logging

from .config import CONFIG

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> logging.Logger:
    logger = logging.getLogger("famcare")
    logger.setLevel((level or CONFIG.log_level).upper())
    if not any(getattr(h, "_famcare", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._famcare = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
