# app/core/logging.py
from __future__ import annotations

import logging
import sys

from app.core.config import settings

HANDLER_NAME = "ledger-console"


def setup_logging(level: str | None = None) -> None:
    """
    Console logging for the whole "app" logger tree.
    Safe to call more than once (handler is only added the first time).
    """
    lvl = getattr(logging, (level or settings.LOG_LEVEL), logging.INFO)

    logger = logging.getLogger("app")
    logger.setLevel(lvl)

    if any(h.get_name() == HANDLER_NAME for h in logger.handlers):
        return

    # Console handler
    ch = logging.StreamHandler(sys.stdout)
    ch.set_name(HANDLER_NAME)
    ch.setLevel(lvl)
    ch.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    logger.addHandler(ch)
