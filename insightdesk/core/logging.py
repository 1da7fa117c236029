"""Centralized logging configuration."""
from __future__ import annotations

import logging
import os
import sys

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Return a logger writing to stdout.

    The level defaults to ``INSIGHTDESK_LOG_LEVEL`` (or ``INFO``). Handlers are
    attached only once per logger name so repeated imports do not duplicate
    output.
    """

    logger = logging.getLogger(name)
    log_level = (level or os.getenv("INSIGHTDESK_LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
        logger.propagate = False

    return logger
