# log.py
"""Logging setup for matrixci internal diagnostics (stderr, stdlib logging)."""

from __future__ import annotations

import logging
import sys

LEVEL_MAP = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "warning", *, debug: bool = False) -> logging.Logger:
    """
    Attach a single stderr handler to the `matrixci` logger.

    Calling it again replaces the handler rather than stacking another one.
    """
    logger = logging.getLogger("matrixci")
    logger.handlers.clear()

    log_level = logging.DEBUG if debug else LEVEL_MAP.get(level.lower(), logging.WARNING)
    logger.setLevel(log_level)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    logger.addHandler(handler)
    return logger
