"""Centralized logger factory used across the microstate pipeline.

Provides:
  - get_logger(name): module-scoped logger with one stream handler
  - set_level(level, prefix): change the level of every package logger at once

The starting level comes from the MICROSTATES_LOG_LEVEL environment variable
(default INFO), so joblib worker processes pick up the same verbosity as the
parent. Records carry the process name to tell worker output apart.
"""

from __future__ import annotations
import logging
import os
from typing import Optional, Union

PACKAGE_LOGGER = "src.microstates"
LOG_FORMAT = "%(asctime)s | %(processName)s | %(name)s | %(levelname)s | %(message)s"
LEVEL_ENV = "MICROSTATES_LOG_LEVEL"


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.environ.get(LEVEL_ENV, "INFO")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        return resolved
    return int(level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Create or retrieve a module-scoped logger.

    Args:
        name: Optional logger name (defaults to 'microstates').

    Returns:
        Configured logging.Logger instance.
    """
    logger = logging.getLogger(name or "microstates")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(handler)
        logger.setLevel(_resolve_level(None))
    return logger


def set_level(level: Union[int, str], prefix: str = PACKAGE_LOGGER) -> int:
    """
    Set the level of every existing logger under `prefix` and of later ones.

    Args:
        level: Level number or name ('DEBUG', 'info', ...).
        prefix: Logger name prefix to update.

    Returns:
        The numeric level applied.
    """
    value = _resolve_level(level)
    os.environ[LEVEL_ENV] = logging.getLevelName(value)
    for name in list(logging.root.manager.loggerDict):
        if name == prefix or name.startswith(prefix + "."):
            logging.getLogger(name).setLevel(value)
    return value
