"""Logging configuration for forge-login.

All modules log through children of the ``forge_login`` logger so the
host application can route or silence login diagnostics in one place.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from forge_login.config import Config

# Package logger name
LOGGER_NAME = "forge_login"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Handler installed by setup_logging, None until then
_handler: logging.Handler | None = None


def setup_logging(config: Config) -> None:
    """Send package log records to stderr at the configured level.

    The first call installs one stream handler on the ``forge_login``
    logger and stops propagation to the root logger; later calls only
    change the level, so repeated CLI invocations in one process never
    stack handlers.

    Args:
        config: Configuration carrying ``log_level``
    """
    global _handler

    level = logging.getLevelName(config.log_level.value)
    package_logger = logging.getLogger(LOGGER_NAME)
    package_logger.setLevel(level)

    if _handler is None:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        package_logger.handlers.clear()
        package_logger.addHandler(_handler)
        # Login output must not leak into the host application's root handlers
        package_logger.propagate = False

    _handler.setLevel(level)
    package_logger.debug("Logging to stderr at %s", config.log_level.value)


def get_logger(name: str) -> logging.Logger:
    """Return ``name`` as a child of the package logger.

    Module names already under ``forge_login`` are used as they are.
    """
    if name == LOGGER_NAME or name.startswith(f"{LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Undo setup_logging (used by tests)."""
    global _handler
    package_logger = logging.getLogger(LOGGER_NAME)
    package_logger.handlers.clear()
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True
    _handler = None
