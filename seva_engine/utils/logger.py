"""Process-wide logging setup for the allocation engine.

The root level comes from ``SEVA_LOG_LEVEL``. ``SEVA_LOG_LEVELS`` narrows or
widens individual subtrees, so allocation decisions can be traced at DEBUG
while repository chatter stays at WARNING.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Sequence

from seva_engine.utils.config import get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_LOGGER_INITIALIZED = False


def apply_level_overrides(overrides: Sequence[tuple[str, str]]) -> None:
    for logger_name, level in overrides:
        logging.getLogger(logger_name).setLevel(level.upper())


def configure_logging(
    level: Optional[str] = None,
    overrides: Optional[Sequence[tuple[str, str]]] = None,
) -> None:
    """Install the root handler once; later calls are no-ops."""
    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    settings = get_settings()
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )
    apply_level_overrides(settings.log_level_overrides if overrides is None else overrides)
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
