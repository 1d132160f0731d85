"""
Logging setup for the playout server.

Modules log through ``logging.getLogger(__name__)``; only the entrypoint calls
:func:`configure_logging`.
"""

from __future__ import annotations

import logging
import sys
from typing import Iterable, Optional

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# Frame level chatter from the websocket library drowns out playout events.
NOISY_LOGGERS = ("websockets.client", "websockets.protocol")


def configure_logging(
    level: int = logging.INFO,
    format: Optional[str] = None,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Configure the root logger once and cap ``quiet`` loggers at WARNING.
    """

    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def parse_level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level: {name}")
    return level
