"""Utility helpers for the playout controller."""

from .logging import configure_logging
from .timer import RepeatingTimer

__all__ = ["RepeatingTimer", "configure_logging"]
