"""
HTTP and realtime surface of the playout controller.
"""

from __future__ import annotations

from .server import RealtimeManager, create_app

__all__ = [
    "RealtimeManager",
    "create_app",
]
