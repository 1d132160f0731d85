"""
Shared playout state container.
"""

from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

LOG = logging.getLogger(__name__)

MEDIA_STATE_NONE = "OBS_MEDIA_STATE_NONE"
MEDIA_STATE_PLAYING = "OBS_MEDIA_STATE_PLAYING"


class MediaKind(str, Enum):
    NONE = "none"
    VIDEO = "video"
    IMAGE = "image"


def format_duration(seconds: Optional[float]) -> Optional[str]:
    if not seconds or math.isnan(seconds):
        return None
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass(frozen=True)
class OnAirRecord:
    """
    What is currently on air.

    Records are immutable; a transition always swaps in a new instance.
    ``start_time`` is wall-clock seconds since the epoch.
    """

    kind: MediaKind = MediaKind.NONE
    file_path: Optional[str] = None
    filename: Optional[str] = None
    start_time: Optional[float] = None
    duration: Optional[float] = None

    @classmethod
    def idle(cls) -> "OnAirRecord":
        return cls()

    @classmethod
    def for_media(
        cls,
        kind: MediaKind,
        file_path: str,
        *,
        duration: Optional[float] = None,
        now: Optional[float] = None,
    ) -> "OnAirRecord":
        return cls(
            kind=kind,
            file_path=file_path,
            filename=os.path.basename(file_path),
            start_time=time.time() if now is None else now,
            duration=duration if kind is MediaKind.VIDEO else None,
        )

    @property
    def has_media(self) -> bool:
        return self.kind is not MediaKind.NONE

    def elapsed(self, now: Optional[float] = None) -> Optional[float]:
        if self.start_time is None:
            return None
        current = time.time() if now is None else now
        return max(0.0, current - self.start_time)

    def to_dict(self) -> dict:
        return {
            "type": self.kind.value,
            "filePath": self.file_path,
            "filename": self.filename,
            "startTime": int(self.start_time * 1000) if self.start_time is not None else None,
            "duration": self.duration,
            "durationFormatted": format_duration(self.duration),
        }


@dataclass(frozen=True)
class ProgressSample:
    """Point-in-time media status of the video input (milliseconds)."""

    media_state: str = MEDIA_STATE_NONE
    duration_ms: float = 0
    cursor_ms: float = 0

    @property
    def playing(self) -> bool:
        return self.media_state == MEDIA_STATE_PLAYING

    @classmethod
    def none(cls) -> "ProgressSample":
        return cls()

    @classmethod
    def from_status(cls, status: dict) -> "ProgressSample":
        return cls(
            media_state=str(status.get("mediaState") or MEDIA_STATE_NONE),
            duration_ms=status.get("mediaDuration") or 0,
            cursor_ms=status.get("mediaCursor") or 0,
        )

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "mediaState": self.media_state,
            "mediaDuration": self.duration_ms,
            "mediaCursor": self.cursor_ms,
            "playing": self.playing,
        }


Observer = Callable[[OnAirRecord], Awaitable[None]]


class PlayoutState:
    """
    Owner of the process wide :class:`OnAirRecord`.

    Only :class:`playout.controller.PlayoutController` calls
    :meth:`replace_on_air`; everything else reads :attr:`on_air` or subscribes.
    """

    def __init__(self) -> None:
        self._on_air = OnAirRecord.idle()
        self._observers: List[Observer] = []

    @property
    def on_air(self) -> OnAirRecord:
        return self._on_air

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def replace_on_air(self, record: OnAirRecord) -> OnAirRecord:
        self._on_air = record
        LOG.debug("On-air record replaced: %s", record)
        for observer in list(self._observers):
            try:
                await observer(record)
            except Exception:
                LOG.exception("On-air observer failed")
        return record
