"""
Media library discovery and duration lookup.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from .state import MediaKind, format_duration

LOG = logging.getLogger(__name__)

VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".mkv", ".webm", ".m4v"})
IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp"})
CACHE_DIR_NAME = "thumbnails"

DurationProbe = Callable[[str], Awaitable[Optional[float]]]


def classify(path: str) -> MediaKind:
    suffix = Path(path).suffix.lower()
    if suffix in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    if suffix in IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    return MediaKind.NONE


def cache_key(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")


def _walk(root: Path) -> List[Path]:
    found: List[Path] = []
    try:
        entries = sorted(root.iterdir())
    except OSError as exc:
        LOG.error("Error reading directory %s: %s", root, exc)
        return found
    for entry in entries:
        if entry.is_dir():
            if entry.name == CACHE_DIR_NAME:
                continue
            found.extend(_walk(entry))
        elif classify(str(entry)) is not MediaKind.NONE:
            found.append(entry)
    return found


async def ffprobe_duration(path: str) -> Optional[float]:
    """Return the container duration in seconds, or ``None`` if unknown."""

    try:
        process = await asyncio.create_subprocess_exec(
            "ffprobe",
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        LOG.warning("ffprobe unavailable: %s", exc)
        return None
    stdout, _ = await process.communicate()
    if process.returncode != 0:
        return None
    try:
        return float(json.loads(stdout)["format"]["duration"])
    except (KeyError, TypeError, ValueError):
        return None


@dataclass(frozen=True)
class MediaItem:
    kind: MediaKind
    path: str
    duration: Optional[float] = None

    @property
    def filename(self) -> str:
        return Path(self.path).name

    def to_dict(self) -> dict:
        data = {
            "id": cache_key(self.path),
            "type": self.kind.value,
            "filename": self.filename,
            "path": self.path,
        }
        if self.kind is MediaKind.VIDEO:
            data["duration"] = self.duration
            data["durationFormatted"] = format_duration(self.duration)
        return data


class MediaCatalog:
    """
    Lists the media library and caches probed video durations.

    Durations are memoised in-process and persisted as small JSON files under
    ``cache_dir`` (by default ``<media root>/thumbnails``).
    """

    def __init__(
        self,
        media_root: Callable[[], str],
        *,
        cache_dir: Optional[Path] = None,
        probe: Optional[DurationProbe] = None,
    ) -> None:
        self._media_root = media_root
        self._cache_dir = cache_dir
        self._probe = probe or ffprobe_duration
        self._durations: Dict[str, Optional[float]] = {}

    @property
    def cache_dir(self) -> Path:
        if self._cache_dir is not None:
            return self._cache_dir
        return Path(self._media_root()) / CACHE_DIR_NAME

    async def list_media(self) -> List[MediaItem]:
        root = self._media_root()
        if not root or not Path(root).is_dir():
            return []
        paths = await asyncio.to_thread(_walk, Path(root))
        items: List[MediaItem] = []
        for path in paths:
            kind = classify(str(path))
            duration = await self.lookup_duration(str(path)) if kind is MediaKind.VIDEO else None
            items.append(MediaItem(kind=kind, path=str(path), duration=duration))
        items.sort(key=lambda item: item.filename)
        return items

    async def lookup_duration(self, path: str) -> Optional[float]:
        if path in self._durations:
            return self._durations[path]

        cache_path = self.cache_dir / f"{cache_key(f'duration:{path}')}.json"
        duration = self._read_cached(cache_path)
        if duration is None:
            duration = await self._probe(path)
            if duration is not None:
                self._write_cached(cache_path, path, duration)
        if duration is not None:
            self._durations[path] = duration
        return duration

    @staticmethod
    def _read_cached(cache_path: Path) -> Optional[float]:
        try:
            with cache_path.open("r", encoding="utf-8") as handle:
                return float(json.load(handle)["duration"])
        except FileNotFoundError:
            return None
        except (OSError, KeyError, TypeError, ValueError):
            LOG.debug("Ignoring unreadable duration cache %s", cache_path)
            return None

    @staticmethod
    def _write_cached(cache_path: Path, path: str, duration: float) -> None:
        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            with cache_path.open("w", encoding="utf-8") as handle:
                json.dump(
                    {"filePath": path, "duration": duration, "timestamp": int(time.time() * 1000)},
                    handle,
                    indent=2,
                )
        except OSError as exc:
            LOG.error("Error caching duration for %s: %s", path, exc)
