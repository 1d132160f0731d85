"""
OBS playout controller package.

The controller keeps a single record of what is currently on air, drives two
managed OBS inputs (one media player, one image) into the matching state over
obs-websocket, and fans the resulting state out to every connected viewer.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

__all__ = [
    "PlayoutConfig",
]

DEFAULT_SETTINGS_FILE = "playout-settings.yaml"


@dataclass
class PlayoutConfig:
    """
    Process level options.

    These are fixed for the lifetime of the server; the operator editable values
    (media directory, OBS credentials, target scene) live in
    :class:`playout.settings.SettingsStore` instead.
    """

    host: str = "0.0.0.0"
    port: int = 3000
    video_input: str = "PlayerVideo"
    image_input: str = "PlayerImage"
    settings_path: Path = Path(DEFAULT_SETTINGS_FILE)
    cache_dir: Optional[Path] = None
    progress_interval: float = 1.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PlayoutConfig":
        env = os.environ if environ is None else environ
        cache_dir = env.get("THUMB_CACHE")
        return cls(
            host=env.get("HOST", cls.host),
            port=int(env.get("PORT", cls.port)),
            video_input=env.get("OBS_VIDEO_INPUT") or cls.video_input,
            image_input=env.get("OBS_IMAGE_INPUT") or cls.image_input,
            settings_path=Path(env.get("PLAYOUT_SETTINGS") or DEFAULT_SETTINGS_FILE),
            cache_dir=Path(cache_dir).expanduser() if cache_dir else None,
        )
