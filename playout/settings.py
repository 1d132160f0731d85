"""
Persisted operator settings.

The settings file is a small YAML document holding the values an operator can
change from the UI: the media root, the OBS endpoint and password, and the
scene the managed sources are placed into.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Mapping, Optional, Tuple

import yaml

LOG = logging.getLogger(__name__)

FOLLOW_CURRENT_SCENE = "CURRENT_SCENE"
DEFAULT_SCENE = "Scene"

_FIELDS = ("media_dir", "obs_url", "obs_password", "target_scene")


@dataclass(frozen=True)
class OperatorSettings:
    media_dir: str = ""
    obs_url: str = "ws://127.0.0.1:4455"
    obs_password: str = ""
    target_scene: str = DEFAULT_SCENE

    @property
    def follows_current_scene(self) -> bool:
        return self.target_scene == FOLLOW_CURRENT_SCENE

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OperatorSettings":
        env = os.environ if environ is None else environ
        return cls(
            media_dir=env.get("MEDIA_DIR", cls.media_dir),
            obs_url=env.get("OBS_URL", cls.obs_url),
            obs_password=env.get("OBS_PASSWORD", cls.obs_password),
            target_scene=env.get("OBS_TARGET_SCENE", cls.target_scene),
        )

    def to_dict(self, *, include_password: bool = True) -> dict:
        data = {
            "mediaDir": self.media_dir,
            "obsUrl": self.obs_url,
            "targetScene": self.target_scene,
        }
        if include_password:
            data["obsPassword"] = self.obs_password
        return data


class SettingsStore:
    """
    YAML backed settings holder.

    ``path`` may be ``None`` for a purely in-memory store.
    """

    def __init__(self, path: Optional[Path] = None, defaults: Optional[OperatorSettings] = None) -> None:
        self.path = Path(path) if path is not None else None
        self._current = defaults or OperatorSettings.from_env()

    @property
    def current(self) -> OperatorSettings:
        return self._current

    def load(self) -> OperatorSettings:
        if self.path is None or not self.path.exists():
            return self._current
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError):
            LOG.exception("Failed to read settings from %s; keeping defaults", self.path)
            return self._current
        if not isinstance(raw, dict):
            LOG.warning("Ignoring malformed settings file %s", self.path)
            return self._current
        values = {key: str(raw[key]) for key in _FIELDS if raw.get(key) is not None}
        self._current = replace(self._current, **values)
        LOG.info("Loaded settings from %s", self.path)
        return self._current

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(asdict(self._current), handle, sort_keys=True)

    def update(self, **changes: Optional[str]) -> Tuple[OperatorSettings, bool]:
        """
        Apply non-empty ``changes`` and persist them.

        Returns the new settings and whether the OBS endpoint or password
        changed, in which case any open connection is stale.
        """

        unknown = set(changes) - set(_FIELDS)
        if unknown:
            raise KeyError(f"unknown settings: {', '.join(sorted(unknown))}")
        values = {key: str(value) for key, value in changes.items() if value}
        previous = self._current
        self._current = replace(previous, **values)
        engine_changed = (
            previous.obs_url != self._current.obs_url
            or previous.obs_password != self._current.obs_password
        )
        self.save()
        return self._current, engine_changed
