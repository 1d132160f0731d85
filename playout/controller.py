"""
Playout state machine.

The controller is the only writer of the on-air record.  A transition first
converges OBS through the reconciler and only then commits the new record;
if a required step fails the record is left untouched and the error is
raised to the caller.  Transitions run one at a time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .catalog import MediaCatalog
from .reconciler import SourceReconciler, StepOutcome, best_effort, required
from .settings import FOLLOW_CURRENT_SCENE, OperatorSettings, SettingsStore
from .state import MEDIA_STATE_NONE, MediaKind, OnAirRecord, PlayoutState, ProgressSample
from .switcher import NotConnectedError, SwitcherClient, SwitcherError

LOG = logging.getLogger(__name__)

MEDIA_ACTIONS = {
    "play": "OBS_WEBSOCKET_MEDIA_INPUT_ACTION_PLAY",
    "pause": "OBS_WEBSOCKET_MEDIA_INPUT_ACTION_PAUSE",
    "restart": "OBS_WEBSOCKET_MEDIA_INPUT_ACTION_RESTART",
    "stop": "OBS_WEBSOCKET_MEDIA_INPUT_ACTION_STOP",
}


class PlayoutError(RuntimeError):
    """Base class for playout request errors."""


class InvalidPathError(PlayoutError):
    """Raised when a requested file is outside the media root."""


class InvalidCommand(PlayoutError):
    """Raised when a media control request is malformed."""


class TransitionSuperseded(PlayoutError):
    """Raised when stop_all() ran while a transition was still in flight."""


@dataclass(frozen=True)
class TransitionResult:
    record: OnAirRecord
    steps: Tuple[StepOutcome, ...] = ()

    def to_dict(self) -> dict:
        return {
            "currentPlaying": self.record.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
        }


class PlayoutController:
    """Applies play/show/stop commands and owns the on-air record."""

    def __init__(
        self,
        client: SwitcherClient,
        state: PlayoutState,
        settings: SettingsStore,
        catalog: MediaCatalog,
        reconciler: SourceReconciler,
    ) -> None:
        self.client = client
        self.state = state
        self.settings = settings
        self.catalog = catalog
        self.reconciler = reconciler
        self._transition_lock = asyncio.Lock()
        # Bumped by stop_all(); a transition that sees it change never commits.
        self._generation = 0

    # ---------------------------------------------------------------- guards

    def validate_path(self, file_path: Any) -> str:
        candidate = str(file_path or "")
        media_dir = self.settings.current.media_dir
        if not candidate or not media_dir or not candidate.startswith(media_dir):
            raise InvalidPathError("invalid path")
        return candidate

    def _require_connection(self) -> None:
        if not self.client.connected:
            raise NotConnectedError("OBS not connected")

    # ----------------------------------------------------------- transitions

    async def play_video(self, file_path: Any) -> TransitionResult:
        path = self.validate_path(file_path)
        self._require_connection()
        async with self._transition_lock:
            LOG.info("Playing video: %s", path)
            generation = self._generation
            source = self.reconciler.source(MediaKind.VIDEO)
            steps = await self._prepare(MediaKind.VIDEO, hide=MediaKind.IMAGE)
            steps.append(await best_effort("stop-previous", self._media_action("stop")))
            await self._required(
                steps,
                "set-file",
                self.client.call(
                    "SetInputSettings",
                    {
                        "inputName": source.name,
                        "inputSettings": {source.file_setting: path},
                        "overlay": True,
                    },
                ),
            )
            await self._abort_if_superseded(generation, MediaKind.VIDEO)
            await self._required(steps, "restart", self._media_action("restart"))
            steps.append(await self.reconciler.fit_to_canvas(MediaKind.VIDEO))

            duration = await self.catalog.lookup_duration(path)
            await self._abort_if_superseded(generation, MediaKind.VIDEO)
            record = OnAirRecord.for_media(MediaKind.VIDEO, path, duration=duration)
            await self.state.replace_on_air(record)
            LOG.info("Successfully started playing video: %s", path)
            return TransitionResult(record, tuple(steps))

    async def show_image(self, file_path: Any) -> TransitionResult:
        path = self.validate_path(file_path)
        self._require_connection()
        async with self._transition_lock:
            LOG.info("Showing image: %s", path)
            generation = self._generation
            source = self.reconciler.source(MediaKind.IMAGE)
            steps = await self._prepare(MediaKind.IMAGE, hide=MediaKind.VIDEO)
            await self._required(
                steps,
                "set-file",
                self.client.call(
                    "SetInputSettings",
                    {
                        "inputName": source.name,
                        "inputSettings": {source.file_setting: path},
                        "overlay": True,
                    },
                ),
            )
            steps.append(await self.reconciler.fit_to_canvas(MediaKind.IMAGE))

            await self._abort_if_superseded(generation, MediaKind.IMAGE)
            record = OnAirRecord.for_media(MediaKind.IMAGE, path)
            await self.state.replace_on_air(record)
            LOG.info("Successfully showing image: %s", path)
            return TransitionResult(record, tuple(steps))

    async def stop_all(self) -> TransitionResult:
        """
        Hide both sources and clear the record.

        Does not wait for a transition in flight: that transition is
        superseded and will not commit its record.
        """

        self._generation += 1
        steps: List[StepOutcome] = []
        for kind in (MediaKind.VIDEO, MediaKind.IMAGE):
            if self.client.connected:
                steps.append(await self.reconciler.hide_source(kind))
            else:
                steps.append(StepOutcome.skipped(f"hide-{kind.value}", "OBS not connected"))
        record = OnAirRecord.idle()
        await self.state.replace_on_air(record)
        LOG.info("Stopped all media")
        return TransitionResult(record, tuple(steps))

    async def _abort_if_superseded(self, generation: int, kind: MediaKind) -> None:
        if generation == self._generation:
            return
        LOG.warning("Stop requested during %s transition; abandoning it", kind.value)
        if kind is MediaKind.VIDEO:
            await best_effort("stop-superseded", self._media_action("stop"))
        await self.reconciler.hide_source(kind)
        raise TransitionSuperseded("stopped while the transition was in progress")

    async def _prepare(self, kind: MediaKind, *, hide: MediaKind) -> List[StepOutcome]:
        steps: List[StepOutcome] = []
        target = self.settings.current.target_scene
        if target and target != FOLLOW_CURRENT_SCENE:
            steps.append(
                await best_effort(
                    "switch-scene",
                    self.client.call("SetCurrentProgramScene", {"sceneName": target}),
                )
            )
        ensured = await self.reconciler.ensure_source(kind)
        steps.append(ensured)
        ensured.raise_if_fatal()
        steps.append(await self.reconciler.hide_source(hide))
        steps.append(await self.reconciler.show_source(kind))
        return steps

    @staticmethod
    async def _required(steps: List[StepOutcome], step: str, action) -> None:
        outcome = await required(step, action)
        steps.append(outcome)
        outcome.raise_if_fatal()

    async def _media_action(self, action: str) -> Dict[str, Any]:
        return await self.client.call(
            "TriggerMediaInputAction",
            {
                "inputName": self.reconciler.source(MediaKind.VIDEO).name,
                "mediaAction": MEDIA_ACTIONS[action],
            },
        )

    # ------------------------------------------------------ operator commands

    async def connect(self) -> bool:
        """Connect with the stored credentials; ``False`` if already connected."""

        if self.client.connected:
            return False
        current = self.settings.current
        await self.client.connect(current.obs_url, current.obs_password)
        return True

    async def disconnect(self) -> bool:
        if not self.client.connected:
            return False
        await self.client.disconnect()
        LOG.info("[OBS] Manually disconnected")
        return True

    async def control_media(self, action: str) -> None:
        key = str(action or "").lower()
        if key not in MEDIA_ACTIONS:
            raise InvalidCommand("Invalid action")
        self._require_connection()
        await self._media_action(key)

    async def seek(self, time_ms: Any) -> float:
        if isinstance(time_ms, bool) or not isinstance(time_ms, (int, float)) or time_ms < 0:
            raise InvalidCommand("Invalid time value")
        self._require_connection()
        await self.client.call(
            "SetMediaInputCursor",
            {
                "inputName": self.reconciler.source(MediaKind.VIDEO).name,
                "mediaCursor": time_ms,
            },
        )
        return float(time_ms)

    async def list_scenes(self) -> dict:
        self._require_connection()
        scenes = (await self.client.call("GetSceneList")).get("scenes") or []
        current = await self.client.call("GetCurrentProgramScene")
        return {
            "scenes": [
                {"name": scene.get("sceneName"), "index": scene.get("sceneIndex")}
                for scene in scenes
            ],
            "currentScene": current.get("currentProgramSceneName") or current.get("sceneName"),
        }

    async def set_target_scene(self, scene_name: str) -> bool:
        """Store the target scene; returns whether the program scene was switched."""

        if not scene_name:
            raise InvalidCommand("Scene name is required")
        self._require_connection()
        self.settings.update(target_scene=scene_name)
        if scene_name == FOLLOW_CURRENT_SCENE:
            return False
        await self.client.call("SetCurrentProgramScene", {"sceneName": scene_name})
        return True

    async def apply_settings(self, **changes: Optional[str]) -> OperatorSettings:
        updated, engine_changed = self.settings.update(**changes)
        if engine_changed and self.client.connected:
            await self.client.disconnect()
            LOG.info("[OBS] Disconnected due to settings change")
        return updated

    # --------------------------------------------------------------- queries

    async def read_progress(self) -> ProgressSample:
        if self.state.on_air.kind is not MediaKind.VIDEO or not self.client.connected:
            return ProgressSample.none()
        try:
            status = await self.client.call(
                "GetMediaInputStatus",
                {"inputName": self.reconciler.source(MediaKind.VIDEO).name},
            )
        except SwitcherError as exc:
            LOG.debug("Media status unavailable: %s", exc)
            return ProgressSample.none()
        return ProgressSample.from_status(status)

    async def current_playing(self) -> dict:
        record = self.state.on_air
        info = record.to_dict()
        if record.kind is MediaKind.VIDEO and self.client.connected:
            try:
                status = await self.client.call(
                    "GetMediaInputStatus",
                    {"inputName": self.reconciler.source(MediaKind.VIDEO).name},
                )
            except SwitcherError:
                info["playing"] = False
                info["obsMediaState"] = MEDIA_STATE_NONE
            else:
                sample = ProgressSample.from_status(status)
                info["obsMediaState"] = sample.media_state
                info["mediaDuration"] = sample.duration_ms or record.duration
                info["mediaCursor"] = sample.cursor_ms
                info["playing"] = sample.playing
                info["elapsedTime"] = _elapsed_ms(record)
        elif record.kind is MediaKind.IMAGE:
            info["playing"] = True
            info["elapsedTime"] = _elapsed_ms(record)
        return {"currentPlaying": info, "hasMedia": record.has_media}


def _elapsed_ms(record: OnAirRecord) -> Optional[int]:
    elapsed = record.elapsed()
    return int(elapsed * 1000) if elapsed is not None else None
