"""
Drive the OBS scene graph towards the state the controller needs.

Every operation re-resolves the target scene, tolerates whatever the scene
graph currently looks like and reports an explicit :class:`StepOutcome`
instead of raising, so callers can tell cosmetic misses from real failures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .settings import DEFAULT_SCENE, FOLLOW_CURRENT_SCENE
from .state import MediaKind
from .switcher import RemoteError, SwitcherClient, SwitcherError

LOG = logging.getLogger(__name__)

BOUNDS_SCALE_INNER = "OBS_BOUNDS_SCALE_INNER"


class ReconcileSkipped(Exception):
    """A best-effort step found nothing to act on."""


class StepStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FATAL = "fatal"


@dataclass(frozen=True)
class StepOutcome:
    step: str
    status: StepStatus
    reason: Optional[str] = None
    error: Optional[BaseException] = field(default=None, repr=False, compare=False)

    @classmethod
    def ok(cls, step: str) -> "StepOutcome":
        return cls(step, StepStatus.OK)

    @classmethod
    def skipped(cls, step: str, reason: str) -> "StepOutcome":
        return cls(step, StepStatus.SKIPPED, reason)

    @classmethod
    def fatal(cls, step: str, error: BaseException) -> "StepOutcome":
        return cls(step, StepStatus.FATAL, str(error), error)

    @property
    def is_fatal(self) -> bool:
        return self.status is StepStatus.FATAL

    def raise_if_fatal(self) -> None:
        if self.is_fatal and self.error is not None:
            raise self.error

    def to_dict(self) -> dict:
        data = {"step": self.step, "status": self.status.value}
        if self.reason:
            data["reason"] = self.reason
        return data


async def best_effort(step: str, action: Awaitable[Any]) -> StepOutcome:
    """Await ``action``; misses and switcher errors become ``skipped``."""

    try:
        await action
    except ReconcileSkipped as exc:
        LOG.info("Skipped %s: %s", step, exc)
        return StepOutcome.skipped(step, str(exc))
    except SwitcherError as exc:
        LOG.warning("Best-effort step %s failed: %s", step, exc)
        return StepOutcome.skipped(step, str(exc))
    return StepOutcome.ok(step)


async def required(step: str, action: Awaitable[Any]) -> StepOutcome:
    """Await ``action``; switcher errors become ``fatal``."""

    try:
        await action
    except SwitcherError as exc:
        LOG.error("Step %s failed: %s", step, exc)
        return StepOutcome.fatal(step, exc)
    return StepOutcome.ok(step)


@dataclass(frozen=True)
class ManagedSource:
    name: str
    kind: MediaKind
    input_kind: str
    file_setting: str


def default_sources(video_input: str, image_input: str) -> Dict[MediaKind, ManagedSource]:
    return {
        MediaKind.VIDEO: ManagedSource(video_input, MediaKind.VIDEO, "ffmpeg_source", "local_file"),
        MediaKind.IMAGE: ManagedSource(image_input, MediaKind.IMAGE, "image_source", "file"),
    }


def fit_transform(canvas_width: float, canvas_height: float) -> Dict[str, Any]:
    return {
        "positionX": 0,
        "positionY": 0,
        "scaleX": 1.0,
        "scaleY": 1.0,
        "cropLeft": 0,
        "cropTop": 0,
        "cropRight": 0,
        "cropBottom": 0,
        "rotation": 0,
        "boundsType": BOUNDS_SCALE_INNER,
        "boundsAlignment": 0,
        "boundsWidth": canvas_width,
        "boundsHeight": canvas_height,
    }


class SourceReconciler:
    """Idempotent operations over the two managed sources."""

    def __init__(
        self,
        client: SwitcherClient,
        sources: Mapping[MediaKind, ManagedSource],
        target_scene: Callable[[], str],
    ) -> None:
        self.client = client
        self.sources = dict(sources)
        self._target_scene = target_scene

    def source(self, kind: MediaKind) -> ManagedSource:
        try:
            return self.sources[kind]
        except KeyError:
            raise ValueError(f"no managed source for {kind.value!r}") from None

    async def resolve_target_scene(self) -> str:
        configured = self._target_scene() or DEFAULT_SCENE
        if configured != FOLLOW_CURRENT_SCENE:
            return configured
        try:
            current = await self.client.call("GetCurrentProgramScene")
            name = current.get("currentProgramSceneName") or current.get("sceneName")
            if name:
                return name
        except RemoteError as exc:
            LOG.warning("Could not read current program scene: %s", exc)
        try:
            scenes = (await self.client.call("GetSceneList")).get("scenes") or []
        except RemoteError as exc:
            LOG.warning("Could not list scenes: %s", exc)
            scenes = []
        if scenes:
            return scenes[0].get("sceneName") or DEFAULT_SCENE
        return DEFAULT_SCENE

    async def _scene_item(self, scene: str, source_name: str) -> Optional[Dict[str, Any]]:
        listing = await self.client.call("GetSceneItemList", {"sceneName": scene})
        for item in listing.get("sceneItems") or []:
            if item.get("sourceName") == source_name:
                return item
        return None

    async def _require_scene_item(self, scene: str, source_name: str) -> Dict[str, Any]:
        item = await self._scene_item(scene, source_name)
        if item is None:
            raise ReconcileSkipped(f"{source_name} is not in scene {scene}")
        return item

    # ----------------------------------------------------------- operations

    async def ensure_source(self, kind: MediaKind) -> StepOutcome:
        source = self.source(kind)
        step = f"ensure-{kind.value}"
        try:
            scene = await self.resolve_target_scene()
        except SwitcherError as exc:
            return StepOutcome.fatal(step, exc)

        try:
            await self.client.call("GetInputSettings", {"inputName": source.name})
        except RemoteError:
            LOG.info("Creating %s source %s in scene %s", kind.value, source.name, scene)
            return await required(
                step,
                self.client.call(
                    "CreateInput",
                    {
                        "sceneName": scene,
                        "inputName": source.name,
                        "inputKind": source.input_kind,
                        "inputSettings": {},
                        "sceneItemEnabled": True,
                    },
                ),
            )
        except SwitcherError as exc:
            return StepOutcome.fatal(step, exc)

        return await best_effort(step, self._attach(scene, source))

    async def _attach(self, scene: str, source: ManagedSource) -> None:
        if await self._scene_item(scene, source.name) is not None:
            return
        LOG.info("Adding existing source %s to scene %s", source.name, scene)
        await self.client.call(
            "CreateSceneItem",
            {"sceneName": scene, "sourceName": source.name, "sceneItemEnabled": True},
        )

    async def show_source(self, kind: MediaKind) -> StepOutcome:
        return await best_effort(f"show-{kind.value}", self._set_enabled(kind, True))

    async def hide_source(self, kind: MediaKind) -> StepOutcome:
        return await best_effort(f"hide-{kind.value}", self._set_enabled(kind, False))

    async def _set_enabled(self, kind: MediaKind, enabled: bool) -> None:
        source = self.source(kind)
        scene = await self.resolve_target_scene()
        item = await self._require_scene_item(scene, source.name)
        await self.client.call(
            "SetSceneItemEnabled",
            {
                "sceneName": scene,
                "sceneItemId": item["sceneItemId"],
                "sceneItemEnabled": enabled,
            },
        )

    async def fit_to_canvas(self, kind: MediaKind) -> StepOutcome:
        return await best_effort(f"fit-{kind.value}", self._fit(kind))

    async def _fit(self, kind: MediaKind) -> None:
        source = self.source(kind)
        scene = await self.resolve_target_scene()
        video = await self.client.call("GetVideoSettings")
        width, height = video.get("outputWidth"), video.get("outputHeight")
        if not width or not height:
            raise ReconcileSkipped("OBS did not report an output size")
        item = await self._require_scene_item(scene, source.name)
        await self.client.call(
            "SetSceneItemTransform",
            {
                "sceneName": scene,
                "sceneItemId": item["sceneItemId"],
                "sceneItemTransform": fit_transform(width, height),
            },
        )
