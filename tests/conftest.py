"""Shared fixtures: an in-memory OBS stand-in and a wired-up controller."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from playout.catalog import MediaCatalog
from playout.controller import PlayoutController
from playout.reconciler import SourceReconciler, default_sources
from playout.settings import OperatorSettings, SettingsStore
from playout.state import PlayoutState
from playout.switcher import NotConnectedError, RemoteError

MEDIA_ROOT = "/media"
PROBED_DURATION = 42.5


class FakeSwitcher:
    """
    Duck-typed stand-in for :class:`playout.switcher.SwitcherClient`.

    Holds a tiny scene graph (scenes -> scene items, inputs -> settings) and
    answers the handful of requests the controller issues.
    """

    def __init__(
        self,
        *,
        scenes: Tuple[str, ...] = ("Scene", "Other"),
        program_scene: str = "Scene",
        canvas: Tuple[int, int] = (1920, 1080),
        connected: bool = True,
    ) -> None:
        self.connected = connected
        self.scenes: Dict[str, List[Dict[str, Any]]] = {name: [] for name in scenes}
        self.program_scene = program_scene
        self.canvas = canvas
        self.inputs: Dict[str, Dict[str, Any]] = {}
        self.media_status: Dict[str, Any] = {
            "mediaState": "OBS_MEDIA_STATE_NONE",
            "mediaDuration": 0,
            "mediaCursor": 0,
        }
        self.failures: Dict[str, Exception] = {}
        # Requests named here wait until the event is set.
        self.gates: Dict[str, asyncio.Event] = {}
        self.cursor_step = 1000
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.connect_error: Optional[Exception] = None
        self.connected_with: Optional[Tuple[str, str]] = None
        self._next_item_id = 1
        self._opened: List[Any] = []
        self._closed: List[Any] = []

    # ----------------------------------------------------------- lifecycle

    def on_connection_opened(self, listener) -> None:
        self._opened.append(listener)

    def on_connection_closed(self, listener) -> None:
        self._closed.append(listener)

    def remove_listener(self, listener) -> None:
        for listeners in (self._opened, self._closed):
            if listener in listeners:
                listeners.remove(listener)

    async def connect(self, url: str, password: str = "") -> None:
        if self.connect_error is not None:
            raise self.connect_error
        if self.connected:
            return
        self.connected = True
        self.connected_with = (url, password)
        for listener in list(self._opened):
            await listener()

    async def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        for listener in list(self._closed):
            await listener()

    # ------------------------------------------------------------- helpers

    def add_input(self, name: str, kind: str, *, scene: Optional[str] = None, enabled: bool = True) -> None:
        self.inputs[name] = {"inputKind": kind, "inputSettings": {}}
        if scene is not None:
            self._add_item(scene, name, enabled)

    def _add_item(self, scene: str, source: str, enabled: bool) -> Dict[str, Any]:
        item = {"sceneItemId": self._next_item_id, "sourceName": source, "sceneItemEnabled": enabled}
        self._next_item_id += 1
        self.scenes[scene].append(item)
        return item

    def item(self, scene: str, source: str) -> Optional[Dict[str, Any]]:
        for item in self.scenes.get(scene, []):
            if item["sourceName"] == source:
                return item
        return None

    def requests(self, request_type: str) -> List[Dict[str, Any]]:
        return [data for name, data in self.calls if name == request_type]

    def request_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def _missing(self, request_type: str, what: str) -> RemoteError:
        return RemoteError(request_type, 600, f"No resource was found by the name of `{what}`.")

    # ------------------------------------------------------------ requests

    async def call(self, request_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = dict(data or {})
        self.calls.append((request_type, data))
        gate = self.gates.get(request_type)
        if gate is not None:
            await gate.wait()
        if not self.connected:
            raise NotConnectedError("OBS is not connected")
        failure = self.failures.get(request_type)
        if failure is not None:
            raise failure
        return getattr(self, f"_{request_type}")(data)

    def _GetInputSettings(self, data):
        entry = self.inputs.get(data["inputName"])
        if entry is None:
            raise self._missing("GetInputSettings", data["inputName"])
        return {"inputKind": entry["inputKind"], "inputSettings": dict(entry["inputSettings"])}

    def _CreateInput(self, data):
        if data["inputName"] in self.inputs:
            raise RemoteError("CreateInput", 601, "An input already exists by that input name.")
        if data["sceneName"] not in self.scenes:
            raise self._missing("CreateInput", data["sceneName"])
        self.inputs[data["inputName"]] = {
            "inputKind": data["inputKind"],
            "inputSettings": dict(data.get("inputSettings") or {}),
        }
        item = self._add_item(data["sceneName"], data["inputName"], data.get("sceneItemEnabled", True))
        return {"inputUuid": data["inputName"], "sceneItemId": item["sceneItemId"]}

    def _CreateSceneItem(self, data):
        if data["sceneName"] not in self.scenes:
            raise self._missing("CreateSceneItem", data["sceneName"])
        if data["sourceName"] not in self.inputs:
            raise self._missing("CreateSceneItem", data["sourceName"])
        item = self._add_item(data["sceneName"], data["sourceName"], data.get("sceneItemEnabled", True))
        return {"sceneItemId": item["sceneItemId"]}

    def _GetSceneItemList(self, data):
        if data["sceneName"] not in self.scenes:
            raise self._missing("GetSceneItemList", data["sceneName"])
        return {"sceneItems": [dict(item) for item in self.scenes[data["sceneName"]]]}

    def _find_item_by_id(self, request_type, data):
        for item in self.scenes.get(data["sceneName"], []):
            if item["sceneItemId"] == data["sceneItemId"]:
                return item
        raise self._missing(request_type, str(data["sceneItemId"]))

    def _SetSceneItemEnabled(self, data):
        self._find_item_by_id("SetSceneItemEnabled", data)["sceneItemEnabled"] = data["sceneItemEnabled"]
        return {}

    def _SetSceneItemTransform(self, data):
        self._find_item_by_id("SetSceneItemTransform", data)["transform"] = dict(data["sceneItemTransform"])
        return {}

    def _GetVideoSettings(self, data):
        width, height = self.canvas
        return {"baseWidth": width, "baseHeight": height, "outputWidth": width, "outputHeight": height}

    def _GetCurrentProgramScene(self, data):
        return {"currentProgramSceneName": self.program_scene, "sceneName": self.program_scene}

    def _SetCurrentProgramScene(self, data):
        if data["sceneName"] not in self.scenes:
            raise self._missing("SetCurrentProgramScene", data["sceneName"])
        self.program_scene = data["sceneName"]
        return {}

    def _GetSceneList(self, data):
        return {
            "currentProgramSceneName": self.program_scene,
            "scenes": [
                {"sceneName": name, "sceneIndex": index} for index, name in enumerate(self.scenes)
            ],
        }

    def _TriggerMediaInputAction(self, data):
        if data["inputName"] not in self.inputs:
            raise self._missing("TriggerMediaInputAction", data["inputName"])
        action = data["mediaAction"]
        if action.endswith("_STOP"):
            if self.media_status["mediaState"] != "OBS_MEDIA_STATE_PLAYING":
                raise RemoteError("TriggerMediaInputAction", 604, "The media input is not playing.")
            self.media_status["mediaState"] = "OBS_MEDIA_STATE_STOPPED"
        elif action.endswith("_RESTART") or action.endswith("_PLAY"):
            if action.endswith("_RESTART"):
                self.media_status["mediaCursor"] = 0
            self.media_status["mediaState"] = "OBS_MEDIA_STATE_PLAYING"
        elif action.endswith("_PAUSE"):
            self.media_status["mediaState"] = "OBS_MEDIA_STATE_PAUSED"
        return {}

    def _SetInputSettings(self, data):
        entry = self.inputs.get(data["inputName"])
        if entry is None:
            raise self._missing("SetInputSettings", data["inputName"])
        if data.get("overlay", True):
            entry["inputSettings"].update(data["inputSettings"])
        else:
            entry["inputSettings"] = dict(data["inputSettings"])
        return {}

    def _GetMediaInputStatus(self, data):
        if data["inputName"] not in self.inputs:
            raise self._missing("GetMediaInputStatus", data["inputName"])
        status = dict(self.media_status)
        if status["mediaState"] == "OBS_MEDIA_STATE_PLAYING":
            self.media_status["mediaCursor"] += self.cursor_step
        return status

    def _SetMediaInputCursor(self, data):
        self.media_status["mediaCursor"] = data["mediaCursor"]
        return {}


class RecordingProbe:
    def __init__(self, duration: Optional[float] = PROBED_DURATION) -> None:
        self.duration = duration
        self.paths: List[str] = []

    async def __call__(self, path: str) -> Optional[float]:
        self.paths.append(path)
        return self.duration


@pytest.fixture
def fake_switcher() -> FakeSwitcher:
    return FakeSwitcher()


@pytest.fixture
def probe() -> RecordingProbe:
    return RecordingProbe()


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(
        tmp_path / "settings.yaml",
        defaults=OperatorSettings(
            media_dir=MEDIA_ROOT,
            obs_url="ws://obs.test:4455",
            obs_password="secret",
            target_scene="Scene",
        ),
    )


@pytest.fixture
def catalog(tmp_path: Path, settings_store: SettingsStore, probe: RecordingProbe) -> MediaCatalog:
    return MediaCatalog(
        lambda: settings_store.current.media_dir,
        cache_dir=tmp_path / "cache",
        probe=probe,
    )


@pytest.fixture
def reconciler(fake_switcher: FakeSwitcher, settings_store: SettingsStore) -> SourceReconciler:
    return SourceReconciler(
        fake_switcher,
        default_sources("PlayerVideo", "PlayerImage"),
        target_scene=lambda: settings_store.current.target_scene,
    )


@pytest.fixture
def playout_state() -> PlayoutState:
    return PlayoutState()


@pytest.fixture
def controller(
    fake_switcher: FakeSwitcher,
    playout_state: PlayoutState,
    settings_store: SettingsStore,
    catalog: MediaCatalog,
    reconciler: SourceReconciler,
) -> PlayoutController:
    return PlayoutController(fake_switcher, playout_state, settings_store, catalog, reconciler)
