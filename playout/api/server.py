"""
FastAPI control surface and realtime fan-out for the playout controller.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .. import PlayoutConfig
from ..catalog import MediaCatalog
from ..controller import InvalidCommand, InvalidPathError, PlayoutController, TransitionSuperseded
from ..reconciler import SourceReconciler, default_sources
from ..settings import SettingsStore
from ..state import OnAirRecord, PlayoutState, ProgressSample
from ..switcher import NotConnectedError, RemoteError, SwitcherClient, SwitcherConnectionError
from ..utils.timer import RepeatingTimer
from . import schemas

LOG = logging.getLogger(__name__)


class RealtimeSession:
    """Track per-connection state and orchestrate send/receive loops."""

    def __init__(self, manager: "RealtimeManager", websocket: WebSocket, *, queue_size: int) -> None:
        self.manager = manager
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.session_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to accept WebSocket connection")
            return

        await self.manager.initialise_session(self)
        tasks = [
            asyncio.create_task(self._recv_loop()),
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._keepalive_loop()),
        ]
        try:
            await self._stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.manager.finalise_session(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any], *, allow_drop: bool = False) -> None:
        """
        Queue ``payload`` without waiting.

        A full queue drops droppable messages; for anything else the session is
        too far behind to stay consistent and is shut down.
        """

        if self.is_stopped:
            return
        try:
            self.send_queue.put_nowait(dict(payload))
        except asyncio.QueueFull:
            if allow_drop:
                self.logger.debug("Dropping %s message due to backpressure", payload.get("type"))
                return
            self.logger.warning("Send queue full; closing realtime session")
            self._stop_event.set()

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive_json()
                except WebSocketDisconnect:
                    break
                except ValueError:
                    self.logger.debug("Ignoring malformed frame")
                    continue

                if not isinstance(message, dict):
                    continue

                msg_type = str(message.get("type") or "").lower()
                if msg_type == "pong":
                    self.last_pong = time.monotonic()
                    continue
                if msg_type == "ping":
                    await self.send({"type": "pong", "ts": time.time()})
                    continue

                try:
                    await self.manager.handle_message(self, message)
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while processing message")
        except RuntimeError:
            self.logger.debug("WebSocket closed while receiving")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(outbound)
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        if self.manager.ping_interval <= 0:
            return
        while not self.is_stopped:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.manager.ping_interval)
            if self.is_stopped:
                break
            await self.send({"type": "ping", "ts": time.time()}, allow_drop=True)
            if (time.monotonic() - self.last_pong) > self.manager.pong_timeout:
                self.logger.warning("Ping timeout; closing realtime session")
                await self.close(code=1011, reason="ping timeout")
                break


class RealtimeManager:
    """
    Fan out engine status, the on-air record and progress samples.

    Every broadcast is queued to all sessions while holding one lock, and a
    joining session is registered and handed its snapshot under the same lock,
    so all observers see the same sequence and nobody sees a stale record
    after a newer one.
    """

    def __init__(
        self,
        state: PlayoutState,
        client: SwitcherClient,
        controller: PlayoutController,
        *,
        queue_size: int = 256,
        ping_interval: float = 30.0,
        pong_timeout: float = 60.0,
        progress_interval: float = 1.0,
    ) -> None:
        self.state = state
        self.client = client
        self.controller = controller
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))
        self.progress_timer = RepeatingTimer(progress_interval, self.publish_progress, name="progress")

        self._sessions: Dict[str, RealtimeSession] = {}
        self._lock = asyncio.Lock()
        self._running = False

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.state.subscribe(self.broadcast_on_air)
        self.client.on_connection_opened(self.broadcast_engine_status)
        self.client.on_connection_closed(self.broadcast_engine_status)
        self.progress_timer.start()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await self.progress_timer.stop()
        self.state.unsubscribe(self.broadcast_on_air)
        self.client.remove_listener(self.broadcast_engine_status)

    async def run(self, websocket: WebSocket) -> None:
        session = RealtimeSession(self, websocket, queue_size=self.queue_size)
        await session.run()

    def snapshot_messages(self) -> List[Dict[str, Any]]:
        return [
            {"type": "engine-status", "payload": {"connected": self.client.connected}},
            {"type": "on-air", "payload": self.state.on_air.to_dict()},
        ]

    async def initialise_session(self, session: Any) -> None:
        async with self._lock:
            self._sessions[session.session_id] = session
            for message in self.snapshot_messages():
                await session.send(message)
        LOG.info("[WebSocket] Client connected: %s", session.session_id)

    async def finalise_session(self, session: Any) -> None:
        async with self._lock:
            self._sessions.pop(session.session_id, None)
        LOG.info("[WebSocket] Client disconnected: %s", session.session_id)

    async def handle_message(self, session: Any, message: Dict[str, Any]) -> None:
        message_type = str(message.get("type") or "")
        if message_type in {"request-status", "requestStatus"}:
            async with self._lock:
                for snapshot in self.snapshot_messages():
                    await session.send(snapshot)
            return
        LOG.debug("Ignoring realtime message type=%s", message_type)

    async def broadcast(self, message: Dict[str, Any], *, allow_drop: bool = False) -> None:
        async with self._lock:
            for session in list(self._sessions.values()):
                await session.send(message, allow_drop=allow_drop)

    async def broadcast_on_air(self, record: OnAirRecord) -> None:
        await self.broadcast({"type": "on-air", "payload": record.to_dict()})

    async def broadcast_engine_status(self) -> None:
        await self.broadcast({"type": "engine-status", "payload": {"connected": self.client.connected}})

    async def publish_progress(self) -> None:
        if not self._sessions:
            return
        record = self.state.on_air
        sample = await self.controller.read_progress()
        async with self._lock:
            # The record changed while OBS was answering; the sample is stale.
            if self.state.on_air is not record:
                sample = ProgressSample.none()
            message = {"type": "progress", "payload": sample.to_dict()}
            for session in list(self._sessions.values()):
                await session.send(message, allow_drop=True)


@contextlib.contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except (InvalidPathError, InvalidCommand) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TransitionSuperseded as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (NotConnectedError, SwitcherConnectionError) as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except RemoteError as exc:
        raise HTTPException(status_code=502, detail=exc.to_dict()) from exc


def create_app(
    *,
    config: Optional[PlayoutConfig] = None,
    client: Optional[SwitcherClient] = None,
    settings: Optional[SettingsStore] = None,
    state: Optional[PlayoutState] = None,
    catalog: Optional[MediaCatalog] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    config = config or PlayoutConfig()
    client = client or SwitcherClient()
    playout_state = state or PlayoutState()
    if settings is None:
        settings = SettingsStore(config.settings_path)
        settings.load()
    store = settings
    catalog = catalog or MediaCatalog(lambda: store.current.media_dir, cache_dir=config.cache_dir)

    reconciler = SourceReconciler(
        client,
        default_sources(config.video_input, config.image_input),
        target_scene=lambda: store.current.target_scene,
    )
    controller = PlayoutController(client, playout_state, store, catalog, reconciler)
    realtime = RealtimeManager(
        playout_state,
        client,
        controller,
        progress_interval=config.progress_interval,
    )

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        await realtime.start()
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await realtime.stop()
            await client.disconnect()

    app = FastAPI(title="OBS Playout API", lifespan=app_lifespan)
    app.state.controller = controller
    app.state.realtime = realtime
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.websocket("/realtime")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await realtime.run(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "connected": client.connected}

    @app.get("/media")
    async def list_media() -> dict:
        items = await catalog.list_media()
        return {"ok": True, "items": [item.to_dict() for item in items]}

    @app.post("/play/video")
    async def play_video(payload: schemas.MediaFileRequest) -> dict:
        with _http_errors():
            result = await controller.play_video(payload.file_path)
        return {"ok": True, **result.to_dict()}

    @app.post("/show/image")
    async def show_image(payload: schemas.MediaFileRequest) -> dict:
        with _http_errors():
            result = await controller.show_image(payload.file_path)
        return {"ok": True, **result.to_dict()}

    @app.post("/stop/all")
    async def stop_all() -> dict:
        result = await controller.stop_all()
        return {"ok": True, **result.to_dict()}

    @app.post("/obs/connect")
    async def obs_connect() -> dict:
        with _http_errors():
            changed = await controller.connect()
        message = "Successfully connected to OBS" if changed else "Already connected to OBS"
        return {"ok": True, "message": message}

    @app.post("/obs/disconnect")
    async def obs_disconnect() -> dict:
        changed = await controller.disconnect()
        message = "Successfully disconnected from OBS" if changed else "Already disconnected from OBS"
        return {"ok": True, "message": message}

    @app.get("/obs/status")
    async def obs_status() -> dict:
        return {"ok": True, "connected": client.connected, "url": store.current.obs_url}

    @app.get("/obs/progress")
    async def obs_progress() -> dict:
        if not client.connected:
            raise HTTPException(status_code=503, detail="OBS not connected")
        sample = await controller.read_progress()
        return sample.to_dict()

    @app.post("/obs/control")
    async def obs_control(payload: schemas.MediaControlRequest) -> dict:
        with _http_errors():
            await controller.control_media(payload.action)
        return {"ok": True, "message": f"Video {payload.action} successfully"}

    @app.post("/obs/seek")
    async def obs_seek(payload: schemas.SeekRequest) -> dict:
        with _http_errors():
            position = await controller.seek(payload.time_ms)
        return {"ok": True, "message": f"Seeked to {int(position // 1000)}s"}

    @app.get("/obs/scenes")
    async def obs_scenes() -> dict:
        with _http_errors():
            scenes = await controller.list_scenes()
        return {"ok": True, **scenes}

    @app.post("/obs/scene")
    async def obs_scene(payload: schemas.SceneRequest) -> dict:
        with _http_errors():
            switched = await controller.set_target_scene(payload.scene_name)
        if switched:
            return {"ok": True, "message": f"Switched to scene: {payload.scene_name}"}
        return {"ok": True, "message": "Target set to current scene"}

    @app.get("/api/current-playing")
    async def current_playing() -> dict:
        return {"ok": True, **(await controller.current_playing())}

    @app.get("/api/settings")
    async def get_settings() -> dict:
        return {"ok": True, "settings": store.current.to_dict()}

    @app.post("/api/settings")
    async def update_settings(payload: schemas.SettingsUpdate) -> dict:
        if not payload.media_dir or not payload.obs_url:
            raise HTTPException(status_code=400, detail="mediaDir and obsUrl are required")
        updated = await controller.apply_settings(**payload.model_dump())
        return {"ok": True, "message": "Settings updated successfully", "settings": updated.to_dict()}

    return app
