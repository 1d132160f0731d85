"""
Async obs-websocket (v5) client used as the single gateway to OBS.

The client performs the Hello/Identify handshake, correlates requests with
responses by ``requestId`` and reports connection transitions to registered
listeners.  It never retries or queues: every :meth:`SwitcherClient.call` may
fail on its own and callers decide whether that failure matters.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import hashlib
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

LOG = logging.getLogger(__name__)

SUBPROTOCOL = "obswebsocket.json"
RPC_VERSION = 1

OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_EVENT = 5
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7

CLOSE_AUTHENTICATION_FAILED = 4009

Listener = Callable[[], Awaitable[None]]
Connector = Callable[..., Awaitable[Any]]


class SwitcherError(RuntimeError):
    """Base class for switcher communication errors."""


class SwitcherConnectionError(SwitcherError):
    """Raised when the link to OBS cannot be established."""


class NotConnectedError(SwitcherError):
    """Raised when a request needs a link that does not exist (or just dropped)."""


class RemoteError(SwitcherError):
    """Raised when OBS answers a request with a failed status."""

    def __init__(self, request_type: str, code: Optional[int] = None, message: str = "") -> None:
        self.request_type = request_type
        self.code = code
        self.message = message or "request failed"
        super().__init__(f"{request_type} failed ({code}): {self.message}")

    def to_dict(self) -> dict:
        return {"request": self.request_type, "code": self.code, "message": self.message}


def authentication_string(password: str, salt: str, challenge: str) -> str:
    secret = base64.b64encode(hashlib.sha256((password + salt).encode("utf-8")).digest())
    digest = hashlib.sha256(secret + challenge.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def _close_code(exc: ConnectionClosed) -> Optional[int]:
    received = getattr(exc, "rcvd", None)
    return getattr(received, "code", None)


class SwitcherClient:
    """Typed facade over one obs-websocket connection."""

    def __init__(
        self,
        *,
        connector: Optional[Connector] = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self._connector = connector or websockets.connect
        self.connect_timeout = connect_timeout
        self.url: Optional[str] = None
        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._connect_lock = asyncio.Lock()
        self._opened_listeners: List[Listener] = []
        self._closed_listeners: List[Listener] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on_connection_opened(self, listener: Listener) -> None:
        self._opened_listeners.append(listener)

    def on_connection_closed(self, listener: Listener) -> None:
        self._closed_listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        for listeners in (self._opened_listeners, self._closed_listeners):
            if listener in listeners:
                listeners.remove(listener)

    # ------------------------------------------------------------ lifecycle

    async def connect(self, url: str, password: str = "") -> None:
        async with self._connect_lock:
            if self.connected:
                return
            try:
                ws = await asyncio.wait_for(
                    self._connector(url, subprotocols=[SUBPROTOCOL], max_size=None),
                    timeout=self.connect_timeout,
                )
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                raise SwitcherConnectionError(f"cannot reach OBS at {url}: {exc}") from exc

            try:
                await asyncio.wait_for(self._identify(ws, password), timeout=self.connect_timeout)
            except asyncio.TimeoutError as exc:
                await self._abandon(ws)
                raise SwitcherConnectionError("timed out waiting for OBS handshake") from exc
            except BaseException:
                await self._abandon(ws)
                raise

            self.url = url
            self._ws = ws
            self._reader_task = asyncio.create_task(self._read_loop(ws), name="switcher-reader")
            LOG.info("[OBS] Connected to %s", url)

        await self._emit(self._opened_listeners)

    async def disconnect(self) -> None:
        ws = self._ws
        if ws is None:
            return
        task = self._reader_task
        self._reader_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._abandon(ws)
        await self._mark_closed(ws, "disconnect requested")

    async def _identify(self, ws: Any, password: str) -> None:
        try:
            hello = await self._expect(ws, OP_HELLO)
            identify: Dict[str, Any] = {"rpcVersion": RPC_VERSION, "eventSubscriptions": 0}
            auth = hello.get("authentication")
            if auth:
                if not password:
                    raise SwitcherConnectionError("OBS requires a password")
                identify["authentication"] = authentication_string(
                    password, auth["salt"], auth["challenge"]
                )
            await ws.send(json.dumps({"op": OP_IDENTIFY, "d": identify}))
            await self._expect(ws, OP_IDENTIFIED)
        except ConnectionClosed as exc:
            if _close_code(exc) == CLOSE_AUTHENTICATION_FAILED:
                raise SwitcherConnectionError("OBS rejected the password") from exc
            raise SwitcherConnectionError(f"OBS closed the connection during handshake: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise SwitcherConnectionError(f"malformed handshake message: {exc}") from exc

    @staticmethod
    async def _abandon(ws: Any) -> None:
        with contextlib.suppress(WebSocketException, OSError):
            await ws.close()

    @staticmethod
    async def _expect(ws: Any, op: int) -> Dict[str, Any]:
        while True:
            message = json.loads(await ws.recv())
            if not isinstance(message, dict):
                continue
            if message.get("op") == op:
                return message.get("d") or {}
            LOG.debug("Skipping op %s while waiting for op %s", message.get("op"), op)

    async def _read_loop(self, ws: Any) -> None:
        reason = "connection closed by OBS"
        try:
            while True:
                raw = await ws.recv()
                try:
                    message = json.loads(raw)
                except ValueError:
                    LOG.warning("Ignoring non-JSON frame from OBS")
                    continue
                if not isinstance(message, dict):
                    LOG.warning("Ignoring non-object frame from OBS")
                    continue
                self._dispatch(message)
        except ConnectionClosed as exc:
            LOG.warning("[OBS] Disconnected (code=%s)", _close_code(exc))
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("[OBS] Reader failed; dropping the connection")
            reason = "reader failed"
            await self._abandon(ws)
        await self._mark_closed(ws, reason)

    def _dispatch(self, message: Dict[str, Any]) -> None:
        if message.get("op") != OP_REQUEST_RESPONSE:
            return
        data = message.get("d")
        if not isinstance(data, dict):
            return
        future = self._pending.pop(str(data.get("requestId")), None)
        if future is not None and not future.done():
            future.set_result(data)

    async def _mark_closed(self, ws: Any, reason: str) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(NotConnectedError(reason))
        LOG.info("[OBS] Connection closed: %s", reason)
        await self._emit(self._closed_listeners)

    @staticmethod
    async def _emit(listeners: List[Listener]) -> None:
        for listener in list(listeners):
            try:
                await listener()
            except Exception:
                LOG.exception("Connection listener failed")

    # ------------------------------------------------------------- requests

    async def call(self, request_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ws = self._ws
        if ws is None:
            raise NotConnectedError("OBS is not connected")

        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload: Dict[str, Any] = {"requestType": request_type, "requestId": request_id}
        if data:
            payload["requestData"] = data
        try:
            await ws.send(json.dumps({"op": OP_REQUEST, "d": payload}))
            response = await future
        except ConnectionClosed as exc:
            raise NotConnectedError(f"connection dropped during {request_type}") from exc
        finally:
            self._pending.pop(request_id, None)

        status = response.get("requestStatus") or {}
        if not status.get("result"):
            raise RemoteError(request_type, status.get("code"), status.get("comment") or "")
        return response.get("responseData") or {}
