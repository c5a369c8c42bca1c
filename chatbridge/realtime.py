from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

import websocket

from .errors import ProviderError

logger = logging.getLogger(__name__)

STATUS_CONNECTING = "connecting"
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

Listener = Callable[[dict[str, Any]], None]
StatusCallback = Callable[[str], None]
ErrorCallback = Callable[[Exception], None]


def websocket_url(server_url: str) -> str:
    parsed = urlparse(server_url.rstrip("/"))
    scheme = "wss" if parsed.scheme == "https" else "ws"
    return f"{scheme}://{parsed.netloc}{parsed.path}/api/v4/websocket"


class MattermostSocket:
    """Mattermost WebSocket event stream with automatic reconnect."""

    def __init__(
        self,
        server_url: str,
        token: str,
        *,
        on_status: StatusCallback | None = None,
        on_error: ErrorCallback | None = None,
        reconnect_delay_s: float = 3.0,
        recv_timeout_s: float = 1.0,
        connect: Callable[..., Any] = websocket.create_connection,
    ) -> None:
        self.url = websocket_url(server_url)
        self.token = token
        self.on_status = on_status
        self.on_error = on_error
        self.reconnect_delay_s = reconnect_delay_s
        self.recv_timeout_s = recv_timeout_s
        self._connect = connect
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._seq = 0
        self._auth_seq: int | None = None
        self._ws: Any = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def subscribe_new_messages(self, listener: Listener) -> Callable[[], None]:
        def only_posted(msg: dict[str, Any]) -> None:
            if msg.get("event") == "posted":
                listener(msg)

        return self.subscribe(only_posted)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="mattermost-ws", daemon=True)
        self._thread.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except (OSError, websocket.WebSocketException):
                logger.debug("ws: close failed", exc_info=True)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout_s)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _status(self, status: str) -> None:
        if self.on_status is not None:
            self.on_status(status)

    def _next_seq(self) -> int:
        with self._lock:
            self._seq += 1
            return self._seq

    def send_action(self, action: str, data: dict[str, Any] | None = None) -> int:
        if self._ws is None:
            raise RuntimeError("websocket not connected")
        seq = self._next_seq()
        self._ws.send(json.dumps({"seq": seq, "action": action, "data": data or {}}))
        return seq

    def run(self) -> None:
        while not self._stop.is_set():
            self._status(STATUS_CONNECTING)
            try:
                self._ws = self._connect(self.url, timeout=self.recv_timeout_s)
                self._auth_seq = self.send_action(
                    "authentication_challenge", {"token": self.token}
                )
                self._read_loop()
            except (OSError, websocket.WebSocketException) as exc:
                if not self._stop.is_set():
                    logger.warning("ws: connection lost: %s", exc)
            finally:
                ws, self._ws = self._ws, None
                if ws is not None:
                    try:
                        ws.close()
                    except (OSError, websocket.WebSocketException):
                        logger.debug("ws: close failed", exc_info=True)
                self._status(STATUS_OFFLINE)
            if self._stop.wait(self.reconnect_delay_s):
                break

    def _read_loop(self) -> None:
        while not self._stop.is_set():
            try:
                raw = self._ws.recv()
            except websocket.WebSocketTimeoutException:
                continue
            if raw is None or raw == "":
                raise websocket.WebSocketConnectionClosedException("connection closed")
            self.handle_frame(raw)

    def handle_frame(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("ws: ignoring unparsable frame")
            return
        if not isinstance(msg, dict):
            return
        if msg.get("type") == "ping":
            if self._ws is not None:
                self._ws.send(json.dumps({"type": "pong"}))
            return
        if "seq_reply" in msg:
            if msg.get("seq_reply") != self._auth_seq:
                return
            if msg.get("status") == "OK":
                self._status(STATUS_ONLINE)
            else:
                error = (msg.get("error") or {}).get("message") or "authentication failed"
                self._stop.set()
                if self.on_error is not None:
                    self.on_error(ProviderError(str(error), status=401))
            return
        if not msg.get("event"):
            return
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(msg)
            except Exception:
                logger.exception("ws: listener failed for %s", msg.get("event"))


class MatrixSyncPoller:
    """Long-polls Matrix /sync on a background thread."""

    def __init__(
        self,
        client: Any,
        on_batch: Callable[[dict[str, Any]], None],
        *,
        since: str | None = None,
        on_status: StatusCallback | None = None,
        on_error: ErrorCallback | None = None,
        timeout_ms: int = 30000,
        reconnect_delay_s: float = 3.0,
    ) -> None:
        self.client = client
        self.on_batch = on_batch
        self.since = since
        self.on_status = on_status
        self.on_error = on_error
        self.timeout_ms = timeout_ms
        self.reconnect_delay_s = reconnect_delay_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_status: str | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="matrix-sync", daemon=True)
        self._thread.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout_s)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _status(self, status: str) -> None:
        # Every long-poll succeeds with "online"; only transitions are reported.
        if status == self._last_status:
            return
        self._last_status = status
        if self.on_status is not None:
            self.on_status(status)

    def poll_once(self) -> dict[str, Any]:
        batch = self.client.sync(self.since, timeout_ms=self.timeout_ms)
        self.since = (batch.get("cursor") or {}).get("since") or self.since
        return batch

    def run(self) -> None:
        self._status(STATUS_CONNECTING)
        while not self._stop.is_set():
            try:
                batch = self.poll_once()
            except ProviderError as exc:
                self._status(STATUS_OFFLINE)
                if exc.is_auth_error:
                    self._stop.set()
                    if self.on_error is not None:
                        self.on_error(exc)
                    return
                logger.warning("matrix sync failed: %s", exc)
                self._stop.wait(self.reconnect_delay_s)
                continue
            except OSError as exc:
                self._status(STATUS_OFFLINE)
                logger.warning("matrix sync failed: %s", exc)
                self._stop.wait(self.reconnect_delay_s)
                continue
            self._status(STATUS_ONLINE)
            if not self._stop.is_set():
                self.on_batch(batch)
