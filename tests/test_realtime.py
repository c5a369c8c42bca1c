from __future__ import annotations

import json
from typing import Any

import websocket

from chatbridge.errors import ProviderError
from chatbridge.realtime import MatrixSyncPoller, MattermostSocket, websocket_url


class _FakeWs:
    def __init__(self, frames: list[str], owner: list[MattermostSocket]) -> None:
        self.frames = list(frames)
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._owner = owner

    def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def recv(self) -> str:
        if self.frames:
            return self.frames.pop(0)
        self._owner[0]._stop.set()
        raise websocket.WebSocketConnectionClosedException("closed")

    def close(self) -> None:
        self.closed = True


def test_websocket_url() -> None:
    assert websocket_url("https://mm.example.com/") == "wss://mm.example.com/api/v4/websocket"
    assert websocket_url("http://localhost:8065") == "ws://localhost:8065/api/v4/websocket"


def test_socket_authenticates_and_dispatches_events() -> None:
    owner: list[MattermostSocket] = []
    frames = [
        json.dumps({"seq_reply": 1, "status": "OK"}),
        json.dumps({"type": "ping"}),
        json.dumps({"event": "typing", "data": {}}),
        json.dumps({"event": "posted", "data": {"post": "{}"}}),
        "not json",
    ]
    ws = _FakeWs(frames, owner)
    connects: list[str] = []

    def connect(url: str, timeout: float) -> _FakeWs:
        connects.append(url)
        return ws

    statuses: list[str] = []
    sock = MattermostSocket(
        "http://mm", "tok", on_status=statuses.append, reconnect_delay_s=0, connect=connect
    )
    owner.append(sock)
    received: list[str] = []
    posted: list[str] = []
    sock.subscribe(lambda msg: received.append(msg["event"]))
    sock.subscribe_new_messages(lambda msg: posted.append(msg["event"]))

    sock.run()

    assert connects == ["ws://mm/api/v4/websocket"]
    assert ws.sent[0] == {
        "seq": 1,
        "action": "authentication_challenge",
        "data": {"token": "tok"},
    }
    assert ws.sent[1] == {"type": "pong"}
    assert received == ["typing", "posted"]
    assert posted == ["posted"]
    assert statuses == ["connecting", "online", "offline"]
    assert ws.closed


def test_socket_auth_failure_stops_and_reports() -> None:
    owner: list[MattermostSocket] = []
    errors: list[Exception] = []
    frames = [json.dumps({"seq_reply": 1, "status": "FAIL", "error": {"message": "bad token"}})]
    sock = MattermostSocket(
        "http://mm",
        "tok",
        on_error=errors.append,
        reconnect_delay_s=0,
        connect=lambda url, timeout: _FakeWs(frames, owner),
    )
    owner.append(sock)

    sock.run()

    assert sock.stopped
    assert len(errors) == 1
    assert isinstance(errors[0], ProviderError)
    assert errors[0].is_auth_error


def test_listener_errors_do_not_break_dispatch() -> None:
    sock = MattermostSocket("http://mm", "tok", connect=lambda url, timeout: None)
    seen: list[str] = []

    def broken(msg: dict[str, Any]) -> None:
        raise RuntimeError("boom")

    sock.subscribe(broken)
    unsubscribe = sock.subscribe(lambda msg: seen.append(msg["event"]))
    sock.handle_frame(json.dumps({"event": "posted"}))
    unsubscribe()
    sock.handle_frame(json.dumps({"event": "posted"}))

    assert seen == ["posted"]


class _FakeMatrixClient:
    def __init__(self, results: list[Any]) -> None:
        self.results = list(results)
        self.since_args: list[str | None] = []

    def sync(self, since: str | None, *, timeout_ms: int) -> dict[str, Any]:
        self.since_args.append(since)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def test_poller_tracks_since_token() -> None:
    client = _FakeMatrixClient([{"events": [], "cursor": {"since": "s2"}}])
    poller = MatrixSyncPoller(client, lambda batch: None, since="s1")

    poller.poll_once()

    assert client.since_args == ["s1"]
    assert poller.since == "s2"


def test_poller_retries_transient_errors_then_delivers() -> None:
    client = _FakeMatrixClient(
        [
            ProviderError("Bad gateway", status=502),
            {"events": [{"kind": "chat"}], "cursor": {"since": "s3"}},
        ]
    )
    statuses: list[str] = []
    batches: list[dict[str, Any]] = []
    poller: MatrixSyncPoller

    def on_batch(batch: dict[str, Any]) -> None:
        batches.append(batch)
        poller._stop.set()

    poller = MatrixSyncPoller(client, on_batch, on_status=statuses.append, reconnect_delay_s=0)

    poller.run()

    assert statuses == ["connecting", "offline", "online"]
    assert len(batches) == 1
    assert poller.since == "s3"


def test_poller_stops_on_auth_error() -> None:
    client = _FakeMatrixClient(
        [ProviderError("Unknown token", status=401, errcode="M_UNKNOWN_TOKEN")]
    )
    errors: list[Exception] = []
    poller = MatrixSyncPoller(client, lambda batch: None, on_error=errors.append)

    poller.run()

    assert poller.stopped
    assert len(errors) == 1


def test_poller_reports_only_status_changes() -> None:
    client = _FakeMatrixClient(
        [
            {"events": [], "cursor": {"since": "s2"}},
            {"events": [], "cursor": {"since": "s3"}},
            ProviderError("Bad gateway", status=502),
            {"events": [], "cursor": {"since": "s4"}},
        ]
    )
    statuses: list[str] = []
    batches: list[dict[str, Any]] = []
    poller: MatrixSyncPoller

    def on_batch(batch: dict[str, Any]) -> None:
        batches.append(batch)
        if len(batches) == 3:
            poller._stop.set()

    poller = MatrixSyncPoller(client, on_batch, on_status=statuses.append, reconnect_delay_s=0)

    poller.run()

    assert statuses == ["connecting", "online", "offline", "online"]
    assert poller.since == "s4"


def test_socket_waits_for_auth_reply_before_online() -> None:
    owner: list[MattermostSocket] = []
    frames = [json.dumps({"event": "hello", "data": {}})]
    statuses: list[str] = []
    sock = MattermostSocket(
        "http://mm",
        "tok",
        on_status=statuses.append,
        reconnect_delay_s=0,
        connect=lambda url, timeout: _FakeWs(frames, owner),
    )
    owner.append(sock)

    sock.run()

    assert statuses == ["connecting", "offline"]
