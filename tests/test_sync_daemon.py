from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from chatbridge.errors import ProviderError
from chatbridge.store import ChatStore
from chatbridge.sync import daemon
from chatbridge.sync.engine import SyncEngine


class _FakeStream:
    def __init__(self, on_batch, on_status, batches: list[dict[str, Any]]) -> None:
        self.on_batch = on_batch
        self.on_status = on_status
        self.batches = batches
        self.stopped = False

    def start(self) -> None:
        self.on_status("online")
        for batch in self.batches:
            self.on_batch(batch)

    def stop(self) -> None:
        self.stopped = True


class _FakeClient:
    provider = "matrix"
    user_id = "@me:hs"

    def __init__(self, *, batches: list[dict[str, Any]] | None = None) -> None:
        self.batches = batches or []
        self.update_errors: list[ProviderError] = []
        self.update_calls = 0
        self.stream: _FakeStream | None = None

    def fetch_updates(self, chat_ids: list[str], cursor: dict[str, Any]) -> dict[str, Any]:
        self.update_calls += 1
        if self.update_errors:
            raise self.update_errors.pop(0)
        return {"events": [], "cursor": {"since": f"s{self.update_calls}"}, "invites": []}

    def open_stream(self, on_batch, *, on_status=None, on_error=None, cursor=None) -> _FakeStream:
        self.stream = _FakeStream(on_batch, on_status, self.batches)
        return self.stream


def _chat_batch() -> dict[str, Any]:
    return {
        "events": [
            {
                "kind": "chat",
                "chat_id": "!r:hs",
                "doc": {"id": "!r:hs", "type": "chat", "name": "Room", "is_group": True},
            }
        ],
        "cursor": {"since": "live"},
    }


@pytest.fixture(autouse=True)
def _daemon_log_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(daemon, "DAEMON_LOG_DIR", tmp_path / "logs")


def test_tick_reports_push_and_pull(store: ChatStore) -> None:
    engine = SyncEngine(store, _FakeClient())

    result = daemon.sync_daemon_tick(engine)

    assert result["pushed"]["sent"] == 0
    assert result["pulled"] == {"inserted": 0, "updated": 0, "skipped": 0}
    assert engine.cursor() == {"since": "s1"}


def test_daemon_applies_stream_batches_until_stopped(store: ChatStore) -> None:
    client = _FakeClient(batches=[_chat_batch()])
    engine = SyncEngine(store, client)
    stop = threading.Event()
    applied: list[dict[str, int]] = []
    statuses: list[str] = []

    def on_batch(batch: dict[str, Any], result: dict[str, int]) -> None:
        applied.append(result)
        stop.set()

    daemon.run_sync_daemon(
        engine, 60, stop_event=stop, on_batch=on_batch, on_status=statuses.append
    )

    assert applied == [{"inserted": 1, "updated": 0, "skipped": 0}]
    assert statuses == ["online"]
    assert store.get_chat("!r:hs") is not None
    # Coming online forces a second catch-up pass.
    assert client.update_calls == 2
    assert client.stream is not None and client.stream.stopped
    assert engine.connection_status() == "offline"
    state = store.get_sync_daemon_state()
    assert state is not None and state["last_ok_at"]


def test_daemon_records_transient_errors_and_keeps_running(store: ChatStore) -> None:
    client = _FakeClient()
    client.update_errors.append(ProviderError("Bad gateway", status=502))
    engine = SyncEngine(store, client)
    stop = threading.Event()

    daemon.run_sync_daemon(engine, 60, stop_event=stop, on_status=lambda status: stop.set())

    state = store.get_sync_daemon_state()
    assert state is not None
    assert state["last_error"] == "Bad gateway"
    assert (daemon.DAEMON_LOG_DIR / "sync-daemon.log").exists()


def test_daemon_stops_on_auth_error(store: ChatStore) -> None:
    client = _FakeClient()
    client.update_errors.append(ProviderError("Unknown token", status=401))
    logged_out: list[bool] = []
    engine = SyncEngine(store, client, on_auth_error=lambda: logged_out.append(True))

    daemon.run_sync_daemon(engine, 60, stop_event=threading.Event())

    assert logged_out == [True]
    state = store.get_sync_daemon_state()
    assert state is not None
    assert state["last_error"] == "session expired"
