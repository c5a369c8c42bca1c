from __future__ import annotations

import json
from typing import Any

import pytest

from chatbridge.errors import AuthError, ProviderError
from chatbridge.store import ChatStore
from chatbridge.sync import outbox
from chatbridge.sync.engine import SyncEngine


def _message_event(message_id: str, minute: int, sender_id: str = "u2") -> dict[str, Any]:
    return {
        "kind": "message",
        "chat_id": "c1",
        "message_id": message_id,
        "doc": {
            "id": message_id,
            "type": "message",
            "chat_id": "c1",
            "content": f"text {message_id}",
            "sender_id": sender_id,
            "sender_name": sender_id,
            "timestamp": f"2026-01-01T10:{minute:02d}:00.000+00:00",
        },
        "is_own": sender_id == "me",
    }


class _FakeClient:
    provider = "mattermost"
    user_id = "me"

    def __init__(self) -> None:
        self.chats = [{"id": "c1", "type": "chat", "name": "General", "is_group": True}]
        self.pages: dict[str, dict[str, Any]] = {
            "c1": {
                "events": [_message_event("m2", 2), _message_event("m3", 3)],
                "cursor": "m2",
                "last_update_ms": 1767261780000,
            }
        }
        self.previous: dict[str, Any] = {"events": [_message_event("m1", 1)], "cursor": None}
        self.updates: dict[str, Any] = {"events": [], "cursor": {}, "invites": []}
        self.single: dict[str, list[dict[str, Any]]] = {}
        self.error: ProviderError | None = None
        self.joined: list[str] = []
        self.previous_calls: list[str] = []

    def _maybe_fail(self) -> None:
        if self.error is not None:
            raise self.error

    def list_chats(self) -> list[dict[str, Any]]:
        self._maybe_fail()
        return list(self.chats)

    def get_chat(self, chat_id: str) -> dict[str, Any] | None:
        return next((c for c in self.chats if c["id"] == chat_id), None)

    def fetch_messages(self, chat_id: str, *, limit: int) -> dict[str, Any]:
        self._maybe_fail()
        return self.pages.get(chat_id, {"events": [], "cursor": None})

    def fetch_previous(self, chat_id: str, cursor: str, *, limit: int) -> dict[str, Any]:
        self.previous_calls.append(cursor)
        return self.previous

    def fetch_updates(self, chat_ids: list[str], cursor: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail()
        return self.updates

    def fetch_message(self, chat_id: str, message_id: str) -> list[dict[str, Any]]:
        return self.single.get(message_id, [])

    def join_chat(self, chat_id: str) -> None:
        self.joined.append(chat_id)
        self.chats.append({"id": chat_id, "type": "chat", "name": "Invited", "is_group": True})

    def send_message(
        self, chat_id: str, content: str, *, reply_to: str | None, temp_id: str
    ) -> dict[str, Any]:
        self._maybe_fail()
        return {**_message_event("m9", 9, "me")["doc"], "content": content, "temp_id": temp_id}


class _FakeStream:
    def __init__(self) -> None:
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True


def test_global_sync_loads_chats_and_history(store: ChatStore) -> None:
    client = _FakeClient()
    engine = SyncEngine(store, client)

    totals = engine.global_sync()

    assert totals == {"chats": 1, "messages": 2, "failed": 0}
    assert [m["id"] for m in store.get_messages("c1")] == ["m2", "m3"]
    assert store.get_state("history:c1") == "m2"
    assert engine.cursor() == {"c1": 1767261780000}
    assert store.get_chat("c1")["last_message"] == "text m3"


def test_global_sync_keeps_unsent_messages(store: ChatStore) -> None:
    client = _FakeClient()
    engine = SyncEngine(store, client)
    engine.global_sync()
    local = outbox.send_message(store, "c1", "offline draft", sender_id="me")

    engine.global_sync()

    assert store.get_doc(local["id"])["status"] == "sending"
    assert len(store.get_messages("c1")) == 3


def test_load_previous_pages_until_exhausted(store: ChatStore) -> None:
    client = _FakeClient()
    engine = SyncEngine(store, client)
    engine.global_sync()

    result = engine.load_previous("c1")

    assert result["inserted"] == 1
    assert client.previous_calls == ["m2"]
    assert store.get_state("history:c1") is None
    assert [m["id"] for m in store.get_messages("c1")] == ["m1", "m2", "m3"]

    # Without a stored cursor the oldest cached message anchors the page.
    engine.load_previous("c1")
    assert client.previous_calls == ["m2", "m1"]


def test_catch_up_applies_live_batch_and_advances_cursor(store: ChatStore) -> None:
    client = _FakeClient()
    engine = SyncEngine(store, client)
    engine.global_sync()
    client.updates = {
        "events": [_message_event("m4", 4)],
        "cursor": {"c1": 1767261840000},
        "invites": [],
    }

    result = engine.catch_up()

    assert result["inserted"] == 1
    assert store.get_chat("c1")["unread_count"] == 1
    assert engine.cursor()["c1"] == 1767261840000


def test_apply_batch_fetches_missing_reaction_target(store: ChatStore) -> None:
    client = _FakeClient()
    engine = SyncEngine(store, client)
    engine.global_sync()
    client.single["m0"] = [_message_event("m0", 0)]

    engine.apply_batch(
        {
            "events": [
                {
                    "kind": "reaction_added",
                    "chat_id": "c1",
                    "message_id": "m0",
                    "emoji": "smile",
                    "user_id": "u2",
                }
            ]
        }
    )

    doc = store.get_doc("m0")
    assert doc is not None
    assert doc["reactions"] == [{"emoji": "smile", "user_id": "u2", "event_id": None}]


def test_apply_batch_joins_invites_and_refreshes_chats(store: ChatStore) -> None:
    client = _FakeClient()
    engine = SyncEngine(store, client)

    engine.apply_batch(
        {"events": [{"kind": "chat_refresh", "chat_id": "c1"}], "invites": ["c2"]}
    )

    assert client.joined == ["c2"]
    assert store.get_chat("c1") is not None
    assert store.get_chat("c2")["name"] == "Invited"


def test_auth_error_logs_out_and_stops_stream(store: ChatStore) -> None:
    client = _FakeClient()
    stream = _FakeStream()
    client.open_stream = lambda *args, **kwargs: stream  # type: ignore[attr-defined]
    logged_out: list[bool] = []
    engine = SyncEngine(store, client, on_auth_error=lambda: logged_out.append(True))
    engine.start(lambda batch: None)
    assert stream.started

    client.error = ProviderError("Invalid or expired session", status=401)
    with pytest.raises(AuthError):
        engine.catch_up()

    assert logged_out == [True]
    assert stream.stopped


def test_flush_auth_error_is_reported(store: ChatStore) -> None:
    client = _FakeClient()
    engine = SyncEngine(store, client, on_auth_error=lambda: None)
    engine.global_sync()
    outbox.send_message(store, "c1", "hi", sender_id="me")
    client.error = ProviderError("Unauthorized", status=401)

    with pytest.raises(AuthError):
        engine.flush()


def test_non_auth_errors_propagate_unchanged(store: ChatStore) -> None:
    client = _FakeClient()
    engine = SyncEngine(store, client)
    client.error = ProviderError("Bad gateway", status=502)

    with pytest.raises(ProviderError):
        engine.sync_chats()


def test_flush_delivers_and_connection_status(store: ChatStore) -> None:
    client = _FakeClient()
    engine = SyncEngine(store, client)
    engine.global_sync()
    local = outbox.send_message(store, "c1", "hi", sender_id="me")

    assert engine.flush()["sent"] == 1
    assert store.find_message(local["id"])["id"] == "m9"

    assert engine.connection_status() == "offline"
    engine.set_connection_status("online")
    assert engine.connection_status() == "online"
    assert json.loads(store.get_state("cursor") or "{}")
