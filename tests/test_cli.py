from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from chatbridge import cli_app
from chatbridge.commands.common import ChatContext
from chatbridge.errors import AuthError
from chatbridge.session import load_session, save_session
from chatbridge.store import ChatStore
from chatbridge.sync.engine import SyncEngine

runner = CliRunner()


class _FakeClient:
    provider = "mattermost"
    user_id = "me"

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.seen: list[str] = []

    def list_chats(self) -> list[dict[str, Any]]:
        return [{"id": "c1", "type": "chat", "name": "General", "is_group": True}]

    def get_chat(self, chat_id: str) -> dict[str, Any] | None:
        return {"id": chat_id, "type": "chat", "name": f"Chat {chat_id}", "is_group": False}

    def fetch_messages(self, chat_id: str, *, limit: int) -> dict[str, Any]:
        return {
            "events": [
                {
                    "kind": "message",
                    "chat_id": chat_id,
                    "message_id": "m1",
                    "doc": {
                        "id": "m1",
                        "type": "message",
                        "chat_id": chat_id,
                        "content": "welcome aboard",
                        "sender_id": "u2",
                        "sender_name": "bob",
                        "timestamp": "2026-01-01T10:00:00.000+00:00",
                    },
                }
            ],
            "cursor": None,
        }

    def fetch_updates(self, chat_ids: list[str], cursor: dict[str, Any]) -> dict[str, Any]:
        return {"events": [], "cursor": {}, "invites": []}

    def send_message(
        self, chat_id: str, content: str, *, reply_to: str | None, temp_id: str
    ) -> dict[str, Any]:
        self.sent.append(content)
        return {
            "id": "m2",
            "type": "message",
            "chat_id": chat_id,
            "content": content,
            "sender_id": "me",
            "sender_name": "me",
            "timestamp": "2026-01-01T10:05:00.000+00:00",
            "temp_id": temp_id,
        }

    def mark_seen(self, chat_id: str, message_id: str) -> None:
        self.seen.append(message_id)

    def create_direct_chat(self, user_id: str) -> dict[str, Any]:
        return {"id": "d1", "type": "chat", "name": user_id, "is_group": False}


@pytest.fixture
def fake_chat(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> _FakeClient:
    client = _FakeClient()

    def open_chat(db_path: str | None) -> ChatContext:
        engine = SyncEngine(ChatStore(tmp_path / "cache.sqlite"), client)
        return ChatContext(engine=engine, user_id="me", user_name="Me")

    monkeypatch.setattr(cli_app, "_open_chat", open_chat)
    return client


def _store(tmp_path: Path) -> ChatStore:
    return ChatStore(tmp_path / "cache.sqlite")


def test_version() -> None:
    result = runner.invoke(cli_app.app, ["version"])

    assert result.exit_code == 0
    assert result.stdout.strip() == "0.1.0"


def test_chats_fetches_list_on_first_use(fake_chat: _FakeClient) -> None:
    result = runner.invoke(cli_app.app, ["chats"])

    assert result.exit_code == 0, result.stdout
    assert "c1 | General" in result.stdout


def test_messages_loads_history(fake_chat: _FakeClient) -> None:
    result = runner.invoke(cli_app.app, ["messages", "c1"])

    assert result.exit_code == 0, result.stdout
    assert "Chat c1" in result.stdout
    assert "bob: welcome aboard" in result.stdout


def test_send_offline_then_sync_once(fake_chat: _FakeClient, tmp_path: Path) -> None:
    runner.invoke(cli_app.app, ["messages", "c1"])

    queued = runner.invoke(cli_app.app, ["send", "c1", "hello there", "--offline"])
    assert queued.exit_code == 0, queued.stdout
    assert "Queued" in queued.stdout
    assert "you: hello there" in queued.stdout
    assert fake_chat.sent == []

    synced = runner.invoke(cli_app.app, ["sync", "once"])
    assert synced.exit_code == 0, synced.stdout
    assert "sent=1" in synced.stdout
    assert fake_chat.sent == ["hello there"]

    store = _store(tmp_path)
    try:
        assert store.get_doc("m2")["status"] == "delivered"
    finally:
        store.close()


def test_send_empty_message_fails(fake_chat: _FakeClient) -> None:
    result = runner.invoke(cli_app.app, ["send", "c1", "   "])

    assert result.exit_code == 1
    assert "cannot be empty" in result.stdout


def test_delete_unsent_and_cancel(fake_chat: _FakeClient, tmp_path: Path) -> None:
    runner.invoke(cli_app.app, ["send", "c1", "draft one", "--offline"])
    runner.invoke(cli_app.app, ["send", "c1", "draft two", "--offline"])
    store = _store(tmp_path)
    try:
        first, second = [doc["id"] for doc in store.pending_messages()]
    finally:
        store.close()

    deleted = runner.invoke(cli_app.app, ["delete", first])
    assert "Unsent message discarded" in deleted.stdout

    cancelled = runner.invoke(cli_app.app, ["cancel", second])
    assert cancelled.exit_code == 0
    assert "Cancelled" in cancelled.stdout

    missing = runner.invoke(cli_app.app, ["retry", second])
    assert missing.exit_code == 1
    assert "Message not found" in missing.stdout


def test_seen_sends_receipt(fake_chat: _FakeClient) -> None:
    runner.invoke(cli_app.app, ["messages", "c1"])

    result = runner.invoke(cli_app.app, ["seen", "c1"])

    assert result.exit_code == 0, result.stdout
    assert "Marked read up to m1" in result.stdout
    assert fake_chat.seen == ["m1"]


def test_dm_opens_chat(fake_chat: _FakeClient) -> None:
    result = runner.invoke(cli_app.app, ["dm", "u2"])

    assert result.exit_code == 0, result.stdout
    assert "Chat ready" in result.stdout
    assert "d1 |" in result.stdout


def test_unreachable_server_is_reported(fake_chat: _FakeClient) -> None:
    def refuse(*args: Any, **kwargs: Any) -> Any:
        raise ConnectionRefusedError(111, "Connection refused")

    fake_chat.list_chats = refuse  # type: ignore[method-assign]
    fake_chat.fetch_messages = refuse  # type: ignore[method-assign]

    for args in (["chats"], ["messages", "c1"]):
        result = runner.invoke(cli_app.app, args)
        assert result.exit_code == 1
        assert "Chat server unreachable" in result.stdout
        assert result.exception is None or isinstance(result.exception, SystemExit)


def test_chat_commands_require_login() -> None:
    result = runner.invoke(cli_app.app, ["chats"])

    assert result.exit_code == 1
    assert "Not logged in" in result.stdout


def test_sync_status_reports_pending(fake_chat: _FakeClient) -> None:
    runner.invoke(cli_app.app, ["send", "c1", "later", "--offline"])

    result = runner.invoke(cli_app.app, ["sync", "status"])

    assert result.exit_code == 0, result.stdout
    assert "Pending changes: 1" in result.stdout
    assert "Last ok: never" in result.stdout


class _FakeBackend:
    def __init__(self, token: str | None = None) -> None:
        self.token = token

    def login(self, *, email: str, password: str) -> dict[str, Any]:
        if password != "secret1":
            raise AuthError("Invalid credentials")
        return {
            "message": "Login successful",
            "token": "jwt",
            "user": {"id": 1, "email": email, "name": "Ann", "role": "USER"},
            "chat": {
                "provider": "mattermost",
                "user_id": "mm1",
                "access_token": "tok",
                "server_url": "http://mm",
            },
        }

    def me(self) -> dict[str, Any]:
        return {"id": 1, "email": "ann@example.com", "role": "USER", "token": self.token}


def test_login_whoami_logout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli_app, "_backend", _FakeBackend)

    bad = runner.invoke(
        cli_app.app, ["login", "--email", "ann@example.com", "--password", "wrong1"]
    )
    assert bad.exit_code == 1
    assert "Invalid credentials" in bad.stdout

    result = runner.invoke(
        cli_app.app, ["login", "--email", "ann@example.com", "--password", "secret1"]
    )
    assert result.exit_code == 0, result.stdout
    assert "Login successful" in result.stdout
    assert load_session()["chat"]["user_id"] == "mm1"

    whoami = runner.invoke(cli_app.app, ["whoami"])
    assert "ann@example.com (id 1, USER)" in whoami.stdout

    logout = runner.invoke(cli_app.app, ["logout"])
    assert "Logged out" in logout.stdout
    assert load_session() is None


def test_whoami_requires_chat_credentials(tmp_path: Path) -> None:
    save_session({"token": "jwt", "user": {"id": 1}, "chat": None})

    result = runner.invoke(cli_app.app, ["whoami"])

    assert result.exit_code == 1


def test_config_set_and_show_masks_secrets(tmp_path: Path) -> None:
    set_result = runner.invoke(cli_app.app, ["config", "set", "jwt_secret", "super-secret-value"])
    assert set_result.exit_code == 0
    assert "CHATBRIDGE_JWT_SECRET" in set_result.stdout
    saved = json.loads((tmp_path / "config.json").read_text())
    assert saved["jwt_secret"] == "super-secret-value"

    show = runner.invoke(cli_app.app, ["config", "show"])
    assert show.exit_code == 0
    assert "super-secret-value" not in show.stdout
    assert '"***"' in show.stdout

    unknown = runner.invoke(cli_app.app, ["config", "set", "nope", "1"])
    assert unknown.exit_code == 1


def test_serve_refuses_incomplete_config() -> None:
    result = runner.invoke(cli_app.app, ["serve"])

    assert result.exit_code == 1
    assert "jwt_secret" in result.stdout
