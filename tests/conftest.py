from __future__ import annotations

from pathlib import Path

import pytest

from chatbridge.store import ChatStore


@pytest.fixture(autouse=True)
def _isolate_chatbridge_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CHATBRIDGE_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("CHATBRIDGE_SESSION", str(tmp_path / "session.json"))
    monkeypatch.setenv("CHATBRIDGE_DB", str(tmp_path / "cache.sqlite"))
    monkeypatch.setenv("CHATBRIDGE_ACCOUNTS_DB", str(tmp_path / "accounts.sqlite"))
    for name in (
        "CHATBRIDGE_PROVIDER",
        "CHATBRIDGE_JWT_SECRET",
        "CHATBRIDGE_MATTERMOST_URL",
        "CHATBRIDGE_MATTERMOST_ADMIN_TOKEN",
        "CHATBRIDGE_MATRIX_URL",
        "CHATBRIDGE_MATRIX_SHARED_SECRET",
        "CHATBRIDGE_API_URL",
        "CHATBRIDGE_SYNC_INTERVAL_S",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store(tmp_path: Path):
    chat_store = ChatStore(tmp_path / "cache.sqlite")
    try:
        yield chat_store
    finally:
        chat_store.close()
