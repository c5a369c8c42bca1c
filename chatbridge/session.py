from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from .accounts import ChatCredentials
from .config import load_config


def get_session_path(path: Path | str | None = None) -> Path:
    if path:
        return Path(path).expanduser()
    return Path(load_config().session_path).expanduser()


def save_session(payload: dict[str, Any], path: Path | str | None = None) -> Path:
    session_path = get_session_path(path)
    session_path.parent.mkdir(parents=True, exist_ok=True)
    session = {
        "token": payload.get("token"),
        "user": payload.get("user"),
        "chat": payload.get("chat"),
    }
    fd = os.open(session_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(session, ensure_ascii=False, indent=2) + "\n")
    os.chmod(session_path, 0o600)
    return session_path


def load_session(path: Path | str | None = None) -> dict[str, Any] | None:
    session_path = get_session_path(path)
    try:
        raw = session_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not data.get("token"):
        return None
    return data


def clear_session(path: Path | str | None = None) -> bool:
    try:
        get_session_path(path).unlink()
    except FileNotFoundError:
        return False
    return True


def session_credentials(session: dict[str, Any] | None) -> ChatCredentials | None:
    chat = (session or {}).get("chat") or {}
    if not chat.get("user_id") or not chat.get("access_token"):
        return None
    return ChatCredentials.from_payload(chat)
