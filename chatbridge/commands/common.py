from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any

import typer
from rich import print
from rich.markup import escape

from chatbridge.config import ChatbridgeConfig, read_config_file, write_config_file
from chatbridge.errors import ApiError
from chatbridge.session import clear_session, load_session
from chatbridge.store import DELETED_PLACEHOLDER, STATUS_FAILED, STATUS_SENDING, ChatStore
from chatbridge.store.utils import parse_iso8601
from chatbridge.sync.engine import SyncEngine

STATUS_MARKERS = {STATUS_SENDING: "[yellow]…[/yellow]", STATUS_FAILED: "[red]![/red]"}


def store_from_path(db_path: str | None, config: ChatbridgeConfig) -> ChatStore:
    return ChatStore(db_path or config.db_path)


def read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def write_config_or_exit(data: dict[str, Any]) -> None:
    try:
        write_config_file(data)
    except OSError as exc:
        print(f"[red]Failed to write config: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def session_or_exit() -> dict[str, Any]:
    session = load_session()
    if session is None or not (session.get("chat") or {}).get("access_token"):
        print("[red]Not logged in. Run: chatbridge login[/red]")
        raise typer.Exit(code=1)
    return session


def fail(message: str) -> typer.Exit:
    print(f"[red]{escape(message)}[/red]")
    return typer.Exit(code=1)


def api_error_exit(exc: ApiError) -> typer.Exit:
    return fail(exc.message)


def logout_on_auth_error() -> None:
    clear_session()
    print("[yellow]Chat session expired; logged out[/yellow]")


def short_time(value: str | None) -> str:
    if not value:
        return ""
    parsed = parse_iso8601(value)
    if parsed is None:
        return value
    local = parsed.astimezone()
    if local.date() == dt.datetime.now().astimezone().date():
        return local.strftime("%H:%M")
    return local.strftime("%Y-%m-%d %H:%M")


def format_chat(chat: dict[str, Any]) -> str:
    unread = int(chat.get("unread_count") or 0)
    badge = f" [bold cyan]({unread})[/bold cyan]" if unread else ""
    kind = "group" if chat.get("is_group") else "dm"
    preview = escape(str(chat.get("last_message") or ""))
    when = short_time(chat.get("last_message_time"))
    name = escape(str(chat.get("name") or chat["id"]))
    return f"{chat['id']} | {name}{badge} | {kind} | {when} | {preview}"


def format_reactions(reactions: list[dict[str, Any]]) -> str:
    counts: dict[str, int] = {}
    for reaction in reactions:
        emoji = str(reaction.get("emoji") or "")
        counts[emoji] = counts.get(emoji, 0) + 1
    return " ".join(f"{emoji}×{count}" if count > 1 else emoji for emoji, count in counts.items())


def format_message(doc: dict[str, Any], own_user_id: str | None) -> str:
    if doc.get("is_deleted"):
        body = f"[dim]{DELETED_PLACEHOLDER}[/dim]"
    else:
        body = escape(str(doc.get("content") or ""))
        if doc.get("is_edited"):
            body += " [dim](edited)[/dim]"
    own = bool(own_user_id) and doc.get("sender_id") == own_user_id
    sender = "you" if own else doc.get("sender_name")
    line = f"{short_time(doc.get('timestamp'))} {escape(str(sender or ''))}: {body}"
    marker = STATUS_MARKERS.get(str(doc.get("status") or ""))
    if marker:
        line = f"{marker} {line}"
    if doc.get("status") == STATUS_FAILED and doc.get("error"):
        line += f" [red]({escape(str(doc['error']))})[/red]"
    if doc.get("reactions"):
        line += f"  {format_reactions(doc['reactions'])}"
    seen = [u for u in doc.get("seen_by") or [] if u != doc.get("sender_id")]
    if doc.get("reply_to"):
        line += f" [dim]↪ {doc['reply_to']}[/dim]"
    if seen and own:
        line += f" [dim]seen by {len(seen)}[/dim]"
    return f"[dim]{doc['id']}[/dim] {line}"


@dataclass
class ChatContext:
    engine: SyncEngine
    user_id: str
    user_name: str

    @property
    def store(self) -> ChatStore:
        return self.engine.store

    @property
    def client(self) -> Any:
        return self.engine.client

    def close(self) -> None:
        self.engine.stop()
        self.engine.store.close()
