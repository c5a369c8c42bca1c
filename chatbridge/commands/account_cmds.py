from __future__ import annotations

from typing import Any

import typer
from rich import print
from rich.markup import escape

from chatbridge.config import validate_service_config
from chatbridge.errors import ApiError

from .common import api_error_exit, fail


def serve_cmd(*, load_config, run_api_server, host: str | None, port: int | None) -> None:
    """Run the credential bridge API in the foreground."""

    config = load_config()
    problems = validate_service_config(config)
    if problems:
        for problem in problems:
            print(f"[red]{problem}[/red]")
        raise typer.Exit(code=1)
    bind_host = host or config.api_host
    bind_port = port or config.api_port
    print(f"[green]Auth API listening on {bind_host}:{bind_port} ({config.provider})[/green]")
    try:
        run_api_server(bind_host, bind_port, config=config)
    except KeyboardInterrupt:
        print("Stopped")


def _save_login(payload: dict[str, Any], save_session) -> None:
    path = save_session(payload)
    user = payload.get("user") or {}
    chat = payload.get("chat") or {}
    print(f"[green]{escape(str(payload.get('message') or 'Logged in'))}[/green]")
    print(f"- User: {user.get('name')} <{user.get('email')}> ({user.get('role')})")
    print(f"- Chat: {chat.get('provider')} {chat.get('user_id')} @ {chat.get('server_url')}")
    print(f"- Session: {path}")


def register_cmd(
    *,
    backend,
    save_session,
    name: str,
    email: str,
    password: str,
    role: str,
) -> None:
    """Create an app account plus its chat account."""

    try:
        payload = backend().register(name=name, email=email, password=password, role=role)
    except ApiError as exc:
        raise api_error_exit(exc) from exc
    except OSError as exc:
        raise fail(f"Auth API unreachable: {exc}") from exc
    _save_login(payload, save_session)


def login_cmd(*, backend, save_session, email: str, password: str) -> None:
    """Log in and store the chat session locally."""

    try:
        payload = backend().login(email=email, password=password)
    except ApiError as exc:
        raise api_error_exit(exc) from exc
    except OSError as exc:
        raise fail(f"Auth API unreachable: {exc}") from exc
    _save_login(payload, save_session)
    print("- Next: chatbridge sync global")


def logout_cmd(*, clear_session, store_from_path, db_path: str | None, purge: bool) -> None:
    """Forget the local session (and optionally the cache)."""

    removed = clear_session()
    if purge:
        store = store_from_path(db_path)
        try:
            store.clear(keep_unsynced=False)
        finally:
            store.close()
    print("Logged out" if removed else "[yellow]No active session[/yellow]")


def whoami_cmd(*, backend, session_or_exit) -> None:
    """Show the bridge identity behind the stored token."""

    session = session_or_exit()
    try:
        me = backend(session.get("token")).me()
    except ApiError as exc:
        raise api_error_exit(exc) from exc
    except OSError as exc:
        raise fail(f"Auth API unreachable: {exc}") from exc
    chat = session.get("chat") or {}
    print(f"{me.get('email')} (id {me.get('id')}, {me.get('role')})")
    print(f"- Chat: {chat.get('provider')} {chat.get('user_id')}")


def users_search_cmd(
    *, backend, session_or_exit, query: str, page: int, limit: int
) -> None:
    """Search registered users by name or email."""

    session = session_or_exit()
    try:
        result = backend(session.get("token")).search_users(query, page=page, limit=limit)
    except ApiError as exc:
        raise api_error_exit(exc) from exc
    except OSError as exc:
        raise fail(f"Auth API unreachable: {exc}") from exc
    users = result.get("data") or []
    if not users:
        print("No users found")
        return
    for user in users:
        print(f"{user.get('chat_user_id')} | {escape(str(user.get('name')))} | {user.get('email')}")
    pagination = result.get("pagination") or {}
    print(
        f"[dim]page {pagination.get('page')}/{pagination.get('pages')}"
        f" ({pagination.get('total')} users)[/dim]"
    )
