from __future__ import annotations

import json
import logging
from typing import Any

import typer
from rich import print

from . import __version__
from .auth_api import run_api_server
from .backend_client import BackendClient
from .commands.account_cmds import (
    login_cmd,
    logout_cmd,
    register_cmd,
    serve_cmd,
    users_search_cmd,
    whoami_cmd,
)
from .commands.chat_cmds import (
    cancel_cmd,
    channel_create_cmd,
    chats_cmd,
    delete_cmd,
    dm_cmd,
    edit_cmd,
    group_cmd,
    history_cmd,
    join_cmd,
    messages_cmd,
    react_cmd,
    retry_cmd,
    seen_cmd,
    send_cmd,
)
from .commands.common import (
    ChatContext,
    logout_on_auth_error,
    read_config_or_exit,
    session_or_exit,
    store_from_path,
    write_config_or_exit,
)
from .commands.sync_cmds import (
    sync_global_cmd,
    sync_once_cmd,
    sync_run_cmd,
    sync_status_cmd,
    watch_cmd,
)
from .config import CONFIG_ENV_OVERRIDES, ChatbridgeConfig, get_config_path, load_config
from .providers import build_client
from .session import clear_session, save_session, session_credentials
from .store import ChatStore
from .sync.engine import SyncEngine

app = typer.Typer(help="chatbridge: Mattermost/Matrix chat from the terminal")
users_app = typer.Typer(help="Find other users")
channel_app = typer.Typer(help="Manage channels")
sync_app = typer.Typer(help="Reconcile the local cache with the chat server")
config_app = typer.Typer(help="Inspect and edit configuration")
app.add_typer(users_app, name="users")
app.add_typer(channel_app, name="channel")
app.add_typer(sync_app, name="sync")
app.add_typer(config_app, name="config")

DB_OPTION_HELP = "Path to the local cache database"


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )


def _config() -> ChatbridgeConfig:
    return load_config()


def _store(db_path: str | None) -> ChatStore:
    return store_from_path(db_path, _config())


def _backend(token: str | None = None) -> BackendClient:
    config = _config()
    return BackendClient(config.resolved_api_url, token=token, timeout_s=config.http_timeout_s)


def _open_chat(db_path: str | None) -> ChatContext:
    session = session_or_exit()
    config = _config()
    creds = session_credentials(session)
    if creds is None:
        print("[red]Session has no chat credentials. Run: chatbridge login[/red]")
        raise typer.Exit(code=1)
    client = build_client(creds, config)
    engine = SyncEngine(
        store_from_path(db_path, config),
        client,
        fetch_limit=config.fetch_limit,
        on_auth_error=logout_on_auth_error,
    )
    user = session.get("user") or {}
    return ChatContext(
        engine=engine, user_id=creds.user_id, user_name=str(user.get("name") or creds.user_id)
    )


@app.command()
def version() -> None:
    """Print the installed version."""

    print(__version__)


@app.command()
def serve(
    host: str = typer.Option(None, help="Bind host (default from config)"),
    port: int = typer.Option(None, help="Bind port (default from config)"),
) -> None:
    """Run the credential bridge HTTP API."""

    serve_cmd(load_config=_config, run_api_server=run_api_server, host=host, port=port)


@app.command()
def register(
    name: str = typer.Option(..., prompt=True),
    email: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    role: str = typer.Option("USER", help="USER or ADMIN"),
) -> None:
    """Create an account and log in."""

    register_cmd(
        backend=_backend,
        save_session=save_session,
        name=name,
        email=email,
        password=password,
        role=role,
    )


@app.command()
def login(
    email: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
) -> None:
    """Log in and store the chat session."""

    login_cmd(backend=_backend, save_session=save_session, email=email, password=password)


@app.command()
def logout(
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
    purge: bool = typer.Option(False, help="Also wipe the local cache"),
) -> None:
    """Forget the stored session."""

    logout_cmd(clear_session=clear_session, store_from_path=_store, db_path=db_path, purge=purge)


@app.command()
def whoami() -> None:
    """Show the logged-in identity."""

    whoami_cmd(backend=_backend, session_or_exit=session_or_exit)


@users_app.command("search")
def users_search(
    query: str = typer.Argument("", help="Name or email fragment"),
    page: int = typer.Option(1, min=1),
    limit: int = typer.Option(10, min=1, max=100),
) -> None:
    """Search registered users."""

    users_search_cmd(
        backend=_backend, session_or_exit=session_or_exit, query=query, page=page, limit=limit
    )


@app.command()
def chats(
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
    refresh: bool = typer.Option(False, help="Refetch the chat list first"),
) -> None:
    """List chats with unread counts."""

    chats_cmd(open_chat=_open_chat, db_path=db_path, refresh=refresh)


@app.command()
def messages(
    chat_id: str,
    limit: int = typer.Option(50, min=1),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
    refresh: bool = typer.Option(False, help="Refetch recent history first"),
) -> None:
    """Show a chat's timeline."""

    messages_cmd(
        open_chat=_open_chat, db_path=db_path, chat_id=chat_id, limit=limit, refresh=refresh
    )


@app.command()
def send(
    chat_id: str,
    text: str,
    reply_to: str = typer.Option(None, "--reply-to", help="Message id to reply to"),
    offline: bool = typer.Option(False, help="Only queue locally"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Send a message."""

    send_cmd(
        open_chat=_open_chat,
        db_path=db_path,
        chat_id=chat_id,
        text=text,
        reply_to=reply_to,
        offline=offline,
    )


@app.command()
def edit(
    message_id: str,
    text: str,
    offline: bool = typer.Option(False, help="Only queue locally"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Edit a message."""

    edit_cmd(
        open_chat=_open_chat, db_path=db_path, message_id=message_id, text=text, offline=offline
    )


@app.command()
def delete(
    message_id: str,
    offline: bool = typer.Option(False, help="Only queue locally"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Delete a message."""

    delete_cmd(open_chat=_open_chat, db_path=db_path, message_id=message_id, offline=offline)


@app.command()
def react(
    message_id: str,
    emoji: str,
    offline: bool = typer.Option(False, help="Only queue locally"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """React to a message."""

    react_cmd(
        open_chat=_open_chat,
        db_path=db_path,
        message_id=message_id,
        emoji=emoji,
        remove=False,
        offline=offline,
    )


@app.command()
def unreact(
    message_id: str,
    emoji: str,
    offline: bool = typer.Option(False, help="Only queue locally"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Remove your reaction."""

    react_cmd(
        open_chat=_open_chat,
        db_path=db_path,
        message_id=message_id,
        emoji=emoji,
        remove=True,
        offline=offline,
    )


@app.command()
def seen(
    chat_id: str,
    offline: bool = typer.Option(False, help="Only queue locally"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Mark a chat as read."""

    seen_cmd(open_chat=_open_chat, db_path=db_path, chat_id=chat_id, offline=offline)


@app.command()
def retry(message_id: str, db_path: str = typer.Option(None, help=DB_OPTION_HELP)) -> None:
    """Resend a failed message."""

    retry_cmd(open_chat=_open_chat, db_path=db_path, message_id=message_id)


@app.command()
def cancel(message_id: str, db_path: str = typer.Option(None, help=DB_OPTION_HELP)) -> None:
    """Discard an unsent message."""

    cancel_cmd(open_chat=_open_chat, db_path=db_path, message_id=message_id)


@app.command()
def dm(user_id: str, db_path: str = typer.Option(None, help=DB_OPTION_HELP)) -> None:
    """Open a direct chat with a chat user id."""

    dm_cmd(open_chat=_open_chat, db_path=db_path, user_id=user_id)


@app.command()
def group(
    user_ids: list[str] = typer.Argument(..., help="Chat user ids"),
    name: str = typer.Option(None, help="Display name"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Create a group chat."""

    group_cmd(open_chat=_open_chat, db_path=db_path, user_ids=user_ids, name=name)


@channel_app.command("create")
def channel_create(
    name: str,
    private: bool = typer.Option(False, help="Invite-only channel"),
    member: list[str] = typer.Option(None, "--member", help="Chat user id to add"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Create a channel."""

    channel_create_cmd(
        open_chat=_open_chat,
        db_path=db_path,
        name=name,
        private=private,
        members=list(member or []),
    )


@app.command()
def join(chat_id: str, db_path: str = typer.Option(None, help=DB_OPTION_HELP)) -> None:
    """Join a chat."""

    join_cmd(open_chat=_open_chat, db_path=db_path, chat_id=chat_id)


@app.command()
def history(
    chat_id: str,
    limit: int = typer.Option(60, min=1),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Load older messages."""

    history_cmd(open_chat=_open_chat, db_path=db_path, chat_id=chat_id, limit=limit)


@app.command()
def watch(
    chat_id: str,
    interval_s: int = typer.Option(None, "--interval", help="Catch-up interval in seconds"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Follow a chat live."""

    watch_cmd(
        open_chat=_open_chat,
        db_path=db_path,
        chat_id=chat_id,
        interval_s=interval_s or _config().sync_interval_s,
    )


@sync_app.command("once")
def sync_once(db_path: str = typer.Option(None, help=DB_OPTION_HELP)) -> None:
    """Push pending changes and pull missed events."""

    sync_once_cmd(open_chat=_open_chat, db_path=db_path)


@sync_app.command("run")
def sync_run(
    interval_s: int = typer.Option(None, "--interval", help="Catch-up interval in seconds"),
    db_path: str = typer.Option(None, help=DB_OPTION_HELP),
) -> None:
    """Keep the cache synced until interrupted."""

    sync_run_cmd(
        open_chat=_open_chat,
        db_path=db_path,
        interval_s=interval_s or _config().sync_interval_s,
    )


@sync_app.command("global")
def sync_global(db_path: str = typer.Option(None, help=DB_OPTION_HELP)) -> None:
    """Rebuild the cache from the server."""

    sync_global_cmd(open_chat=_open_chat, db_path=db_path)


@sync_app.command("status")
def sync_status(db_path: str = typer.Option(None, help=DB_OPTION_HELP)) -> None:
    """Show sync state."""

    sync_status_cmd(store_from_path=_store, db_path=db_path)


_SECRET_KEYS = {"mattermost_admin_token", "matrix_shared_secret", "jwt_secret"}


@config_app.command("show")
def config_show(
    reveal: bool = typer.Option(False, help="Print secrets instead of masking them"),
) -> None:
    """Print the effective configuration."""

    read_config_or_exit()
    data: dict[str, Any] = _config().as_dict()
    if not reveal:
        for key in _SECRET_KEYS:
            if data.get(key):
                data[key] = "***"
    print(f"[dim]{get_config_path()}[/dim]")
    print(json.dumps(data, indent=2))


@config_app.command("set")
def config_set(key: str, value: str) -> None:
    """Persist one configuration value."""

    if key not in ChatbridgeConfig.__dataclass_fields__:
        print(f"[red]Unknown config key: {key}[/red]")
        raise typer.Exit(code=1)
    data = read_config_or_exit()
    data[key] = value
    write_config_or_exit(data)
    print(f"[green]Set {key}[/green]")
    env_var = CONFIG_ENV_OVERRIDES.get(key)
    if env_var:
        print(f"[dim]{env_var} overrides this when set[/dim]")
