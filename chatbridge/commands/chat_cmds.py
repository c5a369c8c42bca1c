from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from rich import print
from rich.markup import escape

from chatbridge.errors import AuthError, InvalidMessageState, ProviderError
from chatbridge.sync import outbox

from .common import ChatContext, fail, format_chat, format_message


@contextmanager
def _chat(open_chat, db_path: str | None) -> Iterator[ChatContext]:
    ctx = open_chat(db_path)
    try:
        yield ctx
    except InvalidMessageState as exc:
        raise fail(str(exc)) from exc
    except AuthError as exc:
        raise fail(exc.message) from exc
    except ProviderError as exc:
        raise fail(f"Chat server error: {exc.message}") from exc
    except OSError as exc:
        raise fail(f"Chat server unreachable: {exc}") from exc
    finally:
        ctx.close()


def _flush(ctx: ChatContext, *, offline: bool) -> None:
    if offline:
        print("[yellow]Queued; run `chatbridge sync once` to push[/yellow]")
        return
    result = ctx.engine.flush()
    if result.get("failed"):
        print(
            f"[red]{result['failed']} message(s) failed to reach the chat server;"
            " use retry or cancel[/red]"
        )


def _show(ctx: ChatContext, ref: str) -> None:
    doc = ctx.store.find_message(ref)
    if doc is None:
        print("Removed")
        return
    print(format_message(doc, ctx.user_id))


def chats_cmd(*, open_chat, db_path: str | None, refresh: bool) -> None:
    """List cached chats, newest first."""

    with _chat(open_chat, db_path) as ctx:
        if refresh or not ctx.store.get_chats():
            ctx.engine.sync_chats()
        chats = ctx.store.get_chats()
        if not chats:
            print("No chats")
            return
        for chat in chats:
            print(format_chat(chat))


def messages_cmd(
    *, open_chat, db_path: str | None, chat_id: str, limit: int, refresh: bool
) -> None:
    """Render a chat timeline from the cache."""

    with _chat(open_chat, db_path) as ctx:
        if refresh or not ctx.store.get_messages(chat_id, limit=1):
            ctx.engine.init_chat(chat_id)
        chat = ctx.store.get_chat(chat_id)
        if chat is not None:
            print(f"[bold]{escape(str(chat.get('name') or chat_id))}[/bold]")
        messages = ctx.store.get_messages(chat_id, limit=limit)
        if not messages:
            print("No messages")
            return
        for doc in messages:
            print(format_message(doc, ctx.user_id))


def send_cmd(
    *,
    open_chat,
    db_path: str | None,
    chat_id: str,
    text: str,
    reply_to: str | None,
    offline: bool,
) -> None:
    """Send a message optimistically, then push it."""

    with _chat(open_chat, db_path) as ctx:
        doc = outbox.send_message(
            ctx.store,
            chat_id,
            text,
            sender_id=ctx.user_id,
            sender_name=ctx.user_name,
            reply_to=reply_to,
        )
        _flush(ctx, offline=offline)
        _show(ctx, doc["id"])


def edit_cmd(
    *, open_chat, db_path: str | None, message_id: str, text: str, offline: bool
) -> None:
    """Edit one of your messages."""

    with _chat(open_chat, db_path) as ctx:
        doc = outbox.edit_message(ctx.store, message_id, text)
        _flush(ctx, offline=offline)
        _show(ctx, doc["id"])


def delete_cmd(*, open_chat, db_path: str | None, message_id: str, offline: bool) -> None:
    """Delete a message, leaving a tombstone."""

    with _chat(open_chat, db_path) as ctx:
        doc = outbox.delete_message(ctx.store, message_id)
        if doc is None:
            print("Unsent message discarded")
            return
        _flush(ctx, offline=offline)
        _show(ctx, doc["id"])


def react_cmd(
    *,
    open_chat,
    db_path: str | None,
    message_id: str,
    emoji: str,
    remove: bool,
    offline: bool,
) -> None:
    """Add or remove a reaction."""

    with _chat(open_chat, db_path) as ctx:
        if remove:
            doc = outbox.remove_reaction(ctx.store, message_id, emoji, ctx.user_id)
        else:
            doc = outbox.add_reaction(ctx.store, message_id, emoji, ctx.user_id)
        _flush(ctx, offline=offline)
        _show(ctx, doc["id"])


def seen_cmd(*, open_chat, db_path: str | None, chat_id: str, offline: bool) -> None:
    """Mark a chat read and send a read receipt."""

    with _chat(open_chat, db_path) as ctx:
        target = outbox.mark_seen(ctx.store, chat_id, ctx.user_id)
        _flush(ctx, offline=offline)
        if target is None:
            print("Nothing to mark")
            return
        print(f"Marked read up to {target['id']}")


def retry_cmd(*, open_chat, db_path: str | None, message_id: str) -> None:
    """Resend a failed message."""

    with _chat(open_chat, db_path) as ctx:
        doc = outbox.retry(ctx.store, message_id)
        _flush(ctx, offline=False)
        _show(ctx, doc["id"])


def cancel_cmd(*, open_chat, db_path: str | None, message_id: str) -> None:
    """Drop an unsent message."""

    with _chat(open_chat, db_path) as ctx:
        outbox.cancel(ctx.store, message_id)
        print("Cancelled")


def _open_new_chat(ctx: ChatContext, chat: dict) -> None:
    ctx.engine.init_chat(str(chat["id"]))
    stored = ctx.store.get_chat(str(chat["id"])) or chat
    print(f"[green]Chat ready[/green] {format_chat(stored)}")


def dm_cmd(*, open_chat, db_path: str | None, user_id: str) -> None:
    """Open (or reuse) a direct chat with a user."""

    with _chat(open_chat, db_path) as ctx:
        _open_new_chat(ctx, ctx.client.create_direct_chat(user_id))


def group_cmd(*, open_chat, db_path: str | None, user_ids: list[str], name: str | None) -> None:
    """Create a group chat."""

    with _chat(open_chat, db_path) as ctx:
        _open_new_chat(ctx, ctx.client.create_group_chat(user_ids, name))


def channel_create_cmd(
    *,
    open_chat,
    db_path: str | None,
    name: str,
    private: bool,
    members: list[str],
) -> None:
    """Create a named channel."""

    with _chat(open_chat, db_path) as ctx:
        _open_new_chat(ctx, ctx.client.create_channel(name, private=private, members=members))


def join_cmd(*, open_chat, db_path: str | None, chat_id: str) -> None:
    """Join a chat you were invited to."""

    with _chat(open_chat, db_path) as ctx:
        ctx.client.join_chat(chat_id)
        _open_new_chat(ctx, {"id": chat_id})


def history_cmd(*, open_chat, db_path: str | None, chat_id: str, limit: int) -> None:
    """Load one page of older messages."""

    with _chat(open_chat, db_path) as ctx:
        oldest = ctx.store.oldest_delivered(chat_id)
        result = ctx.engine.load_previous(chat_id, limit=limit)
        print(f"Loaded {result['inserted']} older message(s)")
        before = oldest["timestamp"] if oldest else None
        for doc in ctx.store.get_messages(chat_id, limit=limit, before=before):
            print(format_message(doc, ctx.user_id))
