from __future__ import annotations

import json
from typing import Any

from rich import print

from chatbridge.errors import AuthError, ProviderError
from chatbridge.sync.daemon import run_sync_daemon, sync_daemon_tick
from chatbridge.sync.engine import CURSOR_KEY

from .common import ChatContext, fail, format_message


def _ensure_initialized(ctx: ChatContext) -> None:
    if not ctx.store.get_chats():
        totals = ctx.engine.global_sync()
        print(f"Initial sync: {totals['chats']} chat(s), {totals['messages']} message(s)")


def sync_once_cmd(*, open_chat, db_path: str | None) -> None:
    """Run a single push/pull reconciliation pass."""

    ctx = open_chat(db_path)
    try:
        _ensure_initialized(ctx)
        ctx.engine.sync_chats()
        result = sync_daemon_tick(ctx.engine)
        ctx.store.set_sync_daemon_ok()
    except (AuthError, ProviderError) as exc:
        raise fail(f"Sync failed: {exc}") from exc
    except OSError as exc:
        raise fail(f"Chat server unreachable: {exc}") from exc
    finally:
        ctx.close()
    pushed = result["pushed"]
    pulled = result["pulled"]
    print(
        f"Pushed sent={pushed['sent']} edited={pushed['edited']} deleted={pushed['deleted']}"
        f" reactions={pushed['reactions']} seen={pushed['seen']} failed={pushed['failed']}"
    )
    print(f"Pulled inserted={pulled['inserted']} updated={pulled['updated']}")


def sync_global_cmd(*, open_chat, db_path: str | None) -> None:
    """Rebuild the cache from the chat server."""

    ctx = open_chat(db_path)
    try:
        totals = ctx.engine.global_sync()
    except (AuthError, ProviderError) as exc:
        raise fail(f"Global sync failed: {exc}") from exc
    except OSError as exc:
        raise fail(f"Chat server unreachable: {exc}") from exc
    finally:
        ctx.close()
    print(f"[green]Synced {totals['chats']} chat(s), {totals['messages']} message(s)[/green]")
    if totals["failed"]:
        print(f"[yellow]{totals['failed']} chat(s) failed; see logs[/yellow]")


def sync_run_cmd(*, open_chat, db_path: str | None, interval_s: int) -> None:
    """Stay connected: realtime stream plus periodic catch-up."""

    ctx = open_chat(db_path)
    try:
        _ensure_initialized(ctx)
        print(f"Syncing every {interval_s}s (Ctrl+C to stop)")
        run_sync_daemon(
            ctx.engine,
            interval_s,
            on_status=lambda status: print(f"[dim]connection: {status}[/dim]"),
        )
    except KeyboardInterrupt:
        print("Stopped")
    except (AuthError, ProviderError) as exc:
        raise fail(f"Sync failed: {exc}") from exc
    except OSError as exc:
        raise fail(f"Chat server unreachable: {exc}") from exc
    finally:
        ctx.close()


def watch_cmd(*, open_chat, db_path: str | None, chat_id: str, interval_s: int) -> None:
    """Follow one chat live."""

    ctx = open_chat(db_path)
    store = ctx.store
    try:
        if not store.get_messages(chat_id, limit=1):
            ctx.engine.init_chat(chat_id)
        for doc in store.get_messages(chat_id, limit=20):
            print(format_message(doc, ctx.user_id))
        last_seq = store.last_seq()

        def show_changes(_batch: dict[str, Any], _result: dict[str, int]) -> None:
            nonlocal last_seq
            for change in store.changes_since(last_seq, chat_id=chat_id):
                last_seq = max(last_seq, int(change["seq"]))
                if change["doc_type"] != "message" or change["deleted"]:
                    continue
                doc = store.get_doc(change["doc_id"])
                if doc is not None and not doc.get("placeholder"):
                    print(format_message(doc, ctx.user_id))

        run_sync_daemon(ctx.engine, interval_s, on_batch=show_changes)
    except KeyboardInterrupt:
        print("Stopped")
    except (AuthError, ProviderError) as exc:
        raise fail(f"Watch failed: {exc}") from exc
    except OSError as exc:
        raise fail(f"Chat server unreachable: {exc}") from exc
    finally:
        ctx.close()


def sync_status_cmd(*, store_from_path, db_path: str | None) -> None:
    """Show connection state, outbox size and last sync result."""

    store = store_from_path(db_path)
    try:
        state = store.get_sync_daemon_state() or {}
        connection = store.get_state("connection_status") or "offline"
        cursor_raw = store.get_state(CURSOR_KEY)
        pending = store.pending_messages()
        chats = store.get_chats()
    finally:
        store.close()
    print(f"- Connection: {connection}")
    print(f"- Chats cached: {len(chats)}")
    print(f"- Pending changes: {len(pending)}")
    failed = [doc for doc in pending if doc.get("status") == "failed"]
    if failed:
        print(f"- [red]Failed messages: {len(failed)}[/red]")
    print(f"- Last ok: {state.get('last_ok_at') or 'never'}")
    if state.get("last_error"):
        print(f"- [red]Last error: {state['last_error']} ({state.get('last_error_at')})[/red]")
    if cursor_raw:
        try:
            cursor = json.loads(cursor_raw)
        except json.JSONDecodeError:
            cursor = {}
        print(f"- Cursor entries: {len(cursor)}")
