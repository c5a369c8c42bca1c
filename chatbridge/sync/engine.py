from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from ..errors import AuthError, ProviderError
from ..store import ChatStore
from ..store.types import RemoteEvent
from ..store.utils import ms_from_iso, now_iso
from . import outbox
from .reconcile import apply_remote_events

logger = logging.getLogger(__name__)

CURSOR_KEY = "cursor"
HISTORY_PREFIX = "history:"
CONNECTION_STATUS_KEY = "connection_status"


class SyncEngine:
    """Keeps the local cache reconciled with one user's chat server session."""

    def __init__(
        self,
        store: ChatStore,
        client: Any,
        *,
        fetch_limit: int = 1000,
        on_auth_error: Callable[[], None] | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.fetch_limit = fetch_limit
        self.on_auth_error = on_auth_error
        self._stream: Any = None

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except ProviderError as exc:
            if exc.is_auth_error:
                self.handle_auth_error(exc)
            raise

    def handle_auth_error(self, exc: Exception) -> None:
        logger.warning("sync: auth error, logging out: %s", exc)
        self.stop()
        if self.on_auth_error is not None:
            self.on_auth_error()
        raise AuthError("session expired") from exc

    # cursors

    def cursor(self) -> dict[str, Any]:
        raw = self.store.get_state(CURSOR_KEY)
        if not raw:
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}

    def _save_cursor(self, cursor: dict[str, Any] | None) -> None:
        if cursor:
            merged = {**self.cursor(), **cursor}
            self.store.set_state(CURSOR_KEY, json.dumps(merged, sort_keys=True))

    def _remember_chat_position(self, chat_id: str, last_update_ms: int | None = None) -> None:
        if self.client.provider != "mattermost":
            return
        latest = (
            last_update_ms
            or ms_from_iso(self.store.latest_server_timestamp(chat_id))
            or ms_from_iso(now_iso())
        )
        self._save_cursor({chat_id: int(latest or 0)})

    # fetch

    def init_chat(self, chat_id: str) -> dict[str, int]:
        """Load a chat's members and recent history into the cache."""

        events: list[RemoteEvent] = []
        if self.store.get_chat(chat_id) is None:
            chat = self._call(self.client.get_chat, chat_id)
            if chat is not None:
                events.append({"kind": "chat", "chat_id": chat_id, "doc": chat})
        page = self._call(self.client.fetch_messages, chat_id, limit=self.fetch_limit)
        events.extend(page.get("events") or [])
        result = apply_remote_events(self.store, events)
        if page.get("cursor"):
            self.store.set_state(f"{HISTORY_PREFIX}{chat_id}", str(page["cursor"]))
        self._remember_chat_position(chat_id, page.get("last_update_ms"))
        return result

    def sync_chats(self) -> dict[str, int]:
        chats = self._call(self.client.list_chats)
        return apply_remote_events(
            self.store, [{"kind": "chat", "chat_id": c["id"], "doc": c} for c in chats]
        )

    def global_sync(self) -> dict[str, int]:
        """Rebuild the cache from the server, keeping unsynced local intent."""

        chats = self._call(self.client.list_chats)
        self.store.clear(keep_unsynced=True)
        self.store.delete_state(CURSOR_KEY)
        self.store.delete_state(HISTORY_PREFIX)
        apply_remote_events(
            self.store, [{"kind": "chat", "chat_id": c["id"], "doc": c} for c in chats]
        )
        totals = {"chats": len(chats), "messages": 0, "failed": 0}
        for chat in chats:
            try:
                result = self.init_chat(chat["id"])
            except ProviderError as exc:
                logger.warning("sync: chat %s failed: %s", chat["id"], exc)
                totals["failed"] += 1
                continue
            totals["messages"] += result["inserted"] + result["updated"]
        if self.client.provider == "matrix":
            # Anchor the incremental stream after the full fetch.
            batch = self._call(self.client.sync, None, timeout_ms=0)
            self._save_cursor(batch.get("cursor"))
        return totals

    def catch_up(self) -> dict[str, int]:
        chat_ids = [c["id"] for c in self.store.get_chats()]
        batch = self._call(self.client.fetch_updates, chat_ids, self.cursor())
        return self.apply_batch(batch, live=True)

    def load_previous(self, chat_id: str, *, limit: int = 60) -> dict[str, int]:
        cursor = self.store.get_state(f"{HISTORY_PREFIX}{chat_id}")
        if not cursor:
            oldest = self.store.oldest_delivered(chat_id)
            if oldest is None or self.client.provider != "mattermost":
                return {"inserted": 0, "updated": 0, "skipped": 0}
            cursor = oldest["id"]
        page = self._call(self.client.fetch_previous, chat_id, cursor, limit=limit)
        result = apply_remote_events(self.store, page.get("events") or [])
        if page.get("cursor"):
            self.store.set_state(f"{HISTORY_PREFIX}{chat_id}", str(page["cursor"]))
        else:
            self.store.delete_state(f"{HISTORY_PREFIX}{chat_id}")
        return result

    # realtime

    def apply_batch(self, batch: dict[str, Any], *, live: bool = True) -> dict[str, int]:
        events: list[RemoteEvent] = []
        refreshed: list[str] = []
        for event in batch.get("events") or []:
            if event.get("kind") == "chat_refresh":
                refreshed.append(str(event.get("chat_id")))
                continue
            events.append({**event, "live": live})
        events = self._with_missing_targets(events)
        result = apply_remote_events(self.store, events)
        self._save_cursor(batch.get("cursor"))
        for chat_id in batch.get("invites") or []:
            try:
                self._call(self.client.join_chat, chat_id)
            except ProviderError as exc:
                logger.warning("sync: auto-join %s failed: %s", chat_id, exc)
                continue
            refreshed.append(chat_id)
        for chat_id in refreshed:
            try:
                sub = self.init_chat(chat_id)
            except ProviderError as exc:
                logger.warning("sync: refresh of %s failed: %s", chat_id, exc)
                continue
            result["inserted"] += sub["inserted"]
            result["updated"] += sub["updated"]
        if live:
            self._advance_positions(events)
        return result

    def _with_missing_targets(self, events: list[RemoteEvent]) -> list[RemoteEvent]:
        fetched: set[str] = set()
        result: list[RemoteEvent] = []
        for event in events:
            if event.get("kind") in ("reaction_added", "seen"):
                message_id = str(event.get("message_id") or "")
                if (
                    message_id
                    and message_id not in fetched
                    and self.store.find_message(message_id) is None
                    and not any(e.get("message_id") == message_id for e in result)
                ):
                    fetched.add(message_id)
                    try:
                        result.extend(
                            self._call(
                                self.client.fetch_message,
                                str(event.get("chat_id") or ""),
                                message_id,
                            )
                        )
                    except ProviderError as exc:
                        logger.debug("sync: fetch of %s failed: %s", message_id, exc)
            result.append(event)
        return result

    def _advance_positions(self, events: list[RemoteEvent]) -> None:
        if self.client.provider != "mattermost":
            return
        chats = {str(e.get("chat_id")) for e in events if e.get("kind") == "message"}
        cursor = self.cursor()
        updates: dict[str, Any] = {}
        for chat_id in chats:
            latest = ms_from_iso(self.store.latest_server_timestamp(chat_id))
            if latest and latest > int(cursor.get(chat_id) or 0):
                updates[chat_id] = latest
        self._save_cursor(updates)

    def set_connection_status(self, status: str) -> None:
        self.store.set_state(CONNECTION_STATUS_KEY, status)

    def connection_status(self) -> str:
        return self.store.get_state(CONNECTION_STATUS_KEY) or "offline"

    def start(
        self,
        on_batch: Callable[[dict[str, Any]], None],
        *,
        on_status: Callable[[str], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> Any:
        """Open the realtime stream; callbacks run on the stream's thread."""

        self.stop()
        self._stream = self.client.open_stream(
            on_batch, on_status=on_status, on_error=on_error, cursor=self.cursor()
        )
        self._stream.start()
        return self._stream

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()

    # outbound

    def flush(self) -> dict[str, int]:
        try:
            return outbox.flush(self.store, self.client)
        except ProviderError as exc:
            if exc.is_auth_error:
                self.handle_auth_error(exc)
            raise
