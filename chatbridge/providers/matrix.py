from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
import threading
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import quote
from uuid import uuid4

from ..accounts import ChatCredentials
from ..errors import ProviderError
from ..realtime import MatrixSyncPoller
from ..store.types import STATUS_DELIVERED, RemoteEvent
from ..store.utils import now_iso
from ..sync.mapping import REVISION_REDACTION_REASON, map_room_event, map_sync_response
from .base import RestApi
from .http_client import HttpResponse

logger = logging.getLogger(__name__)

PROVIDER = "matrix"
CLIENT_API = "/_matrix/client/v3"
ADMIN_REGISTER = "/_synapse/admin/v1/register"
SYNC_FILTER = json.dumps({"room": {"timeline": {"limit": 50}}})


def to_matrix_username(email: str, user_id: int | str) -> str:
    base = re.sub(r"[^a-z0-9_+\-./=]", "_", email.split("@")[0].lower())
    return f"{base}_{user_id}"


def registration_mac(shared_secret: str, nonce: str, username: str, password: str) -> str:
    message = f"{nonce}\0{username}\0{password}\0notadmin".encode()
    return hmac.new(shared_secret.encode(), message, hashlib.sha1).hexdigest()


def _room(room_id: str) -> str:
    return quote(room_id, safe="")


class MatrixAdmin(RestApi):
    """Registers Matrix accounts through shared-secret registration."""

    provider = PROVIDER
    reuses_tokens = True

    def __init__(
        self,
        server_url: str,
        shared_secret: str | None,
        *,
        device_id: str = "workplace_app",
        device_name: str = "Workplace App",
        timeout_s: float = 10.0,
    ):
        super().__init__(server_url, timeout_s=timeout_s)
        self.shared_secret = shared_secret or ""
        self.device_id = device_id
        self.device_name = device_name

    def _credentials(self, payload: dict[str, Any] | None) -> ChatCredentials:
        payload = payload or {}
        return ChatCredentials(
            provider=PROVIDER,
            user_id=str(payload.get("user_id") or ""),
            access_token=str(payload.get("access_token") or ""),
            device_id=payload.get("device_id"),
            server_url=self.server_url,
        )

    def register_user(
        self, username: str, password: str, display_name: str | None = None
    ) -> ChatCredentials:
        nonce = (self.request("GET", ADMIN_REGISTER).payload or {}).get("nonce")
        if not nonce:
            raise ProviderError("Failed to get registration nonce", status=500)
        payload = self.request(
            "POST",
            ADMIN_REGISTER,
            body={
                "nonce": nonce,
                "username": username,
                "password": password,
                "mac": registration_mac(self.shared_secret, nonce, username, password),
                "admin": False,
                "displayname": display_name or username,
            },
        ).payload
        return self._credentials(payload)

    def login_user(self, username: str, password: str) -> ChatCredentials:
        payload = self.request(
            "POST",
            f"{CLIENT_API}/login",
            body={
                "type": "m.login.password",
                "identifier": {"type": "m.id.user", "user": username},
                "user": username,
                "password": password,
                "device_id": self.device_id,
                "initial_device_display_name": self.device_name,
            },
        ).payload
        return self._credentials(payload)

    def update_user_profile(
        self, user_id: str, *, name: str | None = None, email: str | None = None
    ) -> None:
        # Display names are owned by the user's own session on Matrix.
        return None

    def update_user_password(self, user_id: str, new_password: str) -> None:
        return None

    def create_or_login(
        self, *, user_id: int, email: str, password: str, display_name: str | None = None
    ) -> ChatCredentials:
        username = to_matrix_username(email, user_id)
        try:
            return self.register_user(
                username, password, display_name or email.split("@")[0]
            )
        except ProviderError as exc:
            if exc.errcode != "M_USER_IN_USE" and "M_USER_IN_USE" not in exc.message:
                raise
        return self.login_user(username, password)


class MatrixClient(RestApi):
    """Per-user Matrix client-server API client normalised to remote events."""

    provider = PROVIDER

    def __init__(
        self,
        creds: ChatCredentials,
        *,
        timeout_s: float = 10.0,
        request_interval_ms: int = 100,
        sync_timeout_ms: int = 30000,
        reconnect_delay_s: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(creds.server_url, token=creds.access_token, timeout_s=timeout_s)
        self.user_id = creds.user_id
        self.device_id = creds.device_id
        self.request_interval_s = max(0, request_interval_ms) / 1000.0
        self.sync_timeout_ms = sync_timeout_ms
        self.reconnect_delay_s = reconnect_delay_s
        self._sleep = sleep
        self._throttle_lock = threading.Lock()
        self._last_request = 0.0
        self.members: dict[str, dict[str, str]] = {}
        self.room_names: dict[str, str] = {}

    def request(self, method: str, path: str, **kwargs: Any) -> HttpResponse:
        with self._throttle_lock:
            wait = self.request_interval_s - (time.monotonic() - self._last_request)
            if wait > 0:
                self._sleep(wait)
            self._last_request = time.monotonic()
        try:
            return super().request(method, path, **kwargs)
        except ProviderError as exc:
            if not exc.is_rate_limited:
                raise
            delay_ms = exc.retry_after_ms or 1000
            logger.info("matrix: rate limited, retrying in %sms", delay_ms)
            self._sleep(delay_ms / 1000.0)
            return super().request(method, path, **kwargs)

    def check_connection(self) -> dict[str, Any]:
        return self.request("GET", f"{CLIENT_API}/account/whoami").payload or {}

    # rooms

    def load_members(self, room_id: str) -> dict[str, str]:
        joined = (
            self.request("GET", f"{CLIENT_API}/rooms/{_room(room_id)}/joined_members").payload
            or {}
        ).get("joined") or {}
        members = {
            str(uid): str((info or {}).get("display_name") or uid) for uid, info in joined.items()
        }
        self.members[room_id] = members
        return members

    def get_chat(self, chat_id: str) -> dict[str, Any] | None:
        try:
            members = self.load_members(chat_id)
        except ProviderError as exc:
            if exc.status in (403, 404):
                return None
            raise
        resp = self.request(
            "GET", f"{CLIENT_API}/rooms/{_room(chat_id)}/state/m.room.name", allow_404=True
        )
        name = (resp.payload or {}).get("name") if resp.status != 404 else None
        if name:
            self.room_names[chat_id] = str(name)
        others = [n for uid, n in members.items() if uid != self.user_id]
        return {
            "id": chat_id,
            "type": "chat",
            "name": name or (others[0] if len(others) == 1 else chat_id),
            "avatar": None,
            "is_group": len(members) > 2,
        }

    def list_chats(self) -> list[dict[str, Any]]:
        room_ids = (self.request("GET", f"{CLIENT_API}/joined_rooms").payload or {}).get(
            "joined_rooms"
        ) or []
        chats = []
        for room_id in room_ids:
            chat = self.get_chat(str(room_id))
            if chat is not None:
                chats.append(chat)
        return chats

    def create_direct_chat(self, user_id: str) -> dict[str, Any]:
        room_id = (
            self.request(
                "POST",
                f"{CLIENT_API}/createRoom",
                body={"preset": "trusted_private_chat", "is_direct": True, "invite": [user_id]},
            ).payload
            or {}
        ).get("room_id")
        return self.get_chat(str(room_id)) or {"id": room_id, "type": "chat", "name": user_id}

    def create_group_chat(self, user_ids: list[str], name: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"preset": "private_chat", "invite": list(user_ids)}
        if name:
            body["name"] = name
        room_id = (self.request("POST", f"{CLIENT_API}/createRoom", body=body).payload or {}).get(
            "room_id"
        )
        return self.get_chat(str(room_id)) or {"id": room_id, "type": "chat", "name": name}

    def create_channel(self, name: str, *, private: bool, members: list[str]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": name,
            "preset": "private_chat" if private else "public_chat",
            "invite": [m for m in members if m != self.user_id],
        }
        room_id = (self.request("POST", f"{CLIENT_API}/createRoom", body=body).payload or {}).get(
            "room_id"
        )
        return self.get_chat(str(room_id)) or {"id": room_id, "type": "chat", "name": name}

    def join_chat(self, chat_id: str) -> None:
        self.request("POST", f"{CLIENT_API}/join/{_room(chat_id)}", body={})

    def search_users(self, term: str) -> list[dict[str, Any]]:
        payload = self.request(
            "POST", f"{CLIENT_API}/user_directory/search", body={"search_term": term, "limit": 20}
        ).payload
        return list((payload or {}).get("results") or [])

    # timeline

    def _room_events(self, room_id: str, raw_events: list[dict[str, Any]]) -> list[RemoteEvent]:
        members = self.members.get(room_id) or {}
        events: list[RemoteEvent] = []
        for raw in raw_events:
            events.extend(map_room_event(raw, room_id, members, self.user_id))
        return events

    def _page(self, room_id: str, start: str | None, limit: int) -> dict[str, Any]:
        query: dict[str, Any] = {"dir": "b", "limit": max(1, min(limit, 100))}
        if start:
            query["from"] = start
        path = f"{CLIENT_API}/rooms/{_room(room_id)}/messages"
        return self.request("GET", path, query=query).payload or {}

    def fetch_messages(self, chat_id: str, *, limit: int = 1000) -> dict[str, Any]:
        if chat_id not in self.members:
            self.load_members(chat_id)
        raw: list[dict[str, Any]] = []
        token: str | None = None
        while len(raw) < limit:
            page = self._page(chat_id, token, limit - len(raw))
            chunk = list(page.get("chunk") or [])
            raw.extend(chunk)
            token = page.get("end")
            if not chunk or not token:
                token = None
                break
        raw.reverse()
        return {"events": self._room_events(chat_id, raw), "cursor": token}

    def fetch_previous(self, chat_id: str, cursor: str, *, limit: int = 60) -> dict[str, Any]:
        page = self._page(chat_id, cursor, limit)
        chunk = list(page.get("chunk") or [])
        chunk.reverse()
        return {
            "events": self._room_events(chat_id, chunk),
            "cursor": page.get("end") if chunk else None,
        }

    def sync(self, since: str | None, *, timeout_ms: int = 0) -> dict[str, Any]:
        query: dict[str, Any] = {"timeout": timeout_ms, "filter": SYNC_FILTER}
        if since:
            query["since"] = since
        payload = (
            self.request(
                "GET",
                f"{CLIENT_API}/sync",
                query=query,
                timeout_s=self.timeout_s + timeout_ms / 1000.0,
            ).payload
            or {}
        )
        batch = map_sync_response(
            payload, self.user_id, members_cache=self.members, room_names=self.room_names
        )
        return {
            "events": batch["events"],
            "cursor": {"since": batch["next_batch"] or since},
            "invites": batch["invites"],
        }

    def fetch_updates(self, chat_ids: list[str], cursor: dict[str, Any]) -> dict[str, Any]:
        return self.sync(cursor.get("since"), timeout_ms=0)

    def fetch_message(self, chat_id: str, message_id: str) -> list[RemoteEvent]:
        resp = self.request(
            "GET",
            f"{CLIENT_API}/rooms/{_room(chat_id)}/event/{quote(message_id, safe='')}",
            allow_404=True,
        )
        if resp.status == 404 or not resp.payload:
            return []
        return self._room_events(chat_id, [resp.payload])

    # sending

    def _send_event(
        self, room_id: str, event_type: str, content: dict[str, Any], txn_id: str
    ) -> str:
        payload = self.request(
            "PUT",
            f"{CLIENT_API}/rooms/{_room(room_id)}/send/{event_type}/{quote(txn_id, safe='')}",
            body=content,
        ).payload
        event_id = (payload or {}).get("event_id")
        if not event_id:
            raise ProviderError("Matrix send returned no event id", status=500)
        return str(event_id)

    def send_message(
        self, chat_id: str, content: str, *, reply_to: str | None = None, temp_id: str
    ) -> dict[str, Any]:
        if not content.strip():
            raise ValueError("Cannot send empty message")
        body: dict[str, Any] = {"msgtype": "m.text", "body": content}
        if reply_to:
            body["m.relates_to"] = {"m.in_reply_to": {"event_id": reply_to}}
        event_id = self._send_event(chat_id, "m.room.message", body, temp_id)
        members = self.members.get(chat_id) or {}
        return {
            "id": event_id,
            "type": "message",
            "chat_id": chat_id,
            "content": content,
            "sender_id": self.user_id,
            "sender_name": members.get(self.user_id) or self.user_id,
            "timestamp": now_iso(),
            "reply_to": reply_to,
            "status": STATUS_DELIVERED,
            "is_edited": False,
            "is_deleted": False,
            "temp_id": temp_id,
            "current_event_id": event_id,
        }

    def edit_message(
        self, chat_id: str, message_id: str, content: str, *, reply_to: str | None = None
    ) -> str:
        relates_to: dict[str, Any] = {"rel_type": "m.replace", "event_id": message_id}
        if reply_to:
            relates_to["m.in_reply_to"] = {"event_id": reply_to}
        body = {
            "msgtype": "m.text",
            "body": f"* {content}",
            "m.new_content": {"msgtype": "m.text", "body": content},
            "m.relates_to": relates_to,
        }
        return self._send_event(chat_id, "m.room.message", body, f"edit-{uuid4()}")

    def redact(self, chat_id: str, event_id: str, reason: str | None = None) -> None:
        body = {"reason": reason} if reason else {}
        self.request(
            "PUT",
            f"{CLIENT_API}/rooms/{_room(chat_id)}/redact/{quote(event_id, safe='')}/{uuid4()}",
            body=body,
        )

    def delete_message(self, chat_id: str, message_id: str, *, revisions: list[str]) -> None:
        self.redact(chat_id, message_id)
        for event_id in revisions:
            if event_id != message_id:
                self.redact(chat_id, event_id, REVISION_REDACTION_REASON)

    def add_reaction(self, chat_id: str, message_id: str, emoji: str) -> str | None:
        body = {"m.relates_to": {"rel_type": "m.annotation", "event_id": message_id, "key": emoji}}
        return self._send_event(chat_id, "m.reaction", body, f"react-{uuid4()}")

    def remove_reaction(
        self, chat_id: str, message_id: str, emoji: str, *, event_id: str | None = None
    ) -> None:
        if not event_id:
            raise ProviderError("Reaction event id unknown; sync before removing", status=409)
        self.redact(chat_id, event_id)

    def mark_seen(self, chat_id: str, message_id: str) -> None:
        self.request(
            "POST",
            f"{CLIENT_API}/rooms/{_room(chat_id)}/receipt/m.read/{quote(message_id, safe='')}",
            body={},
        )

    def open_stream(
        self,
        on_batch: Any,
        *,
        on_status: Any = None,
        on_error: Any = None,
        cursor: Any = None,
    ) -> MatrixSyncPoller:
        return MatrixSyncPoller(
            self,
            on_batch,
            since=(cursor or {}).get("since"),
            on_status=on_status,
            on_error=on_error,
            timeout_ms=self.sync_timeout_ms,
            reconnect_delay_s=self.reconnect_delay_s,
        )
