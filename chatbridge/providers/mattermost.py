from __future__ import annotations

import logging
import re
import time
from typing import Any
from urllib.parse import quote

from ..accounts import ChatCredentials
from ..errors import ProviderError
from ..realtime import MattermostSocket
from ..store.types import RemoteEvent
from ..store.utils import iso_from_ms
from ..sync.mapping import map_channel, map_post, map_ws_event
from .base import RestApi

logger = logging.getLogger(__name__)

PROVIDER = "mattermost"
API = "/api/v4"
MAX_PER_PAGE = 200


def mattermost_username(email: str, user_id: int | str) -> str:
    local = email.split("@")[0].lower()
    local = re.sub(r"[^a-z0-9._-]", "_", local)
    if not local or not local[0].isalpha():
        local = f"u{local}"
    return f"{local}_{user_id}"[:64]


class MattermostAdmin(RestApi):
    """Provisions Mattermost accounts with the admin token."""

    provider = PROVIDER
    reuses_tokens = False

    def __init__(
        self,
        server_url: str,
        admin_token: str | None,
        *,
        default_team: str | None = None,
        timeout_s: float = 10.0,
    ):
        super().__init__(server_url, token=admin_token, timeout_s=timeout_s)
        self.default_team = default_team

    def create_user(
        self, *, email: str, username: str, password: str, display_name: str | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"email": email, "username": username, "password": password}
        if display_name:
            body["first_name"] = display_name
        user = self.request("POST", f"{API}/users", body=body).payload or {}
        if self.default_team and user.get("id"):
            self.add_to_team(str(user["id"]), self.default_team)
        return user

    def add_to_team(self, user_id: str, team_id: str) -> None:
        self.request(
            "POST",
            f"{API}/teams/{team_id}/members",
            body={"team_id": team_id, "user_id": user_id},
        )

    def login_user(self, login_id: str, password: str) -> ChatCredentials:
        resp = self.request(
            "POST",
            f"{API}/users/login",
            body={"login_id": login_id, "password": password},
            token="",
        )
        user = resp.payload or {}
        token = resp.header("Token")
        if not token or not user.get("id"):
            raise ProviderError("Mattermost login returned no session token", status=resp.status)
        return ChatCredentials(
            provider=PROVIDER,
            user_id=str(user["id"]),
            access_token=token,
            server_url=self.server_url,
        )

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        resp = self.request("GET", f"{API}/users/email/{quote(email)}", allow_404=True)
        if resp.status == 404:
            return None
        return resp.payload

    def update_user_password(self, user_id: str, new_password: str) -> None:
        self.request(
            "PUT", f"{API}/users/{user_id}/password", body={"new_password": new_password}
        )

    def update_user_profile(
        self, user_id: str, *, name: str | None = None, email: str | None = None
    ) -> None:
        patch: dict[str, Any] = {}
        if name is not None:
            patch["first_name"] = name
        if email is not None:
            patch["email"] = email
        if not patch:
            return
        self.request("PUT", f"{API}/users/{user_id}/patch", body=patch)

    def create_or_login(
        self, *, user_id: int, email: str, password: str, display_name: str | None = None
    ) -> ChatCredentials:
        existing = self.get_user_by_email(email)
        if existing is None:
            self.create_user(
                email=email,
                username=mattermost_username(email, user_id),
                password=password,
                display_name=display_name,
            )
            return self.login_user(email, password)
        try:
            return self.login_user(email, password)
        except ProviderError as exc:
            if exc.status != 401:
                raise
        # The local password is authoritative for bridged accounts.
        self.update_user_password(str(existing["id"]), password)
        return self.login_user(email, password)


class MattermostClient(RestApi):
    """Per-user Mattermost REST client normalised to remote events."""

    provider = PROVIDER

    def __init__(
        self,
        creds: ChatCredentials,
        *,
        default_team: str | None = None,
        timeout_s: float = 10.0,
        reconnect_delay_s: float = 3.0,
    ):
        super().__init__(creds.server_url, token=creds.access_token, timeout_s=timeout_s)
        self.user_id = creds.user_id
        self.default_team = default_team
        self.reconnect_delay_s = reconnect_delay_s
        self.profiles: dict[str, dict[str, Any]] = {}

    # profiles

    def check_connection(self) -> dict[str, Any]:
        me = self.request("GET", f"{API}/users/me").payload or {}
        if me.get("id"):
            self.profiles[str(me["id"])] = me
        return me

    def load_channel_profiles(self, chat_id: str) -> None:
        profiles = self.request(
            "GET", f"{API}/users", query={"in_channel": chat_id, "per_page": MAX_PER_PAGE}
        ).payload
        for profile in profiles or []:
            if profile.get("id"):
                self.profiles[str(profile["id"])] = profile

    def ensure_profiles(self, user_ids: list[str]) -> None:
        missing = sorted({uid for uid in user_ids if uid and uid not in self.profiles})
        if not missing:
            return
        profiles = self.request("POST", f"{API}/users/ids", body=missing).payload
        for profile in profiles or []:
            if profile.get("id"):
                self.profiles[str(profile["id"])] = profile

    def search_users(self, term: str) -> list[dict[str, Any]]:
        return list(self.request("POST", f"{API}/users/search", body={"term": term}).payload or [])

    # chats

    def list_teams(self) -> list[dict[str, Any]]:
        return list(self.request("GET", f"{API}/users/me/teams").payload or [])

    def _map_channels(
        self, channels: list[dict[str, Any]], team_id: str | None
    ) -> list[dict[str, Any]]:
        dm_members = [
            part
            for channel in channels
            if channel.get("type") == "D"
            for part in str(channel.get("name") or "").split("__")
        ]
        self.ensure_profiles(dm_members)
        return [
            dict(map_channel(c, team_id, profiles=self.profiles, own_user_id=self.user_id))
            for c in channels
        ]

    def list_chats(self) -> list[dict[str, Any]]:
        chats: dict[str, dict[str, Any]] = {}
        for team in self.list_teams():
            team_id = str(team["id"])
            channels = self.request("GET", f"{API}/users/me/teams/{team_id}/channels").payload
            for chat in self._map_channels(list(channels or []), team_id):
                # DMs and group messages are listed under every team.
                chats.setdefault(chat["id"], chat)
        return list(chats.values())

    def get_chat(self, chat_id: str) -> dict[str, Any] | None:
        resp = self.request("GET", f"{API}/channels/{chat_id}", allow_404=True)
        if resp.status == 404 or not resp.payload:
            return None
        return self._map_channels([resp.payload], None)[0]

    def _team_id(self) -> str:
        if self.default_team:
            return self.default_team
        teams = self.list_teams()
        if not teams:
            raise ProviderError("User is not a member of any team", status=400)
        return str(teams[0]["id"])

    def create_direct_chat(self, user_id: str) -> dict[str, Any]:
        channel = self.request(
            "POST", f"{API}/channels/direct", body=[self.user_id, user_id]
        ).payload
        return self._map_channels([channel], None)[0]

    def create_group_chat(self, user_ids: list[str], name: str | None = None) -> dict[str, Any]:
        members = sorted({self.user_id, *user_ids})
        channel = self.request("POST", f"{API}/channels/group", body=members).payload
        chat = self._map_channels([channel], None)[0]
        if name:
            chat["name"] = name
        return chat

    def create_channel(self, name: str, *, private: bool, members: list[str]) -> dict[str, Any]:
        team_id = self._team_id()
        slug = re.sub(r"[^a-z0-9-]+", "-", name.lower()).strip("-") or f"channel-{int(time.time())}"
        channel = self.request(
            "POST",
            f"{API}/channels",
            body={
                "team_id": team_id,
                "name": slug,
                "display_name": name,
                "type": "P" if private else "O",
            },
        ).payload
        for member in members:
            if member and member != self.user_id:
                self.request(
                    "POST",
                    f"{API}/channels/{channel['id']}/members",
                    body={"user_id": member},
                )
        return self._map_channels([channel], team_id)[0]

    def join_chat(self, chat_id: str) -> None:
        self.request("POST", f"{API}/channels/{chat_id}/members", body={"user_id": self.user_id})

    # posts

    def _ordered_posts(self, payload: dict[str, Any] | None) -> list[dict[str, Any]]:
        posts = list(((payload or {}).get("posts") or {}).values())
        posts.sort(key=lambda p: p.get("create_at") or 0)
        return posts

    def _post_events(self, posts: list[dict[str, Any]]) -> list[RemoteEvent]:
        self.ensure_profiles([str(p.get("user_id") or "") for p in posts])
        events: list[RemoteEvent] = []
        for post in posts:
            if post.get("delete_at"):
                events.append(
                    {
                        "kind": "delete",
                        "chat_id": str(post.get("channel_id") or ""),
                        "message_id": str(post["id"]),
                        "timestamp": iso_from_ms(post.get("delete_at")),
                    }
                )
                continue
            doc = map_post(post, self.profiles, self.user_id)
            events.append(
                {
                    "kind": "message",
                    "chat_id": doc["chat_id"],
                    "message_id": doc["id"],
                    "doc": dict(doc),
                    "temp_id": doc.get("temp_id"),
                    "is_own": doc["sender_id"] == self.user_id,
                }
            )
        return events

    def fetch_messages(self, chat_id: str, *, limit: int = 1000) -> dict[str, Any]:
        self.load_channel_profiles(chat_id)
        posts: list[dict[str, Any]] = []
        page = 0
        per_page = max(1, min(limit, MAX_PER_PAGE))
        while len(posts) < limit:
            payload = self.request(
                "GET",
                f"{API}/channels/{chat_id}/posts",
                query={"page": page, "per_page": per_page},
            ).payload
            batch = self._ordered_posts(payload)
            posts = batch + posts
            if len(batch) < per_page:
                break
            page += 1
        posts = posts[-limit:] if limit else posts
        return {
            "events": self._post_events(posts),
            "cursor": str(posts[0]["id"]) if posts else None,
            "last_update_ms": max((p.get("update_at") or 0 for p in posts), default=0),
        }

    def fetch_previous(self, chat_id: str, cursor: str, *, limit: int = 60) -> dict[str, Any]:
        payload = self.request(
            "GET",
            f"{API}/channels/{chat_id}/posts",
            query={"before": cursor, "per_page": max(1, min(limit, MAX_PER_PAGE))},
        ).payload
        posts = self._ordered_posts(payload)
        return {
            "events": self._post_events(posts),
            "cursor": str(posts[0]["id"]) if posts else None,
        }

    def fetch_updates(self, chat_ids: list[str], cursor: dict[str, Any]) -> dict[str, Any]:
        events: list[RemoteEvent] = []
        next_cursor = dict(cursor)
        for chat_id in chat_ids:
            since = cursor.get(chat_id)
            if not since:
                continue
            payload = self.request(
                "GET", f"{API}/channels/{chat_id}/posts", query={"since": int(since)}
            ).payload
            posts = self._ordered_posts(payload)
            events.extend(self._post_events(posts))
            latest = max((p.get("update_at") or 0 for p in posts), default=0)
            if latest:
                next_cursor[chat_id] = max(int(since), int(latest))
        return {"events": events, "cursor": next_cursor, "invites": []}

    def fetch_message(self, chat_id: str, message_id: str) -> list[RemoteEvent]:
        resp = self.request("GET", f"{API}/posts/{message_id}", allow_404=True)
        if resp.status == 404 or not resp.payload:
            return []
        return self._post_events([resp.payload])

    def send_message(
        self, chat_id: str, content: str, *, reply_to: str | None = None, temp_id: str
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "channel_id": chat_id,
            "message": content,
            "pending_post_id": temp_id,
        }
        if reply_to:
            body["root_id"] = reply_to
        post = self.request("POST", f"{API}/posts", body=body).payload or {}
        doc = dict(map_post(post, self.profiles, self.user_id))
        doc["temp_id"] = temp_id
        return doc

    def edit_message(
        self, chat_id: str, message_id: str, content: str, *, reply_to: str | None = None
    ) -> str:
        post = self.request(
            "PUT", f"{API}/posts/{message_id}/patch", body={"message": content}
        ).payload or {}
        return str(post.get("id") or message_id)

    def delete_message(self, chat_id: str, message_id: str, *, revisions: list[str]) -> None:
        self.request("DELETE", f"{API}/posts/{message_id}")

    def add_reaction(self, chat_id: str, message_id: str, emoji: str) -> str | None:
        self.request(
            "POST",
            f"{API}/reactions",
            body={"user_id": self.user_id, "post_id": message_id, "emoji_name": emoji},
        )
        return None

    def remove_reaction(
        self, chat_id: str, message_id: str, emoji: str, *, event_id: str | None = None
    ) -> None:
        self.request(
            "DELETE", f"{API}/users/{self.user_id}/posts/{message_id}/reactions/{quote(emoji)}"
        )

    def mark_seen(self, chat_id: str, message_id: str) -> None:
        self.request("POST", f"{API}/users/{self.user_id}/posts/{message_id}/ack")
        self.request("POST", f"{API}/channels/members/me/view", body={"channel_id": chat_id})

    # realtime

    def map_event(self, msg: dict[str, Any]) -> list[RemoteEvent]:
        events = map_ws_event(msg, self.profiles, self.user_id)
        missing = [
            str((e.get("doc") or {}).get("sender_id") or "")
            for e in events
            if e.get("kind") == "message"
        ]
        missing = [uid for uid in missing if uid and uid not in self.profiles]
        if not missing:
            return events
        try:
            self.ensure_profiles(missing)
        except ProviderError:
            logger.debug("ws: profile lookup failed", exc_info=True)
            return events
        return map_ws_event(msg, self.profiles, self.user_id)

    def open_stream(
        self,
        on_batch: Any,
        *,
        on_status: Any = None,
        on_error: Any = None,
        cursor: Any = None,
    ) -> MattermostSocket:
        socket = MattermostSocket(
            self.server_url,
            self.token or "",
            on_status=on_status,
            on_error=on_error,
            reconnect_delay_s=self.reconnect_delay_s,
        )

        def forward(msg: dict[str, Any]) -> None:
            events = self.map_event(msg)
            if events:
                on_batch({"events": events})

        socket.subscribe(forward)
        return socket
