from __future__ import annotations

import json
from typing import Any

from ..store.types import STATUS_DELIVERED, ChatDoc, MessageDoc, RemoteEvent
from ..store.utils import iso_from_ms

# Reason set on redactions of edit events, so history fetches can drop them.
REVISION_REDACTION_REASON = "chatbridge: edit revision removed"


def _json_field(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def profile_name(profile: dict[str, Any] | None, fallback: str) -> str:
    if not profile:
        return fallback
    for key in ("username", "displayname", "nickname"):
        value = profile.get(key)
        if isinstance(value, str) and value:
            return value
    return fallback


# Mattermost


def map_post(
    post: dict[str, Any],
    profiles: dict[str, dict[str, Any]] | None = None,
    own_user_id: str | None = None,
) -> MessageDoc:
    profiles = profiles or {}
    metadata = post.get("metadata") or {}
    user_id = str(post.get("user_id") or "")
    is_deleted = bool(post.get("delete_at"))
    edit_at = post.get("edit_at") or 0
    doc: MessageDoc = {
        "id": str(post["id"]),
        "type": "message",
        "chat_id": str(post.get("channel_id") or ""),
        "content": "" if is_deleted else str(post.get("message") or ""),
        "sender_id": user_id,
        "sender_name": profile_name(profiles.get(user_id), user_id),
        "timestamp": iso_from_ms(post.get("create_at")) or "",
        "reply_to": post.get("root_id") or None,
        "reactions": [
            {"emoji": r.get("emoji_name", ""), "user_id": r.get("user_id", ""), "event_id": None}
            for r in metadata.get("reactions") or []
        ],
        "seen_by": [
            str(a.get("user_id"))
            for a in metadata.get("acknowledgements") or []
            if a.get("user_id")
        ],
        "status": STATUS_DELIVERED,
        "is_edited": bool(edit_at),
        "is_deleted": is_deleted,
        "temp_id": post.get("pending_post_id") or None,
        "current_event_id": str(post["id"]),
        "edited_at": iso_from_ms(edit_at) if edit_at else None,
    }
    return doc


def direct_chat_name(
    channel: dict[str, Any],
    profiles: dict[str, dict[str, Any]],
    own_user_id: str | None,
) -> str | None:
    name = str(channel.get("name") or "")
    if channel.get("type") != "D" or "__" not in name:
        return None
    ids = [part for part in name.split("__") if part]
    others = [uid for uid in ids if uid != own_user_id] or ids
    if not others:
        return None
    return profile_name(profiles.get(others[0]), others[0])


def map_channel(
    channel: dict[str, Any],
    team_id: str | None = None,
    *,
    profiles: dict[str, dict[str, Any]] | None = None,
    own_user_id: str | None = None,
) -> ChatDoc:
    name = channel.get("display_name") or None
    if channel.get("type") == "D":
        name = direct_chat_name(channel, profiles or {}, own_user_id) or name
    doc: ChatDoc = {
        "id": str(channel["id"]),
        "type": "chat",
        "name": str(name or channel.get("name") or channel["id"]),
        "avatar": None,
        "is_group": channel.get("type") != "D",
        "team_id": channel.get("team_id") or team_id,
    }
    return doc


def map_ws_event(
    msg: dict[str, Any],
    profiles: dict[str, dict[str, Any]] | None = None,
    own_user_id: str | None = None,
) -> list[RemoteEvent]:
    event = msg.get("event")
    if not event:
        return []
    data = msg.get("data") or {}
    broadcast = msg.get("broadcast") or {}
    chat_id = str(broadcast.get("channel_id") or data.get("channel_id") or "")

    if event in ("posted", "post_edited"):
        post = _json_field(data.get("post"))
        if not post.get("id"):
            return []
        doc = map_post(post, profiles, own_user_id)
        return [
            {
                "kind": "message",
                "chat_id": doc["chat_id"],
                "message_id": doc["id"],
                "doc": dict(doc),
                "temp_id": doc.get("temp_id"),
                "is_own": doc["sender_id"] == own_user_id,
            }
        ]
    if event == "post_deleted":
        post = _json_field(data.get("post"))
        if not post.get("id"):
            return []
        return [
            {
                "kind": "delete",
                "chat_id": str(post.get("channel_id") or chat_id),
                "message_id": str(post["id"]),
                "timestamp": iso_from_ms(post.get("delete_at") or post.get("update_at")),
            }
        ]
    if event in ("reaction_added", "reaction_removed"):
        reaction = _json_field(data.get("reaction"))
        if not reaction.get("post_id"):
            return []
        return [
            {
                "kind": event,
                "chat_id": chat_id,
                "message_id": str(reaction["post_id"]),
                "emoji": str(reaction.get("emoji_name") or ""),
                "user_id": str(reaction.get("user_id") or ""),
            }
        ]
    if event in ("post_acknowledgement_added", "post_acknowledgement_removed"):
        ack = _json_field(data.get("acknowledgement"))
        if not ack.get("post_id"):
            return []
        return [
            {
                "kind": "seen" if event.endswith("added") else "unseen",
                "chat_id": chat_id,
                "message_id": str(ack["post_id"]),
                "user_id": str(ack.get("user_id") or ""),
            }
        ]
    if event == "channel_updated":
        channel = _json_field(data.get("channel"))
        if not channel.get("id"):
            return []
        doc = map_channel(channel, profiles=profiles, own_user_id=own_user_id)
        return [{"kind": "chat", "chat_id": doc["id"], "doc": dict(doc)}]
    if event in ("channel_created", "direct_added", "group_added"):
        if not chat_id:
            return []
        return [{"kind": "chat_refresh", "chat_id": chat_id}]
    return []


# Matrix


def _strip_reply_fallback(body: str) -> str:
    lines = body.split("\n")
    if not lines or not lines[0].startswith("> "):
        return body
    idx = 0
    while idx < len(lines) and lines[idx].startswith(">"):
        idx += 1
    if idx < len(lines) and lines[idx] == "":
        idx += 1
    return "\n".join(lines[idx:])


def map_room_event(
    event: dict[str, Any],
    room_id: str,
    members: dict[str, str] | None = None,
    own_user_id: str | None = None,
) -> list[RemoteEvent]:
    members = members or {}
    event_type = event.get("type")
    event_id = event.get("event_id")
    sender = str(event.get("sender") or "")
    content = event.get("content") or {}
    unsigned = event.get("unsigned") or {}
    timestamp = iso_from_ms(event.get("origin_server_ts"))
    relates_to = content.get("m.relates_to") or {}

    if event_type == "m.room.message" and event_id:
        if relates_to.get("rel_type") == "m.replace" and relates_to.get("event_id"):
            new_content = content.get("m.new_content") or {}
            return [
                {
                    "kind": "edit",
                    "chat_id": room_id,
                    "message_id": str(relates_to["event_id"]),
                    "event_id": str(event_id),
                    "content": str(new_content.get("body") or ""),
                    "user_id": sender,
                    "timestamp": timestamp,
                }
            ]
        redacted = "redacted_because" in unsigned
        if redacted:
            because = (unsigned.get("redacted_because") or {}).get("content") or {}
            if because.get("reason") == REVISION_REDACTION_REASON:
                return []
        in_reply_to = relates_to.get("m.in_reply_to") or {}
        body = str(content.get("body") or "")
        doc: MessageDoc = {
            "id": str(event_id),
            "type": "message",
            "chat_id": room_id,
            "content": "" if redacted else _strip_reply_fallback(body),
            "sender_id": sender,
            "sender_name": members.get(sender) or sender,
            "timestamp": timestamp or "",
            "reply_to": in_reply_to.get("event_id") or None,
            "status": STATUS_DELIVERED,
            "is_edited": False,
            "is_deleted": redacted,
            "temp_id": unsigned.get("transaction_id") or None,
            "current_event_id": str(event_id),
        }
        return [
            {
                "kind": "message",
                "chat_id": room_id,
                "message_id": doc["id"],
                "doc": dict(doc),
                "temp_id": doc.get("temp_id"),
                "is_own": sender == own_user_id,
            }
        ]
    if event_type == "m.reaction" and event_id:
        if relates_to.get("rel_type") != "m.annotation" or not relates_to.get("event_id"):
            return []
        if "redacted_because" in unsigned:
            return []
        return [
            {
                "kind": "reaction_added",
                "chat_id": room_id,
                "message_id": str(relates_to["event_id"]),
                "event_id": str(event_id),
                "emoji": str(relates_to.get("key") or ""),
                "user_id": sender,
            }
        ]
    if event_type == "m.room.redaction":
        target = event.get("redacts") or content.get("redacts")
        if not target:
            return []
        return [
            {
                "kind": "delete",
                "chat_id": room_id,
                "message_id": str(target),
                "event_id": str(event_id) if event_id else None,
                "timestamp": timestamp,
            }
        ]
    return []


def map_receipts(event: dict[str, Any], room_id: str) -> list[RemoteEvent]:
    if event.get("type") != "m.receipt":
        return []
    events: list[RemoteEvent] = []
    for target_id, receipts in (event.get("content") or {}).items():
        for receipt_type in ("m.read", "m.read.private"):
            for user_id in (receipts or {}).get(receipt_type) or {}:
                events.append(
                    {
                        "kind": "seen",
                        "chat_id": room_id,
                        "message_id": str(target_id),
                        "user_id": str(user_id),
                    }
                )
    return events


def _apply_member_state(members: dict[str, str], state_event: dict[str, Any]) -> None:
    if state_event.get("type") != "m.room.member":
        return
    user_id = state_event.get("state_key")
    if not user_id:
        return
    content = state_event.get("content") or {}
    if content.get("membership") == "join":
        members[str(user_id)] = str(content.get("displayname") or user_id)
    else:
        members.pop(str(user_id), None)


def map_sync_response(
    payload: dict[str, Any],
    own_user_id: str | None = None,
    *,
    members_cache: dict[str, dict[str, str]] | None = None,
    room_names: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Flatten a Matrix /sync response into remote events.

    ``members_cache`` and ``room_names`` carry room state between incremental
    syncs; both are updated in place.
    """

    members_cache = members_cache if members_cache is not None else {}
    room_names = room_names if room_names is not None else {}
    events: list[RemoteEvent] = []
    rooms = payload.get("rooms") or {}
    for room_id, room in (rooms.get("join") or {}).items():
        members = members_cache.setdefault(room_id, {})
        timeline = (room.get("timeline") or {}).get("events") or []
        state_events = list((room.get("state") or {}).get("events") or [])
        state_events.extend(e for e in timeline if "state_key" in e)
        for state_event in state_events:
            _apply_member_state(members, state_event)
            if state_event.get("type") == "m.room.name":
                name = (state_event.get("content") or {}).get("name")
                if name:
                    room_names[room_id] = str(name)
        summary = room.get("summary") or {}
        joined = summary.get("m.joined_member_count") or len(members)
        chat: ChatDoc = {
            "id": room_id,
            "type": "chat",
            "name": room_names.get(room_id) or _dm_name(members, own_user_id) or room_id,
            "avatar": None,
            "is_group": int(joined) > 2,
        }
        unread = room.get("unread_notifications") or {}
        if "notification_count" in unread:
            chat["unread_count"] = int(unread.get("notification_count") or 0)
        events.append({"kind": "chat", "chat_id": room_id, "doc": dict(chat)})
        for event in timeline:
            events.extend(map_room_event(event, room_id, members, own_user_id))
        for event in (room.get("ephemeral") or {}).get("events") or []:
            events.extend(map_receipts(event, room_id))
    return {
        "next_batch": payload.get("next_batch"),
        "events": events,
        "invites": list((rooms.get("invite") or {}).keys()),
        "left": list((rooms.get("leave") or {}).keys()),
    }


def _dm_name(members: dict[str, str], own_user_id: str | None) -> str | None:
    others = [name for uid, name in members.items() if uid != own_user_id]
    if len(others) == 1:
        return others[0]
    return None
