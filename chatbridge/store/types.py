from __future__ import annotations

from typing import Any, Literal, TypedDict

STATUS_SENDING = "sending"
STATUS_DELIVERED = "delivered"
STATUS_FAILED = "failed"

TEMP_ID_PREFIX = "temp-"

DELETED_PLACEHOLDER = "[Message deleted]"


class Reaction(TypedDict, total=False):
    emoji: str
    user_id: str
    event_id: str | None


class PendingReaction(TypedDict, total=False):
    op: Literal["add", "remove"]
    emoji: str
    event_id: str | None


class ChatDoc(TypedDict, total=False):
    id: str
    type: Literal["chat"]
    name: str
    avatar: str | None
    is_group: bool
    team_id: str | None
    last_message: str
    last_message_time: str | None
    unread_count: int


class MessageDoc(TypedDict, total=False):
    id: str
    type: Literal["message"]
    chat_id: str
    content: str
    sender_id: str
    sender_name: str
    timestamp: str
    reply_to: str | None
    reactions: list[Reaction]
    seen_by: list[str]
    status: str
    is_edited: bool
    is_deleted: bool
    temp_id: str | None
    current_event_id: str | None
    revisions: list[str]
    edited_at: str | None
    pending_op: str | None
    pending_reactions: list[PendingReaction]
    pending_seen: bool
    error: str | None
    placeholder: bool


class RemoteEvent(TypedDict, total=False):
    kind: str
    chat_id: str
    message_id: str | None
    doc: dict[str, Any] | None
    temp_id: str | None
    event_id: str | None
    content: str | None
    emoji: str | None
    user_id: str | None
    timestamp: str | None
    is_own: bool
    live: bool


def is_temp_id(value: str | None) -> bool:
    return bool(value) and str(value).startswith(TEMP_ID_PREFIX)


def has_local_intent(doc: dict[str, Any]) -> bool:
    if doc.get("type") != "message":
        return False
    if doc.get("pending_op") or doc.get("pending_seen"):
        return True
    if doc.get("pending_reactions"):
        return True
    return doc.get("status") in (STATUS_SENDING, STATUS_FAILED)
