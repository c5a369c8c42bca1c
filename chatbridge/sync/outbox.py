from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from ..errors import InvalidMessageState, ProviderError
from ..store import ChatStore
from ..store.types import (
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_SENDING,
    TEMP_ID_PREFIX,
    is_temp_id,
)
from ..store.utils import now_iso
from .reconcile import merge_delivered, message_defaults

logger = logging.getLogger(__name__)


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid4()}"


def _require_message(store: ChatStore, message_id: str) -> dict[str, Any]:
    doc = store.find_message(message_id)
    if doc is None:
        raise InvalidMessageState(f"Message not found: {message_id}")
    return doc


def _is_unsent(doc: dict[str, Any]) -> bool:
    return is_temp_id(doc.get("id")) and doc.get("status") != STATUS_DELIVERED


def send_message(
    store: ChatStore,
    chat_id: str,
    content: str,
    *,
    sender_id: str,
    sender_name: str | None = None,
    reply_to: str | None = None,
) -> dict[str, Any]:
    if not content.strip():
        raise InvalidMessageState("Message content cannot be empty")
    temp_id = new_temp_id()
    doc = message_defaults(
        {
            "id": temp_id,
            "chat_id": chat_id,
            "content": content,
            "sender_id": sender_id,
            "sender_name": sender_name or sender_id,
            "timestamp": now_iso(),
            "reply_to": reply_to,
            "status": STATUS_SENDING,
            "temp_id": temp_id,
            "current_event_id": None,
            "pending_op": "send",
        }
    )
    stored = store.put_doc(doc)
    store.refresh_chat_summary(chat_id)
    return stored


def edit_message(store: ChatStore, message_id: str, content: str) -> dict[str, Any]:
    doc = _require_message(store, message_id)
    if doc.get("is_deleted"):
        raise InvalidMessageState("Cannot edit a deleted message")
    if not content.strip():
        raise InvalidMessageState("Message content cannot be empty")
    if _is_unsent(doc):
        doc["content"] = content
    else:
        doc.update(
            content=content,
            is_edited=True,
            status=STATUS_SENDING,
            pending_op="edit",
            error=None,
        )
    stored = store.put_doc(doc)
    store.refresh_chat_summary(doc["chat_id"])
    return stored


def delete_message(store: ChatStore, message_id: str) -> dict[str, Any] | None:
    """Tombstone a message locally; unsent messages are dropped outright."""

    doc = _require_message(store, message_id)
    if doc.get("is_deleted"):
        raise InvalidMessageState("Message has already been deleted")
    if _is_unsent(doc):
        store.remove_doc(doc["id"])
        store.refresh_chat_summary(doc["chat_id"])
        return None
    doc.update(
        content="",
        is_deleted=True,
        status=STATUS_SENDING,
        pending_op="delete",
        pending_reactions=[],
        pending_seen=False,
        error=None,
    )
    stored = store.put_doc(doc)
    store.refresh_chat_summary(doc["chat_id"])
    return stored


def add_reaction(store: ChatStore, message_id: str, emoji: str, user_id: str) -> dict[str, Any]:
    doc = _require_message(store, message_id)
    if doc.get("is_deleted"):
        raise InvalidMessageState("Cannot react to a deleted message")
    reactions = [dict(r) for r in doc.get("reactions") or []]
    if any(r.get("emoji") == emoji and r.get("user_id") == user_id for r in reactions):
        return doc
    pending = [dict(p) for p in doc.get("pending_reactions") or []]
    queued_remove = next(
        (p for p in pending if p.get("op") == "remove" and p.get("emoji") == emoji), None
    )
    if queued_remove is not None:
        pending.remove(queued_remove)
        reactions.append(
            {"emoji": emoji, "user_id": user_id, "event_id": queued_remove.get("event_id")}
        )
    else:
        pending.append({"op": "add", "emoji": emoji, "user_id": user_id})
        reactions.append({"emoji": emoji, "user_id": user_id, "event_id": None})
    doc["reactions"] = reactions
    doc["pending_reactions"] = pending
    return store.put_doc(doc)


def remove_reaction(store: ChatStore, message_id: str, emoji: str, user_id: str) -> dict[str, Any]:
    doc = _require_message(store, message_id)
    reactions = [dict(r) for r in doc.get("reactions") or []]
    own = next(
        (r for r in reactions if r.get("emoji") == emoji and r.get("user_id") == user_id), None
    )
    if own is None:
        return doc
    reactions.remove(own)
    pending = [dict(p) for p in doc.get("pending_reactions") or []]
    queued_add = next(
        (p for p in pending if p.get("op") == "add" and p.get("emoji") == emoji), None
    )
    if queued_add is not None:
        pending.remove(queued_add)
    else:
        pending.append(
            {"op": "remove", "emoji": emoji, "user_id": user_id, "event_id": own.get("event_id")}
        )
    doc["reactions"] = reactions
    doc["pending_reactions"] = pending
    return store.put_doc(doc)


def mark_seen(store: ChatStore, chat_id: str, user_id: str) -> dict[str, Any] | None:
    chat = store.get_chat(chat_id)
    if chat is not None and chat.get("unread_count"):
        chat["unread_count"] = 0
        store.put_doc(chat)
    target = None
    for doc in reversed(store.get_all_messages(chat_id)):
        if doc.get("is_deleted") or doc.get("placeholder") or is_temp_id(doc.get("id")):
            continue
        if doc.get("sender_id") == user_id:
            continue
        target = doc
        break
    if target is None or user_id in (target.get("seen_by") or []):
        return target
    target["seen_by"] = [*(target.get("seen_by") or []), user_id]
    target["pending_seen"] = True
    return store.put_doc(target)


def retry(store: ChatStore, message_id: str) -> dict[str, Any]:
    doc = _require_message(store, message_id)
    if doc.get("status") != STATUS_FAILED:
        raise InvalidMessageState("Only failed messages can be retried")
    doc["status"] = STATUS_SENDING
    doc["error"] = None
    return store.put_doc(doc)


def cancel(store: ChatStore, message_id: str) -> None:
    doc = _require_message(store, message_id)
    if not _is_unsent(doc):
        raise InvalidMessageState("Only unsent messages can be cancelled")
    store.remove_doc(doc["id"])
    store.refresh_chat_summary(doc["chat_id"])


def _mark_failed(store: ChatStore, doc_id: str, message: str) -> None:
    doc = store.get_doc(doc_id)
    if doc is None:
        return
    doc["status"] = STATUS_FAILED
    doc["error"] = message
    store.put_doc(doc)


def _push_send(store: ChatStore, client: Any, doc: dict[str, Any]) -> dict[str, Any] | None:
    server_doc = client.send_message(
        doc["chat_id"], doc["content"], reply_to=doc.get("reply_to"), temp_id=doc["id"]
    )
    current = store.get_doc(doc["id"])
    if current is None:
        # The realtime echo already replaced the optimistic doc.
        return store.find_message(doc["id"])
    existing_server = store.get_doc(server_doc["id"])
    delivered = merge_delivered(current, server_doc, existing_server)
    with store.conn:
        stored = store.replace_doc_id(current["id"], delivered, commit=False)
        store.refresh_chat_summary(stored["chat_id"], commit=False)
    return stored


def _push_edit(store: ChatStore, client: Any, doc: dict[str, Any]) -> dict[str, Any]:
    revision = client.edit_message(
        doc["chat_id"], doc["id"], doc["content"], reply_to=doc.get("reply_to")
    )
    current = store.get_doc(doc["id"]) or doc
    revisions = list(current.get("revisions") or [])
    if revision and revision != current["id"] and revision not in revisions:
        revisions.append(revision)
    current.update(
        status=STATUS_DELIVERED,
        pending_op=None,
        error=None,
        current_event_id=revision or current["id"],
        revisions=revisions,
        edited_at=now_iso(),
    )
    return store.put_doc(current)


def _push_delete(store: ChatStore, client: Any, doc: dict[str, Any]) -> dict[str, Any]:
    client.delete_message(doc["chat_id"], doc["id"], revisions=list(doc.get("revisions") or []))
    current = store.get_doc(doc["id"]) or doc
    current.update(status=STATUS_DELIVERED, pending_op=None, error=None)
    return store.put_doc(current)


def _push_reactions(store: ChatStore, client: Any, doc: dict[str, Any]) -> int:
    pushed = 0
    pending = list(doc.get("pending_reactions") or [])
    reactions = [dict(r) for r in doc.get("reactions") or []]
    while pending:
        op = pending[0]
        if op.get("op") == "add":
            event_id = client.add_reaction(doc["chat_id"], doc["id"], op["emoji"])
            for reaction in reactions:
                if reaction.get("emoji") == op["emoji"] and reaction.get("user_id") == op.get(
                    "user_id"
                ):
                    reaction["event_id"] = event_id
        else:
            client.remove_reaction(
                doc["chat_id"], doc["id"], op["emoji"], event_id=op.get("event_id")
            )
        pending.pop(0)
        pushed += 1
        doc["pending_reactions"] = pending
        doc["reactions"] = reactions
        doc = store.put_doc(doc)
    return pushed


def flush(store: ChatStore, client: Any) -> dict[str, int]:
    """Push pending local intent to the chat server."""

    result = {"sent": 0, "edited": 0, "deleted": 0, "reactions": 0, "seen": 0, "failed": 0}
    for doc in store.pending_messages():
        if doc.get("status") == STATUS_FAILED:
            continue
        op = doc.get("pending_op")
        try:
            if op == "send":
                pushed = _push_send(store, client, doc)
                result["sent"] += 1
                if pushed is None:
                    continue
                doc = pushed
            elif op == "edit":
                doc = _push_edit(store, client, doc)
                result["edited"] += 1
            elif op == "delete":
                _push_delete(store, client, doc)
                result["deleted"] += 1
                continue
        except (ProviderError, OSError) as exc:
            if isinstance(exc, ProviderError) and exc.is_auth_error:
                raise
            logger.warning("outbox: %s failed for %s", op, doc["id"], exc_info=exc)
            message = exc.message if isinstance(exc, ProviderError) else str(exc)
            _mark_failed(store, doc["id"], message or "request failed")
            result["failed"] += 1
            continue
        try:
            if doc.get("pending_reactions"):
                result["reactions"] += _push_reactions(store, client, doc)
                doc = store.get_doc(doc["id"]) or doc
            if doc.get("pending_seen"):
                client.mark_seen(doc["chat_id"], doc["id"])
                doc["pending_seen"] = False
                store.put_doc(doc)
                result["seen"] += 1
        except (ProviderError, OSError) as exc:
            if isinstance(exc, ProviderError) and exc.is_auth_error:
                raise
            logger.warning("outbox: reaction/receipt push failed for %s", doc["id"], exc_info=exc)
    return result
