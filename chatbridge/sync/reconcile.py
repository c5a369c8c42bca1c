from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from ..store import ChatStore
from ..store.types import STATUS_DELIVERED, RemoteEvent
from ..store.utils import now_iso

logger = logging.getLogger(__name__)

# Fields owned by the server; refreshed even when local intent is pending.
SERVER_FIELDS = ("sender_id", "sender_name", "timestamp", "reply_to", "chat_id")


def message_defaults(doc: dict[str, Any]) -> dict[str, Any]:
    doc = dict(doc)
    doc.setdefault("type", "message")
    doc.setdefault("content", "")
    doc.setdefault("reply_to", None)
    doc.setdefault("reactions", [])
    doc.setdefault("seen_by", [])
    doc.setdefault("status", STATUS_DELIVERED)
    doc.setdefault("is_edited", False)
    doc.setdefault("is_deleted", False)
    doc.setdefault("temp_id", None)
    doc.setdefault("current_event_id", doc.get("id"))
    doc.setdefault("revisions", [])
    doc.setdefault("edited_at", None)
    doc.setdefault("pending_op", None)
    doc.setdefault("pending_reactions", [])
    doc.setdefault("pending_seen", False)
    doc.setdefault("error", None)
    doc.setdefault("placeholder", False)
    return doc


def overlay_pending_reactions(
    reactions: list[dict[str, Any]], pending: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    result = [dict(r) for r in reactions]
    for op in pending:
        key = (op.get("emoji"), op.get("user_id"))
        present = [r for r in result if (r.get("emoji"), r.get("user_id")) == key]
        if op.get("op") == "add" and not present:
            result.append(
                {"emoji": op.get("emoji"), "user_id": op.get("user_id"), "event_id": None}
            )
        elif op.get("op") == "remove" and present:
            result = [r for r in result if (r.get("emoji"), r.get("user_id")) != key]
    return result


def _strip_rev(doc: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in doc.items() if k != "_rev"}


def _write_if_changed(store: ChatStore, existing: dict[str, Any], merged: dict[str, Any]) -> str:
    if _strip_rev(existing) == _strip_rev(merged):
        return "skipped"
    store.put_doc(merged, commit=False)
    return "updated"


def merge_delivered(
    local: dict[str, Any], incoming: dict[str, Any], existing_server: dict[str, Any] | None
) -> dict[str, Any]:
    """Fold an optimistic local doc into the server's copy of the same message."""

    base = message_defaults({**(existing_server or {}), **incoming})
    pending = list(local.get("pending_reactions") or [])
    base["temp_id"] = local["id"]
    base["status"] = STATUS_DELIVERED
    base["pending_op"] = None
    base["error"] = None
    base["pending_reactions"] = pending
    base["pending_seen"] = bool(local.get("pending_seen"))
    base["reactions"] = overlay_pending_reactions(base.get("reactions") or [], pending)
    return base


def _apply_message(store: ChatStore, event: RemoteEvent) -> str:
    incoming = message_defaults(event.get("doc") or {})
    if not incoming.get("id"):
        return "skipped"
    temp_id = event.get("temp_id")
    if temp_id and temp_id != incoming["id"]:
        local = store.get_doc(temp_id)
        if local is not None and local.get("type") == "message":
            existing_server = store.get_doc(incoming["id"])
            merged = merge_delivered(local, event.get("doc") or {}, existing_server)
            store.replace_doc_id(temp_id, merged, commit=False)
            return "updated"

    existing = store.get_doc(incoming["id"])
    if existing is None:
        if incoming.get("is_deleted"):
            owner = store.find_message(incoming["id"])
            if owner is not None and owner["id"] != incoming["id"]:
                # A redacted edit revision of a known message.
                return "skipped"
        store.put_doc(incoming, commit=False)
        if event.get("live") and not event.get("is_own") and not incoming.get("is_deleted"):
            _bump_unread(store, incoming["chat_id"])
        return "inserted"

    if existing.get("is_deleted"):
        if not existing.get("placeholder"):
            return "skipped"
        merged = {
            **existing,
            **{k: incoming[k] for k in SERVER_FIELDS if incoming.get(k) is not None},
            "placeholder": False,
        }
        return _write_if_changed(store, existing, merged)

    if existing.get("pending_op"):
        merged = {**existing, **{k: incoming[k] for k in SERVER_FIELDS if k in incoming}}
        return _write_if_changed(store, existing, merged)

    if existing.get("placeholder"):
        # Edit arrived before its original.
        merged = {
            **incoming,
            "content": existing.get("content", ""),
            "is_edited": True,
            "current_event_id": existing.get("current_event_id"),
            "revisions": list(existing.get("revisions") or []),
            "edited_at": existing.get("edited_at"),
            "reactions": list(existing.get("reactions") or []) or incoming["reactions"],
            "seen_by": sorted(set(existing.get("seen_by") or []) | set(incoming["seen_by"])),
            "placeholder": False,
        }
        return _write_if_changed(store, existing, merged)

    newer_revision = (
        existing.get("is_edited")
        and existing.get("current_event_id") not in (None, incoming["id"])
        and incoming.get("current_event_id") == incoming["id"]
        and not incoming.get("is_edited")
    )
    if newer_revision:
        merged = {**existing, **{k: incoming[k] for k in SERVER_FIELDS if k in incoming}}
        return _write_if_changed(store, existing, merged)

    raw = event.get("doc") or {}
    merged = {**existing, **raw}
    if not raw.get("temp_id"):
        merged["temp_id"] = existing.get("temp_id")
    if raw.get("current_event_id") == raw.get("id") and existing.get("revisions"):
        merged["current_event_id"] = existing.get("current_event_id")
    merged["reactions"] = overlay_pending_reactions(
        merged.get("reactions") or [], existing.get("pending_reactions") or []
    )
    return _write_if_changed(store, existing, message_defaults(merged))


def _placeholder(event: RemoteEvent, **fields: Any) -> dict[str, Any]:
    doc = message_defaults(
        {
            "id": event["message_id"],
            "chat_id": event.get("chat_id") or "",
            "sender_id": event.get("user_id") or "",
            "sender_name": event.get("user_id") or "",
            "timestamp": event.get("timestamp") or now_iso(),
            "placeholder": True,
        }
    )
    doc.update(fields)
    return doc


def _apply_edit(store: ChatStore, event: RemoteEvent) -> str:
    message_id = event.get("message_id")
    edit_id = event.get("event_id")
    if not message_id or not edit_id:
        return "skipped"
    timestamp = event.get("timestamp")
    target = store.find_message(message_id)
    if target is None:
        store.put_doc(
            _placeholder(
                event,
                content=event.get("content") or "",
                is_edited=True,
                current_event_id=edit_id,
                revisions=[edit_id],
                edited_at=timestamp,
            ),
            commit=False,
        )
        return "inserted"
    revisions = list(target.get("revisions") or [])
    if target.get("is_deleted") or edit_id in revisions or target.get("pending_op"):
        return "skipped"
    revisions.append(edit_id)
    applied_at = target.get("edited_at")
    if applied_at and timestamp and timestamp < applied_at:
        merged = {**target, "revisions": revisions}
        return _write_if_changed(store, target, merged)
    merged = {
        **target,
        "content": event.get("content") or "",
        "is_edited": True,
        "current_event_id": edit_id,
        "revisions": revisions,
        "edited_at": timestamp or now_iso(),
    }
    return _write_if_changed(store, target, merged)


def tombstone(doc: dict[str, Any]) -> dict[str, Any]:
    return {
        **doc,
        "content": "",
        "is_deleted": True,
        "status": STATUS_DELIVERED,
        "pending_op": None,
        "pending_reactions": [],
        "pending_seen": False,
        "error": None,
    }


def _apply_delete(store: ChatStore, event: RemoteEvent) -> str:
    ref = event.get("message_id")
    if not ref:
        return "skipped"
    owner = store.find_reaction_owner(ref)
    if owner is not None:
        reactions = [r for r in owner.get("reactions") or [] if r.get("event_id") != ref]
        return _write_if_changed(store, owner, {**owner, "reactions": reactions})
    target = store.find_message(ref)
    if target is None:
        store.put_doc(_placeholder(event, is_deleted=True), commit=False)
        return "inserted"
    if target.get("is_deleted") and not target.get("pending_op"):
        return "skipped"
    return _write_if_changed(store, target, tombstone(target))


def _apply_reaction(store: ChatStore, event: RemoteEvent, *, added: bool) -> str:
    target = store.find_message(event.get("message_id") or "")
    if target is None or target.get("is_deleted"):
        return "skipped"
    emoji = event.get("emoji")
    user_id = event.get("user_id")
    event_id = event.get("event_id")
    reactions = [dict(r) for r in target.get("reactions") or []]
    match = [r for r in reactions if r.get("emoji") == emoji and r.get("user_id") == user_id]
    if added:
        if match:
            if event_id and not match[0].get("event_id"):
                match[0]["event_id"] = event_id
            else:
                return "skipped"
        else:
            reactions.append({"emoji": emoji, "user_id": user_id, "event_id": event_id})
    else:
        if event_id:
            remaining = [r for r in reactions if r.get("event_id") != event_id]
        else:
            remaining = [r for r in reactions if r not in match]
        if len(remaining) == len(reactions):
            return "skipped"
        reactions = remaining
    return _write_if_changed(store, target, {**target, "reactions": reactions})


def _apply_seen(store: ChatStore, event: RemoteEvent, *, seen: bool) -> str:
    target = store.find_message(event.get("message_id") or "")
    user_id = event.get("user_id")
    if target is None or not user_id:
        return "skipped"
    seen_by = list(target.get("seen_by") or [])
    if seen and user_id not in seen_by:
        seen_by.append(user_id)
    elif not seen and user_id in seen_by:
        seen_by.remove(user_id)
    else:
        return "skipped"
    return _write_if_changed(store, target, {**target, "seen_by": seen_by})


def _apply_chat(store: ChatStore, event: RemoteEvent) -> str:
    incoming = dict(event.get("doc") or {})
    if not incoming.get("id"):
        return "skipped"
    existing = store.get_chat(incoming["id"])
    if existing is None:
        incoming.setdefault("last_message", "")
        incoming.setdefault("last_message_time", None)
        incoming.setdefault("unread_count", 0)
        store.put_doc(incoming, commit=False)
        return "inserted"
    merged = {**existing, **incoming}
    merged["last_message"] = existing.get("last_message", "")
    merged["last_message_time"] = existing.get("last_message_time")
    if incoming.get("name") == incoming["id"] and existing.get("name"):
        merged["name"] = existing["name"]
    return _write_if_changed(store, existing, merged)


def _bump_unread(store: ChatStore, chat_id: str) -> None:
    chat = store.get_chat(chat_id)
    if chat is None:
        return
    chat["unread_count"] = int(chat.get("unread_count") or 0) + 1
    store.put_doc(chat, commit=False)


def apply_remote_event(store: ChatStore, event: RemoteEvent) -> str:
    kind = event.get("kind")
    if kind == "message":
        return _apply_message(store, event)
    if kind == "edit":
        return _apply_edit(store, event)
    if kind == "delete":
        return _apply_delete(store, event)
    if kind in ("reaction_added", "reaction_removed"):
        return _apply_reaction(store, event, added=kind == "reaction_added")
    if kind in ("seen", "unseen"):
        return _apply_seen(store, event, seen=kind == "seen")
    if kind == "chat":
        return _apply_chat(store, event)
    return "skipped"


def apply_remote_events(store: ChatStore, events: Iterable[RemoteEvent]) -> dict[str, int]:
    result = {"inserted": 0, "updated": 0, "skipped": 0}
    touched: set[str] = set()
    with store.conn:
        for event in events:
            outcome = apply_remote_event(store, event)
            result[outcome] += 1
            if outcome != "skipped" and event.get("kind") != "chat" and event.get("chat_id"):
                touched.add(str(event["chat_id"]))
        for chat_id in sorted(touched):
            store.refresh_chat_summary(chat_id, commit=False)
    if result["inserted"] or result["updated"]:
        logger.debug("reconcile: applied %s", result)
    return result
