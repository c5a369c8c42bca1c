from __future__ import annotations

from ._store import ChatStore
from .types import (
    DELETED_PLACEHOLDER,
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_SENDING,
    ChatDoc,
    MessageDoc,
    RemoteEvent,
)

__all__ = [
    "DELETED_PLACEHOLDER",
    "STATUS_DELIVERED",
    "STATUS_FAILED",
    "STATUS_SENDING",
    "ChatDoc",
    "ChatStore",
    "MessageDoc",
    "RemoteEvent",
]
