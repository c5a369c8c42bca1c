from __future__ import annotations

from pathlib import Path
from typing import Any

from .. import db
from .types import STATUS_DELIVERED, has_local_intent
from .utils import now_iso


class ChatStore:
    """Local document cache for chats and messages."""

    DEFAULT_PAGE_SIZE = 50

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = True,
    ):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_schema(self.conn)

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def _now_iso() -> str:
        return now_iso()

    @staticmethod
    def _row_to_doc(row: Any) -> dict[str, Any]:
        doc = db.from_json(row["body_json"])
        doc["id"] = row["id"]
        doc["_rev"] = row["rev"]
        return doc

    # documents

    def get_doc(self, doc_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT id, rev, body_json FROM docs WHERE id = ?", (doc_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_doc(row)

    def put_doc(self, doc: dict[str, Any], *, commit: bool = True) -> dict[str, Any]:
        doc_id = doc.get("id")
        doc_type = doc.get("type")
        if not doc_id or not doc_type:
            raise ValueError("doc requires id and type")
        body = {k: v for k, v in doc.items() if k != "_rev"}
        now = self._now_iso()
        self.conn.execute(
            """
            INSERT INTO docs(id, type, chat_id, sender_id, timestamp, rev, body_json, updated_at)
            VALUES (?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                type = excluded.type,
                chat_id = excluded.chat_id,
                sender_id = excluded.sender_id,
                timestamp = excluded.timestamp,
                rev = docs.rev + 1,
                body_json = excluded.body_json,
                updated_at = excluded.updated_at
            """,
            (
                doc_id,
                doc_type,
                doc.get("chat_id") if doc_type == "message" else doc_id,
                doc.get("sender_id"),
                doc.get("timestamp") or doc.get("last_message_time"),
                db.to_json(body),
                now,
            ),
        )
        self._record_change(doc_id, doc_type, body.get("chat_id", doc_id), deleted=False)
        if commit:
            self.conn.commit()
        stored = self.get_doc(doc_id)
        assert stored is not None
        return stored

    def remove_doc(self, doc_id: str, *, commit: bool = True) -> bool:
        row = self.conn.execute(
            "SELECT type, chat_id FROM docs WHERE id = ?", (doc_id,)
        ).fetchone()
        if row is None:
            return False
        self.conn.execute("DELETE FROM docs WHERE id = ?", (doc_id,))
        self._record_change(doc_id, row["type"], row["chat_id"], deleted=True)
        if commit:
            self.conn.commit()
        return True

    def replace_doc_id(
        self, old_id: str, new_doc: dict[str, Any], *, commit: bool = True
    ) -> dict[str, Any]:
        self.remove_doc(old_id, commit=False)
        stored = self.put_doc(new_doc, commit=False)
        if commit:
            self.conn.commit()
        return stored

    def _record_change(
        self, doc_id: str, doc_type: str, chat_id: str | None, *, deleted: bool
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO doc_changes(doc_id, doc_type, chat_id, deleted, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (doc_id, doc_type, chat_id, 1 if deleted else 0, self._now_iso()),
        )

    # queries

    def get_chats(self) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT id, rev, body_json FROM docs WHERE type = 'chat'"
        ).fetchall()
        chats = [self._row_to_doc(row) for row in rows]
        chats.sort(key=lambda c: c.get("last_message_time") or "", reverse=True)
        return chats

    def get_chat(self, chat_id: str) -> dict[str, Any] | None:
        doc = self.get_doc(chat_id)
        if doc is None or doc.get("type") != "chat":
            return None
        return doc

    def get_messages(
        self, chat_id: str, limit: int = DEFAULT_PAGE_SIZE, *, before: str | None = None
    ) -> list[dict[str, Any]]:
        params: list[Any] = [chat_id]
        where = "type = 'message' AND chat_id = ?"
        if before:
            where += " AND timestamp < ?"
            params.append(before)
        where += " AND COALESCE(json_extract(body_json, '$.placeholder'), 0) = 0"
        params.append(max(1, int(limit)))
        rows = self.conn.execute(
            f"""
            SELECT id, rev, body_json FROM docs
            WHERE {where}
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        messages = [self._row_to_doc(row) for row in rows]
        messages.reverse()
        return messages

    def get_all_messages(self, chat_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT id, rev, body_json FROM docs
            WHERE type = 'message' AND chat_id = ?
            ORDER BY timestamp ASC, id ASC
            """,
            (chat_id,),
        ).fetchall()
        return [self._row_to_doc(row) for row in rows]

    def find_message(self, ref: str) -> dict[str, Any] | None:
        """Locate a message by display id, revision id, or temp id."""

        doc = self.get_doc(ref)
        if doc is not None and doc.get("type") == "message":
            return doc
        row = self.conn.execute(
            """
            SELECT id, rev, body_json FROM docs
            WHERE type = 'message'
              AND (
                json_extract(body_json, '$.current_event_id') = ?
                OR json_extract(body_json, '$.temp_id') = ?
                OR EXISTS (
                    SELECT 1 FROM json_each(docs.body_json, '$.revisions') WHERE value = ?
                )
              )
            LIMIT 1
            """,
            (ref, ref, ref),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_doc(row)

    def find_reaction_owner(self, event_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            """
            SELECT id, rev, body_json FROM docs
            WHERE type = 'message'
              AND EXISTS (
                SELECT 1 FROM json_each(docs.body_json, '$.reactions')
                WHERE json_extract(value, '$.event_id') = ?
              )
            LIMIT 1
            """,
            (event_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_doc(row)

    def pending_messages(self) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT id, rev, body_json FROM docs
            WHERE type = 'message'
              AND (
                json_extract(body_json, '$.pending_op') IS NOT NULL
                OR COALESCE(json_extract(body_json, '$.pending_seen'), 0) = 1
                OR json_array_length(
                    COALESCE(json_extract(body_json, '$.pending_reactions'), '[]')
                ) > 0
              )
            ORDER BY timestamp ASC, id ASC
            """
        ).fetchall()
        return [self._row_to_doc(row) for row in rows]

    def latest_message(
        self, chat_id: str, *, delivered_only: bool = False
    ) -> dict[str, Any] | None:
        for doc in reversed(self.get_all_messages(chat_id)):
            if doc.get("is_deleted") or doc.get("placeholder"):
                continue
            if delivered_only and doc.get("status") != STATUS_DELIVERED:
                continue
            return doc
        return None

    def oldest_delivered(self, chat_id: str) -> dict[str, Any] | None:
        for doc in self.get_all_messages(chat_id):
            if doc.get("status") == STATUS_DELIVERED and not doc.get("placeholder"):
                return doc
        return None

    def latest_server_timestamp(self, chat_id: str) -> str | None:
        for doc in reversed(self.get_all_messages(chat_id)):
            if doc.get("status") == STATUS_DELIVERED and not doc.get("placeholder"):
                return doc.get("timestamp")
        return None

    def refresh_chat_summary(self, chat_id: str, *, commit: bool = True) -> dict[str, Any] | None:
        chat = self.get_chat(chat_id)
        if chat is None:
            return None
        last = self.latest_message(chat_id)
        chat["last_message"] = last.get("content", "") if last else ""
        chat["last_message_time"] = last.get("timestamp") if last else None
        return self.put_doc(chat, commit=commit)

    def clear(self, *, keep_unsynced: bool = True) -> int:
        rows = self.conn.execute("SELECT id, rev, body_json FROM docs").fetchall()
        removed = 0
        with self.conn:
            for row in rows:
                doc = self._row_to_doc(row)
                if keep_unsynced and has_local_intent(doc):
                    continue
                self.remove_doc(doc["id"], commit=False)
                removed += 1
        return removed

    # changes feed

    def changes_since(
        self, seq: int, *, chat_id: str | None = None, limit: int = 200
    ) -> list[dict[str, Any]]:
        params: list[Any] = [int(seq)]
        where = "seq > ?"
        if chat_id:
            where += " AND chat_id = ?"
            params.append(chat_id)
        params.append(max(1, int(limit)))
        rows = self.conn.execute(
            f"""
            SELECT seq, doc_id, doc_type, chat_id, deleted, created_at
            FROM doc_changes
            WHERE {where}
            ORDER BY seq ASC
            LIMIT ?
            """,
            params,
        ).fetchall()
        changes = db.rows_to_dicts(rows)
        for change in changes:
            change["deleted"] = bool(change["deleted"])
        return changes

    def last_seq(self) -> int:
        row = self.conn.execute("SELECT MAX(seq) AS seq FROM doc_changes").fetchone()
        return int(row["seq"] or 0) if row else 0

    # sync state

    def get_state(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return row["value"]

    def set_state(self, key: str, value: str | None, *, commit: bool = True) -> None:
        self.conn.execute(
            """
            INSERT INTO sync_state(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, self._now_iso()),
        )
        if commit:
            self.conn.commit()

    def delete_state(self, prefix: str) -> int:
        cur = self.conn.execute("DELETE FROM sync_state WHERE key LIKE ?", (f"{prefix}%",))
        self.conn.commit()
        return int(cur.rowcount or 0)

    def get_sync_daemon_state(self) -> dict[str, Any] | None:
        row = self.conn.execute(
            """
            SELECT last_error, last_traceback, last_error_at, last_ok_at
            FROM sync_daemon_state WHERE id = 1
            """
        ).fetchone()
        if row is None:
            return None
        return dict(row)

    def set_sync_daemon_error(self, error: str, traceback_text: str) -> None:
        self.conn.execute(
            """
            INSERT INTO sync_daemon_state(id, last_error, last_traceback, last_error_at)
            VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_error = excluded.last_error,
                last_traceback = excluded.last_traceback,
                last_error_at = excluded.last_error_at
            """,
            (error, traceback_text, self._now_iso()),
        )
        self.conn.commit()

    def set_sync_daemon_ok(self) -> None:
        self.conn.execute(
            """
            INSERT INTO sync_daemon_state(id, last_ok_at)
            VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_ok_at = excluded.last_ok_at
            """,
            (self._now_iso(),),
        )
        self.conn.commit()
