from __future__ import annotations

import math
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from . import db
from .store.utils import now_iso

ROLES = ("USER", "ADMIN")

_PUBLIC_COLUMNS = "id, email, name, role, chat_provider, chat_user_id, created_at, updated_at"


@dataclass
class ChatCredentials:
    provider: str
    user_id: str
    access_token: str
    server_url: str
    device_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "user_id": self.user_id,
            "access_token": self.access_token,
            "device_id": self.device_id,
            "server_url": self.server_url,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ChatCredentials:
        return cls(
            provider=str(payload.get("provider") or ""),
            user_id=str(payload.get("user_id") or ""),
            access_token=str(payload.get("access_token") or ""),
            server_url=str(payload.get("server_url") or ""),
            device_id=payload.get("device_id"),
        )


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountStore:
    """User records owned by the credential bridge."""

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_ACCOUNTS_DB_PATH,
        *,
        check_same_thread: bool = True,
    ):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_accounts_schema(self.conn)

    def close(self) -> None:
        self.conn.close()

    def create_user(
        self, *, email: str, password_hash: str, name: str, role: str = "USER"
    ) -> dict[str, Any]:
        now = now_iso()
        try:
            cur = self.conn.execute(
                """
                INSERT INTO users(email, password_hash, name, role, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (normalize_email(email), password_hash, name.strip(), role, now, now),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError("email already registered") from exc
        self.conn.commit()
        user = self.get_by_id(int(cur.lastrowid or 0), include_secrets=True)
        assert user is not None
        return user

    def get_by_email(self, email: str, *, include_secrets: bool = False) -> dict[str, Any] | None:
        columns = "*" if include_secrets else _PUBLIC_COLUMNS
        row = self.conn.execute(
            f"SELECT {columns} FROM users WHERE email = ? AND deleted_at IS NULL",
            (normalize_email(email),),
        ).fetchone()
        return dict(row) if row else None

    def get_by_id(self, user_id: int, *, include_secrets: bool = False) -> dict[str, Any] | None:
        columns = "*" if include_secrets else _PUBLIC_COLUMNS
        row = self.conn.execute(
            f"SELECT {columns} FROM users WHERE id = ? AND deleted_at IS NULL",
            (user_id,),
        ).fetchone()
        return dict(row) if row else None

    def email_taken(self, email: str, *, exclude_id: int | None = None) -> bool:
        row = self.conn.execute(
            "SELECT id FROM users WHERE email = ?",
            (normalize_email(email),),
        ).fetchone()
        if row is None:
            return False
        return exclude_id is None or int(row["id"]) != exclude_id

    def set_chat_credentials(self, user_id: int, creds: ChatCredentials) -> None:
        self.conn.execute(
            """
            UPDATE users
            SET chat_provider = ?, chat_user_id = ?, chat_access_token = ?,
                chat_device_id = ?, updated_at = ?
            WHERE id = ? AND deleted_at IS NULL
            """,
            (
                creds.provider,
                creds.user_id,
                creds.access_token,
                creds.device_id,
                now_iso(),
                user_id,
            ),
        )
        self.conn.commit()

    def stored_credentials(self, user: dict[str, Any], server_url: str) -> ChatCredentials | None:
        if not user.get("chat_user_id") or not user.get("chat_access_token"):
            return None
        return ChatCredentials(
            provider=str(user.get("chat_provider") or ""),
            user_id=str(user["chat_user_id"]),
            access_token=str(user["chat_access_token"]),
            server_url=server_url,
            device_id=user.get("chat_device_id"),
        )

    def update_profile(
        self, user_id: int, *, name: str | None = None, email: str | None = None
    ) -> dict[str, Any] | None:
        fields: list[str] = []
        params: list[Any] = []
        if name is not None:
            fields.append("name = ?")
            params.append(name.strip())
        if email is not None:
            fields.append("email = ?")
            params.append(normalize_email(email))
        if fields:
            fields.append("updated_at = ?")
            params.append(now_iso())
            params.append(user_id)
            self.conn.execute(
                f"UPDATE users SET {', '.join(fields)} WHERE id = ? AND deleted_at IS NULL",
                params,
            )
            self.conn.commit()
        return self.get_by_id(user_id)

    def update_password_hash(self, user_id: int, password_hash: str) -> None:
        self.conn.execute(
            """
            UPDATE users SET password_hash = ?, updated_at = ?
            WHERE id = ? AND deleted_at IS NULL
            """,
            (password_hash, now_iso(), user_id),
        )
        self.conn.commit()

    def delete_user(self, user_id: int) -> bool:
        cur = self.conn.execute(
            "UPDATE users SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
            (now_iso(), user_id),
        )
        self.conn.commit()
        return bool(cur.rowcount)

    def purge_user(self, user_id: int) -> None:
        self.conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        self.conn.commit()

    def search_users(self, query: str | None, *, page: int = 1, limit: int = 10) -> dict[str, Any]:
        where = "deleted_at IS NULL AND chat_user_id IS NOT NULL"
        params: list[Any] = []
        if query and query.strip():
            where += " AND (LOWER(name) LIKE ? OR LOWER(email) LIKE ?)"
            needle = f"%{query.strip().lower()}%"
            params.extend([needle, needle])
        total_row = self.conn.execute(
            f"SELECT COUNT(*) AS total FROM users WHERE {where}", params
        ).fetchone()
        total = int(total_row["total"] or 0)
        rows = self.conn.execute(
            f"""
            SELECT {_PUBLIC_COLUMNS} FROM users
            WHERE {where}
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            [*params, limit, (page - 1) * limit],
        ).fetchall()
        return {
            "users": db.rows_to_dicts(rows),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        }
