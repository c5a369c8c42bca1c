from __future__ import annotations

import logging
from typing import Any, Protocol

from ..errors import ProviderError, extract_error_message
from .http_client import HttpResponse, build_base_url, request_json

logger = logging.getLogger(__name__)


class ChatClient(Protocol):
    provider: str
    user_id: str

    def check_connection(self) -> dict[str, Any]: ...

    def list_chats(self) -> list[dict[str, Any]]: ...

    def get_chat(self, chat_id: str) -> dict[str, Any] | None: ...

    def fetch_messages(self, chat_id: str, *, limit: int) -> dict[str, Any]: ...

    def fetch_previous(self, chat_id: str, cursor: str, *, limit: int) -> dict[str, Any]: ...

    def fetch_updates(self, chat_ids: list[str], cursor: dict[str, Any]) -> dict[str, Any]: ...

    def fetch_message(self, chat_id: str, message_id: str) -> list[dict[str, Any]]: ...

    def send_message(
        self, chat_id: str, content: str, *, reply_to: str | None, temp_id: str
    ) -> dict[str, Any]: ...

    def edit_message(
        self, chat_id: str, message_id: str, content: str, *, reply_to: str | None
    ) -> str: ...

    def delete_message(self, chat_id: str, message_id: str, *, revisions: list[str]) -> None: ...

    def add_reaction(self, chat_id: str, message_id: str, emoji: str) -> str | None: ...

    def remove_reaction(
        self, chat_id: str, message_id: str, emoji: str, *, event_id: str | None
    ) -> None: ...

    def mark_seen(self, chat_id: str, message_id: str) -> None: ...

    def search_users(self, term: str) -> list[dict[str, Any]]: ...

    def create_direct_chat(self, user_id: str) -> dict[str, Any]: ...

    def create_group_chat(self, user_ids: list[str], name: str | None = None) -> dict[str, Any]: ...

    def create_channel(
        self, name: str, *, private: bool, members: list[str]
    ) -> dict[str, Any]: ...

    def join_chat(self, chat_id: str) -> None: ...

    def open_stream(self, on_batch: Any, *, on_status: Any, on_error: Any, cursor: Any) -> Any: ...


class RestApi:
    """JSON REST calls that raise ProviderError on non-2xx responses."""

    def __init__(self, server_url: str, *, token: str | None = None, timeout_s: float = 10.0):
        self.server_url = build_base_url(server_url)
        self.token = token
        self.timeout_s = timeout_s

    def _headers(self, token: str | None) -> dict[str, str]:
        if token is None:
            token = self.token
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def _error(self, resp: HttpResponse) -> ProviderError:
        payload = resp.payload if isinstance(resp.payload, dict) else {}
        retry_after = payload.get("retry_after_ms")
        return ProviderError(
            extract_error_message(resp.payload),
            status=resp.status,
            errcode=payload.get("errcode"),
            retry_after_ms=int(retry_after) if isinstance(retry_after, int | float) else None,
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        query: dict[str, Any] | None = None,
        token: str | None = None,
        allow_404: bool = False,
        timeout_s: float | None = None,
    ) -> HttpResponse:
        resp = request_json(
            method,
            f"{self.server_url}{path}",
            headers=self._headers(token),
            body=body,
            query=query,
            timeout_s=timeout_s or self.timeout_s,
        )
        if resp.ok or (allow_404 and resp.status == 404):
            return resp
        error = self._error(resp)
        logger.debug("%s %s failed: %s %s", method, path, resp.status, error.message)
        raise error
