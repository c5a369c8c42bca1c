from __future__ import annotations

from typing import Any

from .errors import ApiError, AuthError, ConflictError, NotFoundError, ValidationError
from .errors import extract_error_message
from .providers.http_client import build_base_url, request_json

_ERRORS_BY_STATUS: dict[int, type[ApiError]] = {
    400: ValidationError,
    401: AuthError,
    404: NotFoundError,
    409: ConflictError,
}


class BackendClient:
    """Talks to the credential bridge HTTP API."""

    def __init__(self, api_url: str, *, token: str | None = None, timeout_s: float = 10.0):
        self.api_url = build_base_url(api_url)
        self.token = token
        self.timeout_s = timeout_s

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        resp = request_json(
            method,
            f"{self.api_url}{path}",
            headers=headers,
            body=body,
            query=query,
            timeout_s=self.timeout_s,
        )
        if resp.ok:
            return resp.payload if isinstance(resp.payload, dict) else {}
        error_cls = _ERRORS_BY_STATUS.get(resp.status, ApiError)
        raise error_cls(extract_error_message(resp.payload), status=resp.status)

    def register(
        self, *, name: str, email: str, password: str, role: str = "USER"
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/auth/register",
            body={"name": name, "email": email, "password": password, "role": role},
        )

    def login(self, *, email: str, password: str) -> dict[str, Any]:
        return self._request("POST", "/auth/login", body={"email": email, "password": password})

    def me(self) -> dict[str, Any]:
        return self._request("GET", "/auth/me")

    def search_users(self, query: str = "", *, page: int = 1, limit: int = 10) -> dict[str, Any]:
        return self._request(
            "GET", "/users/search", query={"query": query, "page": page, "limit": limit}
        )
