from __future__ import annotations

from typing import Any


class ChatbridgeError(Exception):
    pass


class ApiError(ChatbridgeError):
    status = 500
    error = "internal_error"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message}


class ValidationError(ApiError):
    status = 400
    error = "validation_error"


class AuthError(ApiError):
    status = 401
    error = "unauthorized"


class ForbiddenError(ApiError):
    status = 403
    error = "forbidden"


class NotFoundError(ApiError):
    status = 404
    error = "not_found"


class ConflictError(ApiError):
    status = 409
    error = "conflict"


class BridgeError(ApiError):
    error = "chat_provider_error"


class ProviderError(ChatbridgeError):
    """Non-2xx response from the chat server."""

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        errcode: str | None = None,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.errcode = errcode
        self.retry_after_ms = retry_after_ms

    @property
    def is_auth_error(self) -> bool:
        # Matrix answers permission problems with 403 M_FORBIDDEN on a valid session.
        if self.errcode == "M_FORBIDDEN":
            return False
        return self.status in (401, 403)

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429 or self.errcode == "M_LIMIT_EXCEEDED"


class InvalidMessageState(ChatbridgeError, ValueError):
    pass


def extract_error_message(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(payload, str) and payload:
        return payload
    return "An unknown error occurred"
