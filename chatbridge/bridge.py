from __future__ import annotations

import logging
import re
from typing import Any

from .accounts import ROLES, AccountStore, ChatCredentials
from .config import ChatbridgeConfig
from .errors import (
    AuthError,
    BridgeError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from .security import decode_token, hash_password, issue_token, verify_password

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6
MAX_SEARCH_LIMIT = 100


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ValidationError(f"{key} is required")
    return value


def validate_register(payload: dict[str, Any]) -> dict[str, str]:
    name = _require_str(payload, "name").strip()
    email = _require_str(payload, "email").strip()
    password = _require_str(payload, "password")
    role = payload.get("role") or "USER"
    if not name:
        raise ValidationError("name must not be empty")
    if not EMAIL_RE.match(email):
        raise ValidationError("email must be a valid email address")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if role not in ROLES:
        raise ValidationError(f"role must be one of {', '.join(ROLES)}")
    return {"name": name, "email": email, "password": password, "role": role}


def validate_login(payload: dict[str, Any]) -> dict[str, str]:
    email = _require_str(payload, "email").strip()
    password = _require_str(payload, "password")
    if not EMAIL_RE.match(email):
        raise ValidationError("email must be a valid email address")
    if not password:
        raise ValidationError("password is required")
    return {"email": email, "password": password}


def public_user(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user["name"],
        "role": user["role"],
        "chat_user_id": user.get("chat_user_id"),
        "created_at": user.get("created_at"),
    }


class AuthService:
    """Exchanges app credentials for chat server sessions."""

    def __init__(self, accounts: AccountStore, admin: Any, config: ChatbridgeConfig):
        self.accounts = accounts
        self.admin = admin
        self.config = config

    @property
    def provider_label(self) -> str:
        return str(self.admin.provider).capitalize()

    def _token(self, user: dict[str, Any]) -> str:
        return issue_token(user, secret=self.config.jwt_secret or "", ttl_s=self.config.jwt_ttl_s)

    def _response(
        self, message: str, user: dict[str, Any], creds: ChatCredentials
    ) -> dict[str, Any]:
        return {
            "message": message,
            "user": {k: user[k] for k in ("id", "email", "name", "role")},
            "token": self._token(user),
            "chat": creds.to_payload(),
        }

    def register(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = validate_register(payload)
        if self.accounts.email_taken(data["email"]):
            raise ConflictError("User already exists")
        try:
            user = self.accounts.create_user(
                email=data["email"],
                password_hash=hash_password(data["password"]),
                name=data["name"],
                role=data["role"],
            )
        except ValueError as exc:
            raise ConflictError("User already exists") from exc
        try:
            creds = self.admin.create_or_login(
                user_id=user["id"],
                email=user["email"],
                password=data["password"],
                display_name=user["name"],
            )
            self.accounts.set_chat_credentials(user["id"], creds)
        except (ProviderError, OSError) as exc:
            logger.warning("register: chat account failed for user %s", user["id"], exc_info=exc)
            self.accounts.purge_user(user["id"])
            raise BridgeError(f"{self.provider_label} registration failed: {exc}") from exc
        logger.info("register: user %s linked to %s", user["id"], creds.user_id)
        return self._response("User registered successfully", user, creds)

    def login(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = validate_login(payload)
        user = self.accounts.get_by_email(data["email"], include_secrets=True)
        if user is None or not verify_password(data["password"], user["password_hash"]):
            raise AuthError("Invalid credentials")
        creds = None
        if self.admin.reuses_tokens and user.get("chat_provider") == self.admin.provider:
            creds = self.accounts.stored_credentials(user, self.admin.server_url)
        if creds is None:
            try:
                creds = self.admin.create_or_login(
                    user_id=user["id"],
                    email=user["email"],
                    password=data["password"],
                    display_name=user["name"],
                )
            except (ProviderError, OSError) as exc:
                logger.warning("login: chat session failed for user %s", user["id"], exc_info=exc)
                raise AuthError(f"{self.provider_label} authentication failed: {exc}") from exc
            self.accounts.set_chat_credentials(user["id"], creds)
        return self._response("Login successful", user, creds)

    def authenticate(self, token: str | None) -> dict[str, Any]:
        if not token:
            raise AuthError("Missing bearer token")
        claims = decode_token(token, secret=self.config.jwt_secret or "")
        try:
            user_id = int(claims.get("sub"))
        except (TypeError, ValueError) as exc:
            raise AuthError("Invalid token") from exc
        user = self.accounts.get_by_id(user_id)
        if user is None:
            raise AuthError("User no longer exists")
        return user

    def me(self, token: str | None) -> dict[str, Any]:
        user = self.authenticate(token)
        return {"id": user["id"], "email": user["email"], "role": user["role"]}

    def search_users(self, query: str | None, *, page: Any = 1, limit: Any = 10) -> dict[str, Any]:
        try:
            page_num = int(page)
            limit_num = int(limit)
        except (TypeError, ValueError) as exc:
            raise ValidationError("page and limit must be integers") from exc
        if page_num < 1:
            raise ValidationError("page must be at least 1")
        if limit_num < 1 or limit_num > MAX_SEARCH_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_SEARCH_LIMIT}")
        result = self.accounts.search_users(query, page=page_num, limit=limit_num)
        return {
            "message": "Users search completed successfully",
            "data": [public_user(u) for u in result["users"]],
            "pagination": result["pagination"],
        }

    def get_user(self, user_id: Any, current_user: dict[str, Any]) -> dict[str, Any]:
        if current_user.get("role") != "ADMIN":
            raise ForbiddenError("Admin access required")
        try:
            target_id = int(user_id)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Invalid user ID") from exc
        if target_id < 1:
            raise ValidationError("Invalid user ID")
        user = self.accounts.get_by_id(target_id)
        if user is None:
            raise NotFoundError("User not found")
        return {"message": "User retrieved successfully", "data": public_user(user)}

    def update_profile(
        self, current_user: dict[str, Any], payload: dict[str, Any]
    ) -> dict[str, Any]:
        name = payload.get("name")
        email = payload.get("email")
        if name is not None and (not isinstance(name, str) or not name.strip()):
            raise ValidationError("name must not be empty")
        if email is not None:
            if not isinstance(email, str) or not EMAIL_RE.match(email.strip()):
                raise ValidationError("email must be a valid email address")
            if self.accounts.email_taken(email, exclude_id=current_user["id"]):
                raise ConflictError("Email already in use")
        if current_user.get("chat_user_id") and (name is not None or email is not None):
            try:
                self.admin.update_user_profile(
                    str(current_user["chat_user_id"]), name=name, email=email
                )
            except (ProviderError, OSError) as exc:
                raise BridgeError(f"{self.provider_label} profile update failed: {exc}") from exc
        user = self.accounts.update_profile(current_user["id"], name=name, email=email)
        if user is None:
            raise NotFoundError("User not found")
        return {"message": "Profile updated successfully", "data": public_user(user)}

    def change_password(
        self, current_user: dict[str, Any], payload: dict[str, Any]
    ) -> dict[str, Any]:
        current = _require_str(payload, "current_password")
        new = _require_str(payload, "new_password")
        if len(new) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        user = self.accounts.get_by_id(current_user["id"], include_secrets=True)
        if user is None or not verify_password(current, user["password_hash"]):
            raise AuthError("Invalid credentials")
        if user.get("chat_user_id"):
            try:
                self.admin.update_user_password(str(user["chat_user_id"]), new)
            except (ProviderError, OSError) as exc:
                raise BridgeError(f"{self.provider_label} password update failed: {exc}") from exc
        self.accounts.update_password_hash(user["id"], hash_password(new))
        return {"message": "Password updated successfully"}
