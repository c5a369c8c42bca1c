from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from .accounts import AccountStore
from .bridge import AuthService
from .config import ChatbridgeConfig, load_config
from .db import DEFAULT_ACCOUNTS_DB_PATH
from .errors import ApiError
from .providers import build_admin
from .security import bearer_token

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 64 * 1024

_USER_ID_RE = re.compile(r"^/users/([^/]+)$")


def _read_body(handler: BaseHTTPRequestHandler) -> bytes:
    length = int(handler.headers.get("Content-Length", "0") or 0)
    if length <= 0:
        return b""
    if length > MAX_BODY_BYTES:
        raise ValueError("payload_too_large")
    return handler.rfile.read(length)


def _parse_json_body(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _send_json(handler: BaseHTTPRequestHandler, payload: dict[str, Any], status: int = 200) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _first(query: dict[str, list[str]], key: str, default: Any = None) -> Any:
    values = query.get(key)
    return values[0] if values else default


def build_auth_handler(
    db_path: Path | str | None = None,
    config: ChatbridgeConfig | None = None,
    *,
    admin: Any = None,
):
    cfg = config or load_config()
    resolved_db = Path(db_path or cfg.accounts_db_path or DEFAULT_ACCOUNTS_DB_PATH).expanduser()
    chat_admin = admin or build_admin(cfg)

    class AuthHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: object) -> None:  # noqa: A003
            if os.environ.get("CHATBRIDGE_API_LOGS") == "1":
                super().log_message(format, *args)

        def _service(self) -> AuthService:
            return AuthService(AccountStore(resolved_db), chat_admin, cfg)

        def _dispatch(self, method: str) -> None:
            parsed = urlparse(self.path)
            body: dict[str, Any] = {}
            if method in ("POST", "PATCH"):
                try:
                    raw = _read_body(self)
                except ValueError:
                    _send_json(self, {"error": "payload_too_large"}, status=413)
                    return
                parsed_body = _parse_json_body(raw)
                if parsed_body is None:
                    _send_json(self, {"error": "invalid_json"}, status=400)
                    return
                body = parsed_body
            service = self._service()
            try:
                status, payload = self._route(service, method, parsed.path, parsed.query, body)
            except ApiError as exc:
                _send_json(self, exc.to_payload(), status=exc.status)
            except Exception:
                logger.exception("auth api: %s %s failed", method, parsed.path)
                _send_json(self, {"error": "internal_error"}, status=500)
            else:
                _send_json(self, payload, status=status)
            finally:
                service.accounts.close()

        def _route(
            self,
            service: AuthService,
            method: str,
            path: str,
            raw_query: str,
            body: dict[str, Any],
        ) -> tuple[int, dict[str, Any]]:
            token = bearer_token(self.headers.get("Authorization"))
            if method == "POST" and path == "/auth/register":
                return 201, service.register(body)
            if method == "POST" and path == "/auth/login":
                return 200, service.login(body)
            if method == "GET" and path == "/auth/me":
                return 200, service.me(token)
            if method == "GET" and path == "/users/search":
                service.authenticate(token)
                query = parse_qs(raw_query)
                return 200, service.search_users(
                    _first(query, "query"),
                    page=_first(query, "page", 1),
                    limit=_first(query, "limit", 10),
                )
            if method == "PATCH" and path == "/users/me":
                return 200, service.update_profile(service.authenticate(token), body)
            if method == "POST" and path == "/users/me/password":
                return 200, service.change_password(service.authenticate(token), body)
            match = _USER_ID_RE.match(path)
            if method == "GET" and match:
                return 200, service.get_user(match.group(1), service.authenticate(token))
            return 404, {"error": "not_found"}

        def do_GET(self) -> None:  # noqa: N802
            self._dispatch("GET")

        def do_POST(self) -> None:  # noqa: N802
            self._dispatch("POST")

        def do_PATCH(self) -> None:  # noqa: N802
            self._dispatch("PATCH")

    return AuthHandler


def build_api_server(
    host: str,
    port: int,
    *,
    db_path: Path | str | None = None,
    config: ChatbridgeConfig | None = None,
    admin: Any = None,
) -> ThreadingHTTPServer:
    handler = build_auth_handler(db_path, config, admin=admin)

    class Server(ThreadingHTTPServer):
        address_family = socket.AF_INET6 if ":" in host else socket.AF_INET
        daemon_threads = True

        def server_bind(self) -> None:
            if self.address_family == socket.AF_INET6:
                with contextlib.suppress(OSError):
                    self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            super().server_bind()

    return Server((host, port), handler)


def run_api_server(
    host: str,
    port: int,
    *,
    db_path: Path | str | None = None,
    config: ChatbridgeConfig | None = None,
    stop_event: threading.Event | None = None,
) -> None:
    server = build_api_server(host, port, db_path=db_path, config=config)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("auth api listening on %s:%s", host, port)
    stop = stop_event or threading.Event()
    try:
        while not stop.wait(1.0):
            continue
    finally:
        server.shutdown()
        server.server_close()
