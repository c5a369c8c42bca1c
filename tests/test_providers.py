from __future__ import annotations

import json
from typing import Any

import pytest

from chatbridge.accounts import ChatCredentials
from chatbridge.errors import ProviderError
from chatbridge.providers import http_client
from chatbridge.providers.http_client import HttpResponse, build_base_url
from chatbridge.providers.matrix import MatrixAdmin, MatrixClient, registration_mac
from chatbridge.providers.mattermost import MattermostAdmin, MattermostClient, mattermost_username
from chatbridge.sync.mapping import REVISION_REDACTION_REASON


class _Routes:
    """Stands in for request_json; answers by (method, path)."""

    def __init__(self, base: str) -> None:
        self.base = base
        self.responses: dict[tuple[str, str], list[HttpResponse]] = {}
        self.calls: list[dict[str, Any]] = []

    def add(self, method: str, path: str, status: int, payload: Any = None, **headers: str):
        self.responses.setdefault((method, path), []).append(
            HttpResponse(status=status, payload=payload, headers=headers)
        )

    def __call__(self, method: str, url: str, **kwargs: Any) -> HttpResponse:
        path = url[len(self.base) :]
        self.calls.append({"method": method, "path": path, **kwargs})
        queue = self.responses.get((method, path))
        if not queue:
            return HttpResponse(status=404, payload={"message": f"no route {method} {path}"})
        return queue.pop(0) if len(queue) > 1 else queue[0]


def _install(monkeypatch: pytest.MonkeyPatch, base: str) -> _Routes:
    routes = _Routes(base)
    monkeypatch.setattr("chatbridge.providers.base.request_json", routes)
    return routes


# http client


class _FakeResponse:
    def __init__(self, status: int, body: bytes, headers: list[tuple[str, str]]) -> None:
        self.status = status
        self._body = body
        self._headers = headers

    def getheaders(self) -> list[tuple[str, str]]:
        return self._headers

    def read(self) -> bytes:
        return self._body


class _FakeConnection:
    last: _FakeConnection | None = None
    response = _FakeResponse(200, b'{"ok": true}', [("Token", "abc")])

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port
        self.request_args: tuple[Any, ...] = ()
        self.closed = False
        _FakeConnection.last = self

    def request(self, method: str, path: str, body: Any = None, headers: Any = None) -> None:
        self.request_args = (method, path, body, headers)

    def getresponse(self) -> _FakeResponse:
        return self.response

    def close(self) -> None:
        self.closed = True


def test_request_json_encodes_body_and_query(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(http_client, "HTTPConnection", _FakeConnection)

    resp = http_client.request_json(
        "POST",
        "http://chat.local:8065/api/v4/posts?x=1",
        headers={"Authorization": "Bearer t"},
        body={"message": "héllo"},
        query={"page": 2, "skip": None},
    )

    conn = _FakeConnection.last
    assert conn is not None
    assert (conn.host, conn.port) == ("chat.local", 8065)
    method, path, body, headers = conn.request_args
    assert method == "POST"
    assert path == "/api/v4/posts?x=1&page=2"
    assert json.loads(body.decode("utf-8")) == {"message": "héllo"}
    assert headers["Content-Type"] == "application/json"
    assert headers["Authorization"] == "Bearer t"
    assert conn.closed
    assert resp.ok
    assert resp.payload == {"ok": True}
    assert resp.header("Token") == "abc"


def test_request_json_wraps_non_json_body(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(http_client, "HTTPConnection", _FakeConnection)
    monkeypatch.setattr(
        _FakeConnection, "response", _FakeResponse(502, b"<html>Bad gateway</html>", [])
    )

    resp = http_client.request_json("GET", "http://chat.local/x")

    assert resp.status == 502
    assert not resp.ok
    assert resp.payload["error"].startswith("non_json_response")


def test_build_base_url() -> None:
    assert build_base_url(" chat.local:8065/ ") == "http://chat.local:8065"
    assert build_base_url("https://hs.example") == "https://hs.example"
    assert build_base_url("") == ""


# mattermost


def test_mattermost_username_is_sanitized() -> None:
    assert mattermost_username("John.Doe+x@example.com", 5) == "john.doe_x_5"
    assert mattermost_username("42@example.com", 1) == "u42_1"


def test_mattermost_create_or_login_creates_missing_user(monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _install(monkeypatch, "http://mm")
    routes.add("GET", "/api/v4/users/email/a%40example.com", 404, {"message": "not found"})
    routes.add("POST", "/api/v4/users", 201, {"id": "mm1"})
    routes.add("POST", "/api/v4/teams/team1/members", 201, {})
    routes.add("POST", "/api/v4/users/login", 200, {"id": "mm1"}, token="session-token")
    admin = MattermostAdmin("http://mm", "admin-token", default_team="team1")

    creds = admin.create_or_login(user_id=3, email="a@example.com", password="secret1")

    assert creds.user_id == "mm1"
    assert creds.access_token == "session-token"
    create_call = routes.calls[1]
    assert create_call["body"]["username"] == "a_3"
    assert create_call["headers"] == {"Authorization": "Bearer admin-token"}
    # Login must not carry the admin token.
    assert routes.calls[-1]["headers"] == {}


def test_mattermost_create_or_login_resets_stale_password(monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _install(monkeypatch, "http://mm")
    routes.add("GET", "/api/v4/users/email/a%40example.com", 200, {"id": "mm1"})
    routes.add("POST", "/api/v4/users/login", 401, {"message": "bad password"})
    routes.add("POST", "/api/v4/users/login", 200, {"id": "mm1"}, token="fresh")
    routes.add("PUT", "/api/v4/users/mm1/password", 200, {})
    admin = MattermostAdmin("http://mm", "admin-token")

    creds = admin.create_or_login(user_id=3, email="a@example.com", password="secret1")

    assert creds.access_token == "fresh"
    assert [c["method"] for c in routes.calls] == ["GET", "POST", "PUT", "POST"]


def _mm_client() -> MattermostClient:
    creds = ChatCredentials(
        provider="mattermost", user_id="me", access_token="tok", server_url="http://mm"
    )
    return MattermostClient(creds)


def test_mattermost_send_message_maps_post(monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _install(monkeypatch, "http://mm")
    routes.add(
        "POST",
        "/api/v4/posts",
        201,
        {
            "id": "p1",
            "channel_id": "c1",
            "user_id": "me",
            "message": "hi",
            "create_at": 1767261600000,
            "root_id": "p0",
        },
    )
    client = _mm_client()

    doc = client.send_message("c1", "hi", reply_to="p0", temp_id="temp-1")

    assert routes.calls[0]["body"] == {
        "channel_id": "c1",
        "message": "hi",
        "pending_post_id": "temp-1",
        "root_id": "p0",
    }
    assert doc["id"] == "p1"
    assert doc["temp_id"] == "temp-1"
    assert doc["reply_to"] == "p0"


def test_mattermost_fetch_updates_advances_cursor(monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _install(monkeypatch, "http://mm")
    routes.add(
        "GET",
        "/api/v4/channels/c1/posts",
        200,
        {
            "posts": {
                "p2": {
                    "id": "p2",
                    "channel_id": "c1",
                    "user_id": "u2",
                    "message": "gone",
                    "create_at": 1000,
                    "update_at": 3000,
                    "delete_at": 3000,
                },
                "p1": {
                    "id": "p1",
                    "channel_id": "c1",
                    "user_id": "u2",
                    "message": "hello",
                    "create_at": 500,
                    "update_at": 2000,
                },
            }
        },
    )
    routes.add("POST", "/api/v4/users/ids", 200, [{"id": "u2", "username": "bob"}])
    client = _mm_client()

    result = client.fetch_updates(["c1", "c2"], {"c1": 1500})

    assert [e["kind"] for e in result["events"]] == ["message", "delete"]
    assert result["events"][0]["doc"]["sender_name"] == "bob"
    assert result["cursor"] == {"c1": 3000}
    assert routes.calls[0]["query"] == {"since": 1500}


def test_mattermost_errors_raise_provider_error(monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _install(monkeypatch, "http://mm")
    routes.add("DELETE", "/api/v4/posts/p1", 401, {"message": "Invalid or expired session"})
    client = _mm_client()

    with pytest.raises(ProviderError) as excinfo:
        client.delete_message("c1", "p1", revisions=[])

    assert excinfo.value.is_auth_error
    assert excinfo.value.message == "Invalid or expired session"


# matrix


def test_registration_mac_matches_synapse_format() -> None:
    assert registration_mac("s", "n", "u", "p") == registration_mac("s", "n", "u", "p")
    assert registration_mac("s", "n", "u", "p") != registration_mac("s", "n", "u", "q")


def test_matrix_create_or_login_falls_back_to_login(monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _install(monkeypatch, "http://hs")
    routes.add("GET", "/_synapse/admin/v1/register", 200, {"nonce": "n1"})
    routes.add(
        "POST",
        "/_synapse/admin/v1/register",
        400,
        {"errcode": "M_USER_IN_USE", "error": "User ID already taken."},
    )
    routes.add(
        "POST",
        "/_matrix/client/v3/login",
        200,
        {"user_id": "@a_3:hs", "access_token": "mx-token", "device_id": "workplace_app"},
    )
    admin = MatrixAdmin("http://hs", "shared")

    creds = admin.create_or_login(user_id=3, email="a@example.com", password="secret1")

    assert creds.user_id == "@a_3:hs"
    assert creds.device_id == "workplace_app"
    register_body = routes.calls[1]["body"]
    assert register_body["mac"] == registration_mac("shared", "n1", "a_3", "secret1")


def _mx_client(sleeps: list[float]) -> MatrixClient:
    creds = ChatCredentials(
        provider="matrix", user_id="@me:hs", access_token="tok", server_url="http://hs"
    )
    return MatrixClient(creds, request_interval_ms=0, sleep=sleeps.append)


def test_matrix_retries_once_when_rate_limited(monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _install(monkeypatch, "http://hs")
    path = "/_matrix/client/v3/rooms/%21r%3Ahs/receipt/m.read/%24e1"
    routes.add("POST", path, 429, {"errcode": "M_LIMIT_EXCEEDED", "retry_after_ms": 250})
    routes.add("POST", path, 200, {})
    sleeps: list[float] = []

    _mx_client(sleeps).mark_seen("!r:hs", "$e1")

    assert sleeps == [0.25]
    assert len(routes.calls) == 2


def test_matrix_delete_redacts_every_revision(monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _install(monkeypatch, "http://hs")
    client = _mx_client([])
    redacted: list[tuple[str, str | None]] = []
    monkeypatch.setattr(
        client,
        "redact",
        lambda chat_id, event_id, reason=None: redacted.append((event_id, reason)),
    )

    client.delete_message("!r:hs", "$e1", revisions=["$e1", "$e2", "$e3"])

    assert redacted == [
        ("$e1", None),
        ("$e2", REVISION_REDACTION_REASON),
        ("$e3", REVISION_REDACTION_REASON),
    ]
    assert routes.calls == []


def test_matrix_remove_reaction_needs_event_id() -> None:
    client = _mx_client([])

    with pytest.raises(ProviderError) as excinfo:
        client.remove_reaction("!r:hs", "$e1", "👍", event_id=None)

    assert excinfo.value.status == 409
    assert not excinfo.value.is_auth_error


def test_matrix_forbidden_is_not_an_auth_failure() -> None:
    assert not ProviderError("no", status=403, errcode="M_FORBIDDEN").is_auth_error
    assert ProviderError("no", status=401, errcode="M_UNKNOWN_TOKEN").is_auth_error


def test_matrix_sync_returns_since_cursor(monkeypatch: pytest.MonkeyPatch) -> None:
    routes = _install(monkeypatch, "http://hs")
    routes.add(
        "GET",
        "/_matrix/client/v3/sync",
        200,
        {"next_batch": "s9", "rooms": {"join": {}, "invite": {"!inv:hs": {}}}},
    )
    client = _mx_client([])

    batch = client.fetch_updates([], {"since": "s8"})

    assert batch == {"events": [], "cursor": {"since": "s9"}, "invites": ["!inv:hs"]}
    assert routes.calls[0]["query"]["since"] == "s8"
    assert routes.calls[0]["query"]["timeout"] == 0
