from __future__ import annotations

import pytest

from chatbridge import security
from chatbridge.errors import AuthError

SECRET = "test-secret-that-is-at-least-32-bytes-long"


def test_password_hash_roundtrip() -> None:
    hashed = security.hash_password("hunter22")

    assert hashed != "hunter22"
    assert security.verify_password("hunter22", hashed)
    assert not security.verify_password("hunter23", hashed)


def test_verify_password_rejects_garbage_hash() -> None:
    assert security.verify_password("anything", "not-a-bcrypt-hash") is False


def test_token_carries_identity_claims() -> None:
    token = security.issue_token(
        {"id": 7, "email": "a@example.com", "role": "ADMIN"}, secret=SECRET, ttl_s=60
    )

    claims = security.decode_token(token, secret=SECRET)

    assert claims["sub"] == "7"
    assert claims["email"] == "a@example.com"
    assert claims["role"] == "ADMIN"


def test_expired_and_foreign_tokens_are_rejected() -> None:
    expired = security.issue_token({"id": 1, "email": "a@example.com"}, secret=SECRET, ttl_s=-10)
    with pytest.raises(AuthError, match="Token expired"):
        security.decode_token(expired, secret=SECRET)

    token = security.issue_token({"id": 1, "email": "a@example.com"}, secret=SECRET, ttl_s=60)
    with pytest.raises(AuthError, match="Invalid token"):
        security.decode_token(token, secret=SECRET + "-other")


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer ", None),
        (None, None),
    ],
)
def test_bearer_token(header: str | None, expected: str | None) -> None:
    assert security.bearer_token(header) == expected
