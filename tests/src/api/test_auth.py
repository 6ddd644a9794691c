"""
Tests for JWT verification (src/api/auth.py).

Covers:
- encode/decode round trip carries the user id
- Expired, tampered and foreign-secret tokens are rejected
- Non-numeric subjects are rejected
- Authorization header parsing
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import jwt as pyjwt
import pytest

from src.api.auth import AuthService, AuthToken

_SECRET = "test-secret-key-for-jwt-signing-at-least-32-bytes-long"


@pytest.fixture()
def auth() -> AuthService:
    return AuthService(_SECRET)


class TestAuthService:
    def test_requires_secret(self) -> None:
        with pytest.raises(ValueError):
            AuthService("")

    def test_round_trip(self, auth: AuthService) -> None:
        token = auth.decode_token(auth.encode_token(42))
        assert token is not None
        assert token.user_id == 42
        assert token.is_expired() is False
        assert token.to_dict()["token_type"] == "Bearer"

    def test_expired_token(self, auth: AuthService) -> None:
        jwt_token = auth.encode_token(42, expires_in=timedelta(seconds=-5))
        assert auth.decode_token(jwt_token) is None

    def test_wrong_secret(self, auth: AuthService) -> None:
        other = AuthService("another-secret-key-that-is-also-long-enough")
        assert auth.decode_token(other.encode_token(42)) is None

    def test_garbage(self, auth: AuthService) -> None:
        assert auth.decode_token("not.a.jwt") is None

    def test_non_numeric_subject(self, auth: AuthService) -> None:
        jwt_token = pyjwt.encode(
            {"sub": "alice", "exp": datetime.now(UTC) + timedelta(hours=1)},
            _SECRET,
            algorithm="HS256",
        )
        assert auth.decode_token(jwt_token) is None

    def test_missing_expiry(self, auth: AuthService) -> None:
        jwt_token = pyjwt.encode({"sub": "42"}, _SECRET, algorithm="HS256")
        assert auth.decode_token(jwt_token) is None


class TestAuthenticateRequest:
    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer "])
    def test_rejected_headers(self, auth: AuthService, header: str | None) -> None:
        assert auth.authenticate_request(header) is None

    def test_bearer_header(self, auth: AuthService) -> None:
        token = auth.authenticate_request(f"bearer {auth.encode_token(9)}")
        assert token is not None
        assert token.user_id == 9


def test_token_expiry_check() -> None:
    token = AuthToken(
        user_id=1,
        issued_at=None,
        expires_at=datetime(2026, 1, 1, tzinfo=UTC),
    )
    assert token.is_expired(now=datetime(2026, 1, 2, tzinfo=UTC)) is True
    assert token.is_expired(now=datetime(2025, 12, 31, tzinfo=UTC)) is False
