"""
Authentication for the Receipt Insights REST API.

Callers are identified by a bearer JWT whose ``sub`` claim is the numeric
user id. Tokens are signed elsewhere with the shared secret; this module
only verifies them (via PyJWT). encode_token() exists for tooling and tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt as pyjwt

from src.lib.security import hash_uid

logger = logging.getLogger(__name__)


@dataclass
class AuthToken:
    """Verified JWT claims."""

    user_id: int
    issued_at: datetime | None
    expires_at: datetime
    token_type: str = "Bearer"

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "expires_at": self.expires_at.isoformat(),
            "token_type": self.token_type,
        }


class AuthService:
    """
    JWT verification.

    Args:
        secret_key: Shared signing secret.
        algorithm: JWT algorithm (HS256 by default).
    """

    TOKEN_EXPIRY_DAYS = 30

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        if not secret_key:
            raise ValueError("secret_key is required")
        self.secret_key = secret_key
        self.algorithm = algorithm

    def encode_token(self, user_id: int, expires_in: timedelta | None = None) -> str:
        """Sign a token for ``user_id`` (expires after 30 days by default)."""
        now = datetime.now(UTC)
        payload: dict[str, Any] = {
            "sub": str(user_id),
            "iat": now,
            "exp": now + (expires_in or timedelta(days=self.TOKEN_EXPIRY_DAYS)),
            "type": "Bearer",
        }
        return pyjwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode_token(self, jwt_token: str) -> AuthToken | None:
        """
        Verify a JWT.

        Returns:
            AuthToken, or None if the token is invalid, expired, or its
            ``sub`` is not a user id.
        """
        try:
            payload = pyjwt.decode(
                jwt_token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp"]},
            )
            user_id = int(payload["sub"])
        except pyjwt.ExpiredSignatureError:
            logger.warning("Token expired")
            return None
        except pyjwt.InvalidTokenError as e:
            logger.warning("Token decode error: %s", e)
            return None
        except (TypeError, ValueError):
            logger.warning("Token subject is not a user id")
            return None

        issued_at = payload.get("iat")
        token = AuthToken(
            user_id=user_id,
            issued_at=datetime.fromtimestamp(issued_at, tz=UTC) if issued_at else None,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC),
            token_type=payload.get("type", "Bearer"),
        )
        logger.debug("Authenticated user_hash=%s", hash_uid(user_id))
        return token

    def authenticate_request(self, authorization_header: str | None) -> AuthToken | None:
        """Verify an ``Authorization: Bearer <jwt>`` header value."""
        if not authorization_header:
            return None
        scheme, _, credentials = authorization_header.partition(" ")
        if scheme.lower() != "bearer" or not credentials:
            return None
        return self.decode_token(credentials.strip())


__all__ = ["AuthService", "AuthToken"]
