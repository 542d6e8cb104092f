from __future__ import annotations

import hashlib
import os
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from identity_core.domain.errors import InvalidToken

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ACCESS_EXPIRES_MIN = int(os.getenv("JWT_ACCESS_EXPIRES_MIN", "60"))
JWT_REFRESH_EXPIRES_DAYS = int(os.getenv("JWT_REFRESH_EXPIRES_DAYS", "14"))

REQUIRED_CLAIMS = ["sub", "iat", "exp"]


def _encode(principal_id: str, claims: dict[str, Any], expire_delta: timedelta) -> str:
    now = datetime.now(UTC)
    payload: dict[str, Any] = {
        **claims,
        "sub": principal_id,
        "iat": int(now.timestamp()),
        "exp": int((now + expire_delta).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def issue_access_token(principal_id: str, claims: dict[str, Any]) -> str:
    return _encode(principal_id, claims, timedelta(minutes=JWT_ACCESS_EXPIRES_MIN))


def issue_refresh_token(principal_id: str, claims: dict[str, Any]) -> str:
    # jti keeps two refresh tokens minted in the same second distinct.
    payload = {**claims, "jti": secrets.token_hex(16)}
    return _encode(principal_id, payload, timedelta(days=JWT_REFRESH_EXPIRES_DAYS))


def decode_token(token: str) -> dict[str, Any]:
    try:
        decoded = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            options={"require": REQUIRED_CLAIMS},
        )
    except jwt.PyJWTError as exc:
        raise InvalidToken("Invalid token") from exc
    if not isinstance(decoded, dict):
        raise InvalidToken("Invalid token payload")
    return decoded


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def hash_password(raw_password: str) -> str:
    salt = os.getenv("PASSWORD_SALT", "identity-dev-salt")
    return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()


def verify_password(raw_password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    return secrets.compare_digest(hash_password(raw_password), password_hash)
