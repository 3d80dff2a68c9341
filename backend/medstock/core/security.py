"""MedStock — JWT access tokens.

Tokens are issued by the hospital identity service; this module only needs to
decode them. ``create_access_token`` exists for service-to-service calls and
tests, and signs with the same shared secret.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from medstock.config import get_settings

settings = get_settings()


def create_access_token(subject: str | Any, username: str | None = None, extra_claims: dict | None = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_TTL_MINUTES)
    payload = {
        "sub": str(subject),
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    if username:
        payload["username"] = username
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
