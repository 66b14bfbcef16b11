"""Signed access tokens for playground users."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

import jwt

from core.env import env_int, env_str


class AuthTokenError(RuntimeError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class TokenSettings:
    secret: str
    algorithm: str
    issuer: str
    audience: str
    access_ttl_seconds: int


@lru_cache
def get_token_settings() -> TokenSettings:
    secret = env_str("AUTH_JWT_SECRET") or env_str("AUTH_SECRET")
    if not secret:
        raise RuntimeError("AUTH_JWT_SECRET or AUTH_SECRET must be set.")
    return TokenSettings(
        secret=secret,
        algorithm=env_str("AUTH_JWT_ALG", "HS256"),
        issuer=env_str("AUTH_JWT_ISSUER", "financial-playground"),
        audience=env_str("AUTH_JWT_AUDIENCE", "playground"),
        access_ttl_seconds=env_int("AUTH_ACCESS_TOKEN_TTL_SECONDS", 3600, minimum=60),
    )


def create_access_token(
    *,
    user_id: str,
    email: str = "",
    role: str = "user",
    ttl_seconds: Optional[int] = None,
) -> Tuple[str, int]:
    """Returns ``(token, expires_in_seconds)``."""
    settings = get_token_settings()
    expires_in = settings.access_ttl_seconds if ttl_seconds is None else ttl_seconds
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "email": email,
        "role": role,
        "scope": "access",
        "iss": settings.issuer,
        "aud": settings.audience,
        "iat": issued_at,
        "exp": issued_at + timedelta(seconds=expires_in),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, settings.secret, algorithm=settings.algorithm), expires_in


def decode_token(token: str, *, scope: Optional[str] = None) -> Dict[str, Any]:
    settings = get_token_settings()
    try:
        claims = jwt.decode(
            token,
            settings.secret,
            algorithms=[settings.algorithm],
            audience=settings.audience,
            issuer=settings.issuer,
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthTokenError("auth.token_expired", "Token has expired.") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthTokenError("auth.token_invalid", "Token verification failed.") from exc
    if scope is not None and claims.get("scope") != scope:
        raise AuthTokenError("auth.token_invalid", f"Expected a {scope} token.")
    return claims


__all__ = ["AuthTokenError", "TokenSettings", "create_access_token", "decode_token", "get_token_settings"]
