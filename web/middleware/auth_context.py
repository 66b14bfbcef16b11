"""Resolve ``Authorization: Bearer`` headers into ``request.state.user``.

Requests without a token pass through unauthenticated; routes that need a
user enforce it with ``web.deps.get_current_user``. A token that is present
but unusable is rejected here with 401.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from core.logging import get_logger
from services.auth_tokens import AuthTokenError, decode_token

logger = get_logger(__name__)

PUBLIC_PATH_PREFIXES = ("/docs", "/openapi", "/redoc", "/health", "/metrics")


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str
    role: str

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "AuthenticatedUser":
        return cls(
            id=str(claims["sub"]),
            email=str(claims.get("email") or ""),
            role=str(claims.get("role") or "user"),
        )


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    scheme, _, credentials = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


def _unauthorized(code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": {"code": code, "message": message}})


async def auth_context_middleware(request: Request, call_next):
    path = request.url.path
    if request.method == "OPTIONS" or path.startswith(PUBLIC_PATH_PREFIXES):
        return await call_next(request)

    token = bearer_token(request.headers.get("authorization"))
    if token is None:
        return await call_next(request)

    try:
        claims = decode_token(token, scope="access")
    except AuthTokenError as exc:
        logger.info("Rejected bearer token on %s: %s", path, exc.code)
        return _unauthorized(exc.code, str(exc))

    request.state.user = AuthenticatedUser.from_claims(claims)
    return await call_next(request)


__all__ = ["AuthenticatedUser", "PUBLIC_PATH_PREFIXES", "auth_context_middleware", "bearer_token"]
