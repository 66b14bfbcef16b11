"""Per-user fixed-window limits on report generation, counted in Redis.

Windows are aligned to the epoch, so every counter key names its window and
expires on its own. Without a reachable Redis the limiter lets requests
through and flags the result with ``backend_error``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Optional

import redis
from fastapi import HTTPException, status

from core.env import env_str
from core.logging import get_logger

logger = get_logger(__name__)

GENERATION_SCOPE = "report_generation"
KEY_PREFIX = env_str("RATE_LIMIT_PREFIX", "playground")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    backend_error: bool = False


@lru_cache(maxsize=1)
def _get_client() -> Optional[redis.Redis]:
    url = env_str("RATE_LIMIT_REDIS_URL")
    if not url:
        logger.info("RATE_LIMIT_REDIS_URL is not set; generation requests are not rate limited.")
        return None
    try:
        return redis.Redis.from_url(url, socket_timeout=1.0)
    except (redis.RedisError, ValueError) as exc:
        logger.warning("Rate limiter disabled, cannot build Redis client: %s", exc)
        return None


def window_key(scope: str, identifier: Optional[str], window_start: int) -> str:
    return f"{KEY_PREFIX}:{scope}:{identifier or 'anonymous'}:{window_start}"


def check_limit(
    scope: str,
    identifier: Optional[str],
    *,
    limit: int,
    window_seconds: int = 60,
    clock: Optional[Callable[[], float]] = None,
) -> RateLimitResult:
    """Count one hit for ``identifier`` in the current window."""
    if limit <= 0 or window_seconds <= 0:
        return RateLimitResult(allowed=True)

    client = _get_client()
    if client is None:
        return RateLimitResult(allowed=True, backend_error=True)

    now = int((clock or time.time)())
    window_start = now - now % window_seconds
    key = window_key(scope, identifier, window_start)
    try:
        pipeline = client.pipeline()
        pipeline.incr(key)
        pipeline.expire(key, window_seconds)
        count, _ = pipeline.execute()
    except Exception as exc:
        logger.warning("Rate limit check failed for %s; allowing request: %s", key, exc)
        return RateLimitResult(allowed=True, backend_error=True)

    return RateLimitResult(
        allowed=int(count) <= limit,
        remaining=max(limit - int(count), 0),
        reset_at=datetime.fromtimestamp(window_start + window_seconds, tz=timezone.utc),
    )


def check_generation_rate_limit(user_id: str, *, limit: int, window_seconds: int) -> RateLimitResult:
    """Count one generation against ``user_id``; raise 429 once the window is spent."""
    result = check_limit(GENERATION_SCOPE, user_id, limit=limit, window_seconds=window_seconds)
    if result.allowed:
        return result
    logger.info("Generation rate limit hit user=%s limit=%d/%ds", user_id, limit, window_seconds)
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "rate_limit_exceeded",
            "message": f"Report generation limit ({limit} per window) reached. Please try again later.",
            "remaining": 0,
            "reset_at": result.reset_at.isoformat() if result.reset_at else None,
        },
    )


__all__ = ["GENERATION_SCOPE", "RateLimitResult", "check_generation_rate_limit", "check_limit", "window_key"]
