"""Hourly request quotas for expensive routes such as design generation.

Counters live in Redis so every API replica shares them; when Redis is
unreachable the quota falls back to a per-process window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings
from services.session_token import decode_session_token

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _quota_subject(request: Request) -> str:
    """Signed-in users are limited per account, anonymous callers per address."""
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            return f"user:{decode_session_token(token.strip())['sub']}"
        except ValueError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        _local_counters[key] = (count + 1, reset_at)
        return count + 1 <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
    finally:
        await client.aclose()
    return current <= limit


def rate_limit(scope: str, limit: Optional[int] = None, window_seconds: int = 3600) -> Callable:
    """FastAPI dependency enforcing ``limit`` calls per ``window_seconds`` for ``scope``."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        allowed_calls = int(limit if limit is not None else settings.RATE_LIMIT_PER_HOUR)
        key = f"roomai:quota:{scope}:{_quota_subject(request)}"
        try:
            allowed = await _consume_redis_quota(key, allowed_calls, window_seconds)
        except Exception as exc:
            logger.debug("Redis quota unavailable (%s); using local counters", exc)
            allowed = await _consume_local_quota(key, allowed_calls, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many {scope.replace('_', ' ')} requests. Try again later.",
            )

    return _dependency
