"""
Redis client for the token revocation list.

Revocation lookups run on the WebSocket handshake path, so socket timeouts
are short. The client is created on first use and closed on shutdown.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from schoolsync.core.config import get_settings

REVOKED_KEY = "jwt:revoked:{jti}"

_client: Optional[redis.Redis] = None


def revoked_key(jti: str) -> str:
    return REVOKED_KEY.format(jti=jti)


async def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        settings = get_settings()
        _client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_timeout_seconds,
            socket_connect_timeout=settings.redis_timeout_seconds,
        )
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
