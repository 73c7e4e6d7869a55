"""Shared async Redis client.

Redis backs the policy read cache and the one-time MFA code store. It is
optional: when it cannot be reached ``get_redis()`` returns ``None`` and
callers fall back to the database or to process memory.
"""

import logging

import redis.asyncio as aioredis

from app.config import settings

logger = logging.getLogger(__name__)

_client: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis | None:
    """Return the connected client, or None when Redis is unreachable."""
    global _client
    if _client is not None:
        return _client
    try:
        candidate = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=1,
        )
        await candidate.ping()
    except Exception:
        logger.warning("Redis unreachable at %s; policy cache and shared codes disabled", settings.REDIS_URL)
        return None
    _client = candidate
    logger.info("Redis connected at %s", settings.REDIS_URL)
    return _client


async def close_redis() -> None:
    """Release the client on shutdown."""
    global _client
    if _client is None:
        return
    await _client.aclose()
    _client = None
    logger.info("Redis client closed")
